"""
Date and derived-value helpers shared by billing, tickets and reports.
"""

import random
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

CATEGORY_CODES = {
    'DOMESTIC': 0,
    'INDUSTRIAL': 1,
    'LARGE_COMMERCIAL': 2,
    'SMALL_COMMERCIAL': 3,
    'AGRICULTURAL': 4,
    'GOVERNMENT': 5,
}

CATEGORY_NAMES = {code: name for name, code in CATEGORY_CODES.items()}

TWO_PLACES = Decimal('0.01')


def get_date_in_ymd_format(date=None):
    """YYYY-MM-DD"""
    return (date or datetime.now()).strftime('%Y-%m-%d')


def get_date_time(date=None):
    """YYYY-MM-DD HH:MM:SS"""
    return (date or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')


def get_bill_pay_date(days_to_add=5, today=None):
    return get_date_in_ymd_format((today or datetime.now()) + timedelta(days=days_to_add))


def format_date_dmy(date=None):
    return (date or datetime.now()).strftime('%d-%m-%Y')


def get_date_in_my_format(date=None):
    """MM-YYYY, accepting a datetime or a 'YYYY-MM[-DD]' string."""
    if isinstance(date, str):
        parts = date.split('-')
        if len(parts) >= 2:
            return f"{parts[1]}-{parts[0]}"
        raise ValueError(f"Unrecognised month string: {date}")
    return (date or datetime.now()).strftime('%m-%Y')


def generate_invoice_number(now=None):
    now = now or datetime.utcnow()
    return f"INV{now.strftime('%y%m%d%H%M%S')}{random.randint(1000, 9999)}"


def generate_bill_number(meter_number, billing_date):
    return f"BILL-{billing_date.strftime('%Y%m')}-{meter_number}-{random.randint(1000, 9999)}"


def generate_ticket_number(count):
    return f"TCKT-{count + 1:04d}"


def get_category_int(category):
    if isinstance(category, int):
        return category
    if not category:
        return 0
    if category in CATEGORY_CODES:
        return CATEGORY_CODES[category]
    try:
        return int(category)
    except (TypeError, ValueError):
        return 0


def get_category_name(category_int):
    return CATEGORY_NAMES.get(category_int, 'UNKNOWN')


def day_window(day):
    """Half-open [midnight, next midnight) window for the calendar day of `day`."""
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def month_window(day):
    """Half-open window covering the calendar month of `day`."""
    start = datetime(day.year, day.month, 1)
    if day.month == 12:
        end = datetime(day.year + 1, 1, 1)
    else:
        end = datetime(day.year, day.month + 1, 1)
    return start, end


def previous_month_window(day):
    start, _ = month_window(day)
    return month_window(start - timedelta(days=1))


def round_money(value):
    """Round half-up to two places and return a float for JSON output."""
    if value is None:
        return 0.0
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return float(value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))
