"""
Date and derived-value helper tests
"""

import re
from datetime import datetime

import pytest

from utils import (
    day_window, format_date_dmy, generate_bill_number, generate_invoice_number, generate_ticket_number,
    get_bill_pay_date, get_category_int, get_category_name, get_date_in_my_format, get_date_in_ymd_format,
    get_date_time, month_window, previous_month_window, round_money,
)

NOW = datetime(2024, 3, 9, 14, 5, 7)


def test_date_formats():
    assert get_date_in_ymd_format(NOW) == '2024-03-09'
    assert get_date_time(NOW) == '2024-03-09 14:05:07'
    assert format_date_dmy(NOW) == '09-03-2024'
    assert get_date_in_my_format(NOW) == '03-2024'
    assert get_date_in_my_format('2024-11-02') == '11-2024'


def test_month_string_without_separator_is_rejected():
    with pytest.raises(ValueError):
        get_date_in_my_format('202411')


def test_bill_pay_date_adds_days():
    assert get_bill_pay_date(today=NOW) == '2024-03-14'
    assert get_bill_pay_date(days_to_add=30, today=NOW) == '2024-04-08'


def test_generated_numbers():
    assert re.fullmatch(r'INV240309140507\d{4}', generate_invoice_number(NOW))
    assert re.fullmatch(r'BILL-202403-M100-\d{4}', generate_bill_number('M100', NOW))
    assert generate_ticket_number(0) == 'TCKT-0001'
    assert generate_ticket_number(41) == 'TCKT-0042'


def test_category_codes():
    assert get_category_int('DOMESTIC') == 0
    assert get_category_int('GOVERNMENT') == 5
    assert get_category_int('3') == 3
    assert get_category_int(None) == 0
    assert get_category_int('NOT_A_CATEGORY') == 0
    assert get_category_name(1) == 'INDUSTRIAL'
    assert get_category_name(99) == 'UNKNOWN'


def test_day_window_is_half_open():
    start, end = day_window(NOW)
    assert start == datetime(2024, 3, 9)
    assert end == datetime(2024, 3, 10)


def test_month_windows_roll_over_the_year():
    assert month_window(datetime(2023, 12, 31, 23, 59)) == (datetime(2023, 12, 1), datetime(2024, 1, 1))
    assert previous_month_window(datetime(2024, 1, 15)) == (datetime(2023, 12, 1), datetime(2024, 1, 1))
    assert previous_month_window(datetime(2024, 3, 31)) == (datetime(2024, 2, 1), datetime(2024, 3, 1))


def test_round_money_rounds_half_up():
    assert round_money('150.005') == 150.01
    assert round_money(2.675) == 2.68
    assert round_money(-1.005) == -1.01
    assert round_money(None) == 0.0
