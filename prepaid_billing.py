"""
Prepaid billing: dashboard aggregation, the account table and balance writes.

All window boundaries are naive server-time datetimes, matching the
`datetime.utcnow` defaults on the model timestamps.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, case

from exceptions import NotFoundError, ValidationError
from models import db, Consumer, PrepaidAccount, PrepaidRecharge, PrepaidTransaction, PrepaidAlert
from pagination import paginate_query
from utils import day_window, month_window, previous_month_window, round_money

logger = logging.getLogger(__name__)

AUTO_DISCONNECT_ALERT_TYPES = ('LOW_BALANCE', 'EMERGENCY_LOW')
DEFAULT_LOW_BALANCE_LIMIT = 100
ACCOUNT_STATUSES = ('ACTIVE', 'INACTIVE')


def _recharge_totals(start, end):
    amount, count, accounts = db.session.query(
        func.coalesce(func.sum(PrepaidRecharge.amount), 0),
        func.count(PrepaidRecharge.id),
        func.count(func.distinct(PrepaidRecharge.account_id)),
    ).filter(
        PrepaidRecharge.payment_status == 'SUCCESS',
        PrepaidRecharge.created_at >= start,
        PrepaidRecharge.created_at < end,
    ).one()
    return {'amount': amount, 'count': count, 'accounts': accounts}


def _consumption_totals(start, end):
    units, amount, count, accounts = db.session.query(
        func.coalesce(func.sum(PrepaidTransaction.consumption_kwh), 0),
        func.coalesce(func.sum(PrepaidTransaction.amount), 0),
        func.count(PrepaidTransaction.id),
        func.count(func.distinct(PrepaidTransaction.account_id)),
    ).filter(
        PrepaidTransaction.transaction_type == 'CONSUMPTION',
        PrepaidTransaction.status == 'COMPLETED',
        PrepaidTransaction.created_at >= start,
        PrepaidTransaction.created_at < end,
    ).one()
    return {'units': units, 'amount': amount, 'count': count, 'accounts': accounts}


def _alert_totals(start, end):
    total, disconnects = db.session.query(
        func.count(PrepaidAlert.id),
        func.count(case((PrepaidAlert.alert_type.in_(AUTO_DISCONNECT_ALERT_TYPES), 1))),
    ).filter(
        PrepaidAlert.created_at >= start,
        PrepaidAlert.created_at < end,
    ).one()
    return {'count': total, 'auto_disconnects': disconnects}


def _window_totals(window):
    start, end = window
    return {
        'recharges': _recharge_totals(start, end),
        'consumption': _consumption_totals(start, end),
        'alerts': _alert_totals(start, end),
    }


def _account_snapshot(low_balance_limit):
    balance, count, low, recharged, consumed = db.session.query(
        func.coalesce(func.sum(PrepaidAccount.current_balance), 0),
        func.count(PrepaidAccount.id),
        func.count(case((PrepaidAccount.current_balance < low_balance_limit, 1))),
        func.coalesce(func.sum(PrepaidAccount.total_recharged), 0),
        func.coalesce(func.sum(PrepaidAccount.total_consumed), 0),
    ).one()
    issued = Decimal(str(recharged))
    recovered = Decimal(str(consumed))
    return {
        'cumulativeCurrentBalance': round_money(balance),
        'consumersCount': count,
        'lowBalanceConsumers': low,
        'adhocCreditIssued': round_money(issued),
        'adhocCreditRecovered': round_money(recovered),
        'remainingCredit': round_money(issued - recovered),
    }


def _activity_section(current, previous, prefix, sent_label):
    cur_r, prev_r = current['recharges'], previous['recharges']
    cur_c, prev_c = current['consumption'], previous['consumption']
    cur_a, prev_a = current['alerts'], previous['alerts']
    return {
        'totalRechargeCollection': round_money(cur_r['amount']),
        f'{prefix}RechargeCollection': round_money(prev_r['amount']),
        'rechargesProcessed': cur_r['count'],
        'rechargeConsumers': cur_r['accounts'],

        'totalUnitsConsumed': round_money(cur_c['units']),
        f'{prefix}UnitsConsumed': round_money(prev_c['units']),
        'metersWithConsumption': cur_c['accounts'],

        'totalAmountDeducted': round_money(cur_c['amount']),
        f'{prefix}AmountDeducted': round_money(prev_c['amount']),
        'transactionsCount': cur_c['count'],
        'transactionConsumers': cur_c['accounts'],

        'alertsTriggered': cur_a['count'],
        f'{prefix}Alerts': prev_a['count'],
        f'alertsSent{sent_label}': cur_a['count'],

        'autoDisconnectsTriggered': cur_a['auto_disconnects'],
        f'{prefix}AutoDisconnects': prev_a['auto_disconnects'],
        'disconnectConsumers': cur_a['auto_disconnects'],
    }


def _window_meta(window):
    return {'start': window[0].isoformat(), 'end': window[1].isoformat()}


def compute_prepaid_stats(now=None, low_balance_limit=None):
    """Build the prepaid billing dashboard report.

    `daily` compares today with yesterday; `monthly` compares the current
    calendar month with the previous one. The `windows` block lists the exact
    half-open ranges behind every figure.
    """
    now = now or datetime.utcnow()
    if low_balance_limit is None:
        low_balance_limit = current_app.config.get('LOW_BALANCE_LIMIT', DEFAULT_LOW_BALANCE_LIMIT)

    windows = {
        'today': day_window(now),
        'yesterday': day_window(now - timedelta(days=1)),
        'thisMonth': month_window(now),
        'lastMonth': previous_month_window(now),
    }
    totals = {name: _window_totals(window) for name, window in windows.items()}

    return {
        'accounts': _account_snapshot(low_balance_limit),
        'daily': _activity_section(totals['today'], totals['yesterday'], 'yesterday', 'Today'),
        'monthly': _activity_section(totals['thisMonth'], totals['lastMonth'], 'lastMonth', 'ThisMonth'),
        'windows': {name: _window_meta(window) for name, window in windows.items()},
        'generatedAt': now.isoformat(),
    }


def serialize_account(account):
    consumer = account.consumer
    return {
        'id': account.id,
        'accountNumber': account.account_number,
        'consumerNumber': consumer.consumer_number if consumer else None,
        'consumerName': consumer.name if consumer else None,
        'consumerPhone': consumer.primary_phone if consumer else None,
        'consumerEmail': consumer.email if consumer else None,
        'currentBalance': round_money(account.current_balance),
        'totalRecharged': round_money(account.total_recharged),
        'totalConsumed': round_money(account.total_consumed),
        'isActive': account.is_active,
        'isBlocked': account.is_blocked,
        'blockReason': account.block_reason,
        'lowBalanceThreshold': round_money(account.low_balance_threshold),
        'emergencyThreshold': round_money(account.emergency_threshold),
        'createdAt': account.created_at.isoformat() if account.created_at else None,
        'updatedAt': account.updated_at.isoformat() if account.updated_at else None,
    }


def get_prepaid_billing_table(page=1, limit=10, filters=None):
    filters = filters or {}
    query = PrepaidAccount.query

    if filters.get('status'):
        status = filters['status'].upper()
        if status not in ACCOUNT_STATUSES:
            raise ValidationError(errors=[{'field': 'status', 'message': 'Must be ACTIVE or INACTIVE'}])
        query = query.filter(PrepaidAccount.is_active == (status == 'ACTIVE'))
    if filters.get('consumerNumber'):
        query = query.filter(PrepaidAccount.consumer.has(
            Consumer.consumer_number.ilike(f"%{filters['consumerNumber']}%")
        ))
    if filters.get('accountNumber'):
        query = query.filter(PrepaidAccount.account_number.ilike(f"%{filters['accountNumber']}%"))

    query = query.order_by(PrepaidAccount.created_at.desc(), PrepaidAccount.id.desc())
    accounts, pagination = paginate_query(query, page, limit)
    return [serialize_account(a) for a in accounts], pagination


def _get_account(account_id):
    account = db.session.get(PrepaidAccount, account_id)
    if not account:
        raise NotFoundError('Prepaid account not found')
    return account


def _positive_amount(value, field):
    try:
        amount = Decimal(str(value))
        positive = amount.is_finite() and amount > 0
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(errors=[{'field': field, 'message': 'Must be a number'}])
    if not positive:
        raise ValidationError(errors=[{'field': field, 'message': 'Must be greater than zero'}])
    return amount


def record_recharge(account_id, amount, payment_status='SUCCESS', payment_reference=None):
    """Store a recharge; a SUCCESS recharge credits the account in the same commit."""
    account = _get_account(account_id)
    amount = _positive_amount(amount, 'amount')

    try:
        recharge = PrepaidRecharge(
            account_id=account.id,
            amount=amount,
            payment_status=payment_status,
            payment_reference=payment_reference,
        )
        db.session.add(recharge)

        if payment_status == 'SUCCESS':
            account.total_recharged = Decimal(str(account.total_recharged or 0)) + amount
            account.current_balance = Decimal(str(account.current_balance or 0)) + amount
            db.session.add(PrepaidTransaction(
                account_id=account.id,
                transaction_type='RECHARGE',
                status='COMPLETED',
                amount=amount,
                balance_after=account.current_balance,
            ))

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Recharge of %s recorded for account %s (%s)", amount, account.account_number, payment_status)
    return recharge


def record_consumption(account_id, consumption_kwh, amount):
    """Debit the account for consumed energy in a single commit."""
    account = _get_account(account_id)
    amount = _positive_amount(amount, 'amount')
    units = _positive_amount(consumption_kwh, 'consumptionKWh')

    try:
        account.total_consumed = Decimal(str(account.total_consumed or 0)) + amount
        account.current_balance = Decimal(str(account.current_balance or 0)) - amount
        transaction = PrepaidTransaction(
            account_id=account.id,
            transaction_type='CONSUMPTION',
            status='COMPLETED',
            consumption_kwh=units,
            amount=amount,
            balance_after=account.current_balance,
        )
        db.session.add(transaction)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return transaction


def create_low_balance_alerts(now=None, notify=None):
    """Create at most one LOW_BALANCE/EMERGENCY_LOW alert per account per day.

    Each account is its own unit of work. `notify(account, alert)` runs before
    the alert is committed; if it raises, the alert is rolled back so the next
    run picks the account up again, and the remaining accounts still run.

    Returns the new PrepaidAlert rows.
    """
    now = now or datetime.utcnow()
    start, end = day_window(now)
    created = []

    accounts = PrepaidAccount.query.filter(
        PrepaidAccount.is_active.is_(True),
        PrepaidAccount.current_balance <= PrepaidAccount.low_balance_threshold,
    ).all()

    for account in accounts:
        balance = Decimal(str(account.current_balance or 0))
        if balance <= Decimal(str(account.emergency_threshold or 0)):
            alert_type = 'EMERGENCY_LOW'
        else:
            alert_type = 'LOW_BALANCE'

        already_alerted = PrepaidAlert.query.filter(
            PrepaidAlert.account_id == account.id,
            PrepaidAlert.alert_type == alert_type,
            PrepaidAlert.created_at >= start,
            PrepaidAlert.created_at < end,
        ).first()
        if already_alerted:
            continue

        alert = PrepaidAlert(
            account_id=account.id,
            alert_type=alert_type,
            message=f"Account {account.account_number} balance is {round_money(balance):.2f}",
            created_at=now,
        )
        db.session.add(alert)
        try:
            if notify is not None:
                notify(account, alert)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Low balance alert for account %s failed", account.account_number)
            continue
        created.append(alert)

    if created:
        logger.info("Created %d low balance alerts", len(created))
    return created
