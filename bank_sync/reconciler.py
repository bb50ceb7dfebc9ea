"""Import vendor transactions into the ledger.

Every vendor record becomes at most one ``BankTransaction`` per account,
keyed by its external id. Debits also become an ``Expense``; credits are kept
as income only. Re-running a sync over the same records changes nothing.
"""
import logging
from collections import namedtuple
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError

from bank_sync.categorize import categorize, counterparty, describe, external_id
from errors import NotFoundError, UpstreamError, ValidationError
from ledger.expenses import MAX_DESCRIPTION_LENGTH, add_expense
from models import BankAccount, BankConnection, BankSyncLog, BankTransaction, db, utcnow

logger = logging.getLogger(__name__)

MAX_PAGES = 100

ParsedTransaction = namedtuple('ParsedTransaction', [
    'external_id', 'booking_date', 'amount', 'currency', 'creditor_name', 'debtor_name',
    'description', 'merchant_code', 'category', 'raw',
])


def _parse_day(value):
    return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()


def parse_record(record):
    """Normalize one vendor record. Raises on anything malformed."""
    if not isinstance(record, dict):
        raise TypeError(f'expected a dict, got {type(record).__name__}')
    amount_info = record['transaction_amount']
    amount = Decimal(str(amount_info['amount']))
    if not amount.is_finite():
        raise ValueError(f'non-finite amount {amount_info["amount"]!r}')
    # The indicator is authoritative when present; vendors often send unsigned amounts with it
    indicator = record.get('credit_debit_indicator') or ''
    if not isinstance(indicator, str):
        raise ValueError(f'credit_debit_indicator must be text, got {indicator!r}')
    indicator = indicator.upper()
    if indicator == 'DBIT':
        amount = -abs(amount)
    elif indicator == 'CRDT':
        amount = abs(amount)
    elif indicator:
        raise ValueError(f'unknown credit_debit_indicator {indicator!r}')

    day = record.get('booking_date') or record.get('value_date') or record.get('transaction_date')
    if not day:
        raise ValueError('record has no date')
    creditor, debtor = counterparty(record)
    mcc = record.get('merchant_category_code')
    return ParsedTransaction(
        external_id=external_id(record),
        booking_date=_parse_day(day),
        amount=amount.quantize(Decimal('0.01')),
        currency=(amount_info.get('currency') or 'EUR')[:3],
        creditor_name=creditor,
        debtor_name=debtor,
        description=describe(record, MAX_DESCRIPTION_LENGTH),
        merchant_code=str(mcc)[:4] if mcc else None,
        category=categorize(record),
        raw=record,
    )


def reconcile_page(account, records, household_id, payer_id, seen):
    """Store one page of vendor records. ``seen`` holds external ids already imported."""
    stats = {'fetched': 0, 'new': 0, 'expenses': 0, 'malformed': 0}
    for record in records:
        stats['fetched'] += 1
        try:
            tx = parse_record(record)
        except (KeyError, TypeError, ValueError, AttributeError, InvalidOperation) as exc:
            stats['malformed'] += 1
            logger.warning('Skipping malformed transaction on account %s: %s (%r)', account.id, exc, record)
            continue
        if tx.external_id in seen:
            continue
        seen.add(tx.external_id)

        is_debit = tx.amount < 0
        try:
            with db.session.begin_nested():
                bank_tx = BankTransaction(
                    account_id=account.id,
                    external_id=tx.external_id,
                    booking_date=tx.booking_date,
                    amount=tx.amount,
                    currency=tx.currency,
                    creditor_name=tx.creditor_name,
                    debtor_name=tx.debtor_name,
                    description=tx.description,
                    merchant_code=tx.merchant_code,
                    raw_data=tx.raw,
                    is_processed=is_debit,
                )
                db.session.add(bank_tx)
                db.session.flush()
                if is_debit:
                    expense = add_expense(household_id, payer_id, -tx.amount, tx.category, tx.booking_date,
                                          tx.description, source='bank_sync', bank_transaction_id=bank_tx.id)
                    db.session.flush()
                    bank_tx.expense_id = expense.id
        except IntegrityError:
            # Another request imported it first
            logger.info('Transaction %s already imported on account %s', tx.external_id, account.id)
            continue
        stats['new'] += 1
        if is_debit:
            stats['expenses'] += 1
    return stats


def sync_account(account, provider, household_id, payer_id, date_from, date_to=None):
    """Page through the vendor and record the outcome in the sync log.

    A vendor error stops this account only and is not retried.
    """
    seen = {row.external_id for row in
            db.session.query(BankTransaction.external_id).filter_by(account_id=account.id)}
    totals = {'fetched': 0, 'new': 0, 'expenses': 0, 'malformed': 0}
    error = None
    key = None
    keys_used = set()
    try:
        for _ in range(MAX_PAGES):
            page = provider.fetch_transactions(account.account_uid, date_from, date_to, key)
            stats = reconcile_page(account, page.get('transactions') or [], household_id, payer_id, seen)
            for name, value in stats.items():
                totals[name] += value
            key = page.get('continuation_key')
            if not key or key in keys_used:
                break
            keys_used.add(key)
    except UpstreamError as exc:
        error = str(exc)
        logger.warning('Sync of account %s aborted: %s', account.id, error)

    log = BankSyncLog(
        account_id=account.id,
        transactions_fetched=totals['fetched'],
        transactions_new=totals['new'],
        expenses_created=totals['expenses'],
        malformed_skipped=totals['malformed'],
        error=error,
    )
    db.session.add(log)
    db.session.commit()
    return {
        'account_id': account.id,
        'account_name': account.display_name,
        'transactions_fetched': totals['fetched'],
        'transactions_new': totals['new'],
        'expenses_created': totals['expenses'],
        'malformed_skipped': totals['malformed'],
        'status': log.status,
        'error': 'Something went wrong, please try again' if error else None,
    }


def sync_user(user_id, household_id, provider, connection_id=None, account_id=None, days_back=None,
              today=None):
    today = today or date.today()
    days_back = days_back or current_app.config['BANK_SYNC_DAYS_BACK']
    try:
        days_back = int(days_back)
    except (TypeError, ValueError):
        raise ValidationError('Invalid number of days.', field='days_back') from None
    if not 1 <= days_back <= 730:
        raise ValidationError('Invalid number of days.', field='days_back')
    date_from = today - timedelta(days=days_back)

    q = BankConnection.query.filter_by(user_id=user_id, status='active')
    if connection_id is not None:
        q = q.filter_by(id=connection_id)
    connections = q.all()
    if not connections:
        if connection_id is not None:
            raise NotFoundError('Bank connection')
        raise ValidationError('No active bank connections.')

    results = []
    expired = 0
    now = utcnow()
    for conn in connections:
        if conn.is_expired(now):
            conn.status = 'expired'
            db.session.commit()
            expired += 1
            logger.info('Bank connection %s consent expired on %s', conn.id, conn.expires_at)
            continue
        accounts = conn.accounts
        if account_id is not None:
            accounts = [a for a in accounts if a.id == account_id]
        for account in accounts:
            results.append(sync_account(account, provider, household_id, user_id, date_from, today))
        conn.last_synced_at = utcnow()
        db.session.commit()

    return {
        'results': results,
        'expired_connections': expired,
        'totals': {
            'transactions_fetched': sum(r['transactions_fetched'] for r in results),
            'transactions_new': sum(r['transactions_new'] for r in results),
            'expenses_created': sum(r['expenses_created'] for r in results),
            'failed_accounts': sum(1 for r in results if r['status'] == 'failed'),
        },
    }


def recent_transactions(user_id, limit=50, kind=None):
    q = (BankTransaction.query.join(BankAccount, BankTransaction.account_id == BankAccount.id)
         .join(BankConnection, BankAccount.connection_id == BankConnection.id)
         .filter(BankConnection.user_id == user_id))
    if kind == 'income':
        q = q.filter(BankTransaction.amount >= 0)
    elif kind == 'expense':
        q = q.filter(BankTransaction.amount < 0)
    return q.order_by(BankTransaction.booking_date.desc(), BankTransaction.id.desc()).limit(limit).all()
