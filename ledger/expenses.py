import logging
from datetime import date
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy import func

from categories import Category
from errors import ValidationError
from ledger.common import (clean_text, get_scoped, month_range, parse_amount, parse_date,
                           require_member)
from models import BankTransaction, Expense, ExpenseSplit, db

logger = logging.getLogger(__name__)

MAX_TAGS = 5
MAX_TAG_LENGTH = 30
MAX_DESCRIPTION_LENGTH = 200


def clean_tags(tags):
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(',')
    if not isinstance(tags, (list, tuple)):
        raise ValidationError('Tags must be a list.', field='tags')
    cleaned = []
    for tag in tags:
        tag = str(tag).strip().lower()
        if not tag or tag in cleaned:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f'Each tag must be at most {MAX_TAG_LENGTH} characters.', field='tags')
        cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f'Use at most {MAX_TAGS} tags.', field='tags')
    return cleaned


def add_expense(household_id, paid_by, amount, category, expense_date, description=None, tags=None,
                source='manual', bank_transaction_id=None):
    """Stage an already-validated expense row. The caller commits."""
    expense = Expense(
        household_id=household_id,
        amount=amount,
        category=Category.parse(category).value,
        date=expense_date,
        description=description,
        tags=list(tags or []),
        paid_by=paid_by,
        source=source,
        bank_transaction_id=bank_transaction_id,
    )
    db.session.add(expense)
    return expense


def create_expense(household_id, user_id, data):
    amount = parse_amount(data.get('amount'))
    category = Category.parse(data.get('category'))
    description = clean_text(data.get('description'), 'description', MAX_DESCRIPTION_LENGTH)
    tags = clean_tags(data.get('tags'))
    expense_date = parse_date(data['date']) if data.get('date') else date.today()
    paid_by = data.get('paid_by') or user_id
    try:
        paid_by = int(paid_by)
    except (TypeError, ValueError):
        raise ValidationError('Invalid payer.', field='paid_by') from None
    require_member(household_id, paid_by, field='paid_by')

    expense = add_expense(household_id, paid_by, amount, category, expense_date, description, tags)
    db.session.commit()
    logger.info('Expense %s created in household %s: %s %s', expense.id, household_id, amount, category.value)
    return expense


def get_expense(household_id, expense_id):
    return get_scoped(Expense, expense_id, household_id, 'Expense')


def split_total(expense):
    return sum((s.amount for s in expense.splits), Decimal('0'))


def update_expense(household_id, expense_id, data):
    expense = get_expense(household_id, expense_id)
    if 'amount' in data:
        amount = parse_amount(data['amount'])
        if amount < split_total(expense):
            raise ValidationError('Amount cannot be lower than the total already split.', field='amount')
        expense.amount = amount
    if 'category' in data:
        expense.category = Category.parse(data['category']).value
    if 'description' in data:
        expense.description = clean_text(data['description'], 'description', MAX_DESCRIPTION_LENGTH)
    if 'tags' in data:
        expense.tags = clean_tags(data['tags'])
    if 'date' in data:
        expense.date = parse_date(data['date'])
    if 'paid_by' in data:
        try:
            paid_by = int(data['paid_by'])
        except (TypeError, ValueError):
            raise ValidationError('Invalid payer.', field='paid_by') from None
        require_member(household_id, paid_by, field='paid_by')
        expense.paid_by = paid_by
    db.session.commit()
    return expense


def delete_expense(household_id, expense_id):
    expense = get_expense(household_id, expense_id)
    # Keep the bank row so a re-sync still sees the external id as imported
    BankTransaction.query.filter_by(expense_id=expense.id).update({'expense_id': None})
    db.session.delete(expense)
    db.session.commit()
    logger.info('Expense %s deleted from household %s', expense_id, household_id)


def list_expenses(household_id, category=None, start=None, end=None, limit=50, offset=0):
    q = Expense.query.filter(Expense.household_id == household_id)
    if category:
        q = q.filter(Expense.category == Category.parse(category).value)
    if start:
        q = q.filter(Expense.date >= parse_date(start, 'start'))
    if end:
        q = q.filter(Expense.date <= parse_date(end, 'end'))
    limit = max(1, min(int(limit or 50), 200))
    return (q.order_by(Expense.date.desc(), Expense.created_at.desc(), Expense.id.desc())
             .offset(max(int(offset or 0), 0)).limit(limit).all())


def spent_between(household_id, start, end, category=None):
    q = db.session.query(func.coalesce(func.sum(Expense.amount), 0)).filter(
        Expense.household_id == household_id,
        Expense.date >= start,
        Expense.date <= end,
    )
    if category:
        q = q.filter(Expense.category == category)
    return Decimal(str(q.scalar())).quantize(Decimal('0.01'))


def monthly_stats(household_id, year, month):
    start, end = month_range(year, month)
    rows = (db.session.query(Expense.category, func.sum(Expense.amount), func.count(Expense.id))
            .filter(Expense.household_id == household_id, Expense.date >= start, Expense.date <= end)
            .group_by(Expense.category).all())
    by_category = {c.value: Decimal('0.00') for c in Category}
    count = 0
    for category, amount, n in rows:
        by_category[category] = Decimal(str(amount)).quantize(Decimal('0.01'))
        count += n
    return {
        'year': year,
        'month': month,
        'total': sum(by_category.values(), Decimal('0.00')),
        'by_category': by_category,
        'count': count,
    }


def monthly_history(household_id, months=6, today=None):
    today = today or date.today()
    first = today.replace(day=1)
    history = []
    for back in range(months - 1, -1, -1):
        start = first - relativedelta(months=back)
        end = start + relativedelta(months=1, days=-1)
        history.append({
            'year': start.year,
            'month': start.month,
            'total': spent_between(household_id, start, end),
        })
    return history


def unpaid_splits_query(household_id):
    return (ExpenseSplit.query.join(Expense, ExpenseSplit.expense_id == Expense.id)
            .filter(Expense.household_id == household_id, ExpenseSplit.is_paid.is_(False)))
