import logging
from decimal import ROUND_DOWN, Decimal

from errors import AuthorizationError, NotFoundError, ValidationError
from ledger.common import CENT, household_member_ids, parse_amount
from ledger.expenses import get_expense, unpaid_splits_query
from models import Expense, ExpenseSplit, db, utcnow

logger = logging.getLogger(__name__)


def equal_shares(amount, user_ids):
    """Split ``amount`` evenly; leftover cents go to the first members."""
    if not user_ids:
        raise ValidationError('Choose at least one member.', field='splits')
    n = len(user_ids)
    base = (amount / n).quantize(CENT, rounding=ROUND_DOWN)
    leftover = int((amount - base * n) / CENT)
    return [
        {'user_id': uid, 'amount': base + (CENT if i < leftover else 0)}
        for i, uid in enumerate(user_ids)
    ]


def create_splits(household_id, expense_id, splits):
    """Replace the splits of an expense.

    Each member may appear once, every share must be positive and the shares
    together may not exceed the expense amount.
    """
    expense = get_expense(household_id, expense_id)
    if not splits or not isinstance(splits, list):
        raise ValidationError('Add at least one split.', field='splits')

    members = household_member_ids(household_id)
    seen = set()
    parsed = []
    for item in splits:
        try:
            user_id = int(item.get('user_id'))
        except (TypeError, ValueError, AttributeError):
            raise ValidationError('Each split needs a member.', field='splits') from None
        if user_id not in members:
            raise ValidationError('Splits can only include household members.', field='splits')
        if user_id in seen:
            raise ValidationError('Each member can only appear once.', field='splits')
        seen.add(user_id)
        parsed.append((user_id, parse_amount(item.get('amount'), field='splits')))

    total = sum((amount for _, amount in parsed), Decimal('0'))
    if total > expense.amount:
        raise ValidationError(
            f'Split total {total} exceeds the expense amount {expense.amount}.', field='splits')

    expense.splits.clear()
    db.session.flush()
    now = utcnow()
    for user_id, amount in parsed:
        own_share = user_id == expense.paid_by
        expense.splits.append(ExpenseSplit(
            user_id=user_id,
            amount=amount,
            percentage=(amount / expense.amount * 100).quantize(CENT),
            is_paid=own_share,
            paid_at=now if own_share else None,
        ))
    db.session.commit()
    logger.info('Expense %s split between %s members', expense.id, len(parsed))
    return expense.splits


def expense_splits(household_id, expense_id):
    return get_expense(household_id, expense_id).splits


def remove_splits(household_id, expense_id):
    expense = get_expense(household_id, expense_id)
    expense.splits.clear()
    db.session.commit()


def pending_splits_for(household_id, user_id):
    """What ``user_id`` still owes other members."""
    return (unpaid_splits_query(household_id)
            .filter(ExpenseSplit.user_id == user_id, Expense.paid_by != user_id)
            .order_by(Expense.date.desc()).all())


def splits_owed_to(household_id, user_id):
    """What other members still owe ``user_id``."""
    return (unpaid_splits_query(household_id)
            .filter(Expense.paid_by == user_id, ExpenseSplit.user_id != user_id)
            .order_by(Expense.date.desc()).all())


def splits_summary(household_id, user_id):
    owe = sum((s.amount for s in pending_splits_for(household_id, user_id)), Decimal('0.00'))
    owed = sum((s.amount for s in splits_owed_to(household_id, user_id)), Decimal('0.00'))
    return {'i_owe': owe, 'owed_to_me': owed, 'net': owed - owe}


def mark_split_paid(household_id, split_id, user_id):
    split = (ExpenseSplit.query.join(Expense, ExpenseSplit.expense_id == Expense.id)
             .filter(ExpenseSplit.id == split_id, Expense.household_id == household_id).first())
    if split is None:
        raise NotFoundError('Split')
    # Only the debtor or the payer can settle a share
    if user_id not in (split.user_id, split.expense.paid_by):
        raise AuthorizationError(f'user {user_id} cannot settle split {split_id}')
    if not split.is_paid:
        split.is_paid = True
        split.paid_at = utcnow()
        db.session.commit()
    return split
