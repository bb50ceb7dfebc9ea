"""Who owes whom inside a household.

Unpaid splits are netted per pair of members: if A owes B 30 and B owes A 10,
the result is a single transfer of 20 from A to B. Netting is pairwise only,
so three members owing each other in a cycle still produce three transfers.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from errors import AuthorizationError, ValidationError
from ledger.common import CENT, household_member_ids, require_member, text_arg
from ledger.expenses import unpaid_splits_query
from models import Expense, ExpenseSplit, Settlement, User, db, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


@dataclass(frozen=True)
class Transfer:
    from_user: int
    to_user: int
    amount: Decimal

    def to_dict(self, names=None):
        names = names or {}
        return {
            'from': self.from_user,
            'to': self.to_user,
            'from_name': names.get(self.from_user),
            'to_name': names.get(self.to_user),
            'amount': float(self.amount),
        }


def net_transfers(debts, member_ids):
    """Reduce ``(debtor, creditor, amount)`` rows to settling transfers.

    Returns ``(transfers, positions)`` where ``positions`` maps each member to
    what they are owed (positive) or owe (negative) overall.
    """
    members = set(member_ids)
    pair_net = defaultdict(lambda: ZERO)
    positions = defaultdict(lambda: ZERO)

    for debtor, creditor, amount in debts:
        if debtor == creditor:
            continue
        if debtor not in members or creditor not in members:
            logger.warning('Split between %s and %s references a non-member, excluded from balances',
                           debtor, creditor)
            continue
        amount = Decimal(amount)
        # Keyed by (low, high): positive means low owes high
        if debtor < creditor:
            pair_net[(debtor, creditor)] += amount
        else:
            pair_net[(creditor, debtor)] -= amount
        positions[debtor] -= amount
        positions[creditor] += amount

    transfers = []
    for (low, high), net in pair_net.items():
        net = net.quantize(CENT)
        if net > 0:
            transfers.append(Transfer(low, high, net))
        elif net < 0:
            transfers.append(Transfer(high, low, -net))
    transfers.sort(key=lambda t: (-t.amount, t.from_user, t.to_user))

    return transfers, {uid: pos.quantize(CENT) for uid, pos in positions.items() if pos.quantize(CENT) != 0}


def _unpaid_debts(household_id):
    rows = (db.session.query(ExpenseSplit.user_id, Expense.paid_by, ExpenseSplit.amount)
            .join(Expense, ExpenseSplit.expense_id == Expense.id)
            .filter(Expense.household_id == household_id, ExpenseSplit.is_paid.is_(False))
            .all())
    return [(debtor, creditor, amount) for debtor, creditor, amount in rows]


def household_balances(household_id):
    members = household_member_ids(household_id)
    transfers, positions = net_transfers(_unpaid_debts(household_id), members)
    names = dict(db.session.query(User.id, User.name).filter(User.id.in_(members)).all()) if members else {}
    return {
        'transfers': [t.to_dict(names) for t in transfers],
        'positions': {uid: float(amount) for uid, amount in positions.items()},
    }


def _splits_between(household_id, debtor, creditor):
    return (unpaid_splits_query(household_id)
            .filter(ExpenseSplit.user_id == debtor, Expense.paid_by == creditor).all())


def outstanding_for_member(household_id, user_id):
    """Total of unpaid splits the member owes or is owed, own shares excluded."""
    total = ZERO
    for debtor, creditor, amount in _unpaid_debts(household_id):
        if debtor != creditor and user_id in (debtor, creditor):
            total += Decimal(amount)
    return total.quantize(CENT)


def ensure_settled(household_id, user_id):
    """Block membership changes while the member has unpaid splits."""
    outstanding = outstanding_for_member(household_id, user_id)
    if outstanding > 0:
        raise ValidationError(
            f'This member still has {outstanding} € in unpaid splits. Settle them first.', field='member')


def settle_pair(household_id, from_user, to_user, acting_user_id, note=None):
    """Mark every unpaid split between the pair as paid.

    Returns the ``Settlement`` for the net amount, or ``None`` when the
    pair's debts cancel out exactly.
    """
    if acting_user_id not in (from_user, to_user):
        raise AuthorizationError(f'user {acting_user_id} is not part of this settlement')
    if from_user == to_user:
        raise ValidationError('Choose two different members.', field='to')
    require_member(household_id, from_user, field='from')
    require_member(household_id, to_user, field='to')

    owed = _splits_between(household_id, from_user, to_user)
    owed_back = _splits_between(household_id, to_user, from_user)
    if not owed and not owed_back:
        raise ValidationError('Nothing to settle between these members.')

    net = sum((s.amount for s in owed), ZERO) - sum((s.amount for s in owed_back), ZERO)
    if net < 0:
        from_user, to_user, net = to_user, from_user, -net

    note = text_arg(note, 'note') or None
    now = utcnow()
    for split in owed + owed_back:
        split.is_paid = True
        split.paid_at = now
    # Debts that cancel out are closed without a money movement
    settlement = None
    if net:
        settlement = Settlement(household_id=household_id, from_user_id=from_user, to_user_id=to_user,
                                amount=net.quantize(CENT), note=note, settled_at=now)
        db.session.add(settlement)
    db.session.commit()
    logger.info('Household %s: %s settled %s with %s (%s splits)', household_id, from_user, net,
                to_user, len(owed) + len(owed_back))
    return settlement


def list_settlements(household_id, limit=50):
    return (Settlement.query.filter_by(household_id=household_id)
            .order_by(Settlement.settled_at.desc()).limit(limit).all())
