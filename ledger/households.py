"""Households and membership.

Every user belongs to exactly one household. Registering creates a personal
household; joining another one (by code or invitation) moves the user and
drops the personal household when nobody else is in it.

Membership never changes while the member has unpaid splits with anyone in
the household: removal, leaving and moving are all rejected until settled.
"""
import logging
import secrets

from errors import NotFoundError, ValidationError
from ledger.balances import ensure_settled
from ledger.common import clean_text, require_member, require_owner, text_arg
from models import (BankTransaction, Budget, Expense, Household, HouseholdMember, RecurringExpense,
                    SavingsGoal, Settlement, User, db)

logger = logging.getLogger(__name__)

# No 0/O or 1/I
INVITE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
INVITE_CODE_LENGTH = 6
DEFAULT_NAME = 'My Home'


def generate_invite_code():
    while True:
        code = ''.join(secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))
        if not Household.query.filter_by(invite_code=code).first():
            return code


def _clean_name(name):
    name = clean_text(name, 'name', 100) or ''
    if len(name) < 2:
        raise ValidationError('Name must be at least 2 characters.', field='name')
    return name


def new_household(user, name=DEFAULT_NAME):
    household = Household(name=_clean_name(name), invite_code=generate_invite_code(), owner_id=user.id)
    db.session.add(household)
    db.session.flush()
    db.session.add(HouseholdMember(household_id=household.id, user_id=user.id, role='owner'))
    db.session.flush()
    return household


def create_household(user_id, name=DEFAULT_NAME):
    """Start a new household owned by ``user_id``, moving them out of their current one."""
    user = db.session.get(User, user_id)
    current = user.membership
    if current is not None:
        if len(current.household.members) == 1:
            raise ValidationError('You already have a household of your own. Rename it instead.',
                                  field='household')
        _detach(current)
        db.session.expire(user, ['membership'])
    household = new_household(user, name)
    db.session.commit()
    logger.info('Household %s created by user %s', household.id, user_id)
    return household


def get_household(household_id):
    household = db.session.get(Household, household_id)
    if household is None:
        raise NotFoundError('Household')
    return household


def household_of(user_id):
    membership = HouseholdMember.query.filter_by(user_id=user_id).first()
    if membership is None:
        raise NotFoundError('Household')
    return membership.household


def rename_household(household_id, user_id, name):
    require_owner(household_id, user_id)
    household = get_household(household_id)
    household.name = _clean_name(name)
    db.session.commit()
    return household


def regenerate_invite_code(household_id, user_id):
    require_owner(household_id, user_id)
    household = get_household(household_id)
    household.invite_code = generate_invite_code()
    db.session.commit()
    return household


def list_members(household_id):
    return (HouseholdMember.query.filter_by(household_id=household_id)
            .order_by(HouseholdMember.joined_at, HouseholdMember.id).all())


def _delete_household(household):
    expense_ids = [e.id for e in Expense.query.filter_by(household_id=household.id)]
    if expense_ids:
        BankTransaction.query.filter(BankTransaction.expense_id.in_(expense_ids)).update(
            {'expense_id': None}, synchronize_session=False)
    for model in (Settlement, Budget, RecurringExpense, SavingsGoal):
        model.query.filter_by(household_id=household.id).delete()
    for expense in Expense.query.filter_by(household_id=household.id).all():
        db.session.delete(expense)
    db.session.delete(household)


def _detach(membership):
    """Remove a membership after checking the move is allowed."""
    household = membership.household
    others = [m for m in household.members if m.user_id != membership.user_id]
    if membership.role == 'owner' and others:
        raise ValidationError('The owner cannot leave a household that still has members.',
                              field='household')
    ensure_settled(household.id, membership.user_id)
    if others:
        db.session.delete(membership)
    else:
        # A household left empty goes with its data
        _delete_household(household)
    db.session.flush()


def move_user_to(user, household, role='member'):
    """Move ``user`` into ``household``. The caller commits."""
    current = user.membership
    if current is not None:
        if current.household_id == household.id:
            raise ValidationError('You are already a member of this household.', field='household')
        _detach(current)
    db.session.add(HouseholdMember(household_id=household.id, user_id=user.id, role=role))
    db.session.flush()
    db.session.expire(user, ['membership'])


def join_by_code(user_id, code):
    code = text_arg(code, 'code').upper()
    household = Household.query.filter_by(invite_code=code).first() if code else None
    if household is None:
        raise NotFoundError('Household')
    user = db.session.get(User, user_id)
    move_user_to(user, household)
    db.session.commit()
    logger.info('User %s joined household %s by code', user_id, household.id)
    return household


def remove_member(household_id, owner_id, member_user_id):
    require_owner(household_id, owner_id)
    membership = HouseholdMember.query.filter_by(household_id=household_id, user_id=member_user_id).first()
    if membership is None:
        raise NotFoundError('Member')
    if membership.role == 'owner':
        raise ValidationError('The owner cannot be removed.', field='member')
    ensure_settled(household_id, member_user_id)
    user = membership.user
    db.session.delete(membership)
    db.session.flush()
    db.session.expire(user, ['membership'])
    new_household(user)
    db.session.commit()
    logger.info('User %s removed from household %s by %s', member_user_id, household_id, owner_id)


def leave_household(user_id):
    user = db.session.get(User, user_id)
    membership = user.membership
    if membership is None:
        raise NotFoundError('Household')
    if membership.role == 'owner':
        raise ValidationError('The owner cannot leave the household.', field='household')
    household_id = membership.household_id
    ensure_settled(household_id, user_id)
    db.session.delete(membership)
    db.session.flush()
    db.session.expire(user, ['membership'])
    household = new_household(user)
    db.session.commit()
    logger.info('User %s left household %s', user_id, household_id)
    return household


def household_details(household_id, viewer_id):
    require_member(household_id, viewer_id)
    household = get_household(household_id)
    data = household.to_dict(viewer_id)
    data['members'] = [m.to_dict() for m in list_members(household_id)]
    return data
