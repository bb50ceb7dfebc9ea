import calendar
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from errors import AuthorizationError, NotFoundError, ValidationError
from models import HouseholdMember, db

CENT = Decimal('0.01')
MAX_AMOUNT = Decimal('99999999.99')


def parse_amount(value, field='amount', allow_zero=False):
    """Parse a user-supplied money value into a 2-decimal ``Decimal``."""
    if value is None or value == '':
        raise ValidationError('Amount is required.', field=field)
    if isinstance(value, bool):
        raise ValidationError('Enter a valid amount.', field=field)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError('Enter a valid amount.', field=field) from None
    if not amount.is_finite():
        raise ValidationError('Enter a valid amount.', field=field)
    if amount.as_tuple().exponent < -2 and amount != amount.quantize(CENT):
        raise ValidationError('Use at most 2 decimals.', field=field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError('Amount must be greater than 0.', field=field)
    if amount > MAX_AMOUNT:
        raise ValidationError('Amount is too large.', field=field)
    return amount.quantize(CENT)


def parse_date(value, field='date'):
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError('Use the YYYY-MM-DD date format.', field=field) from None


def parse_period(year, month):
    try:
        year, month = int(year), int(month)
    except (TypeError, ValueError):
        raise ValidationError('Invalid period.', field='month') from None
    if not 1 <= month <= 12 or not 2000 <= year <= 2100:
        raise ValidationError('Invalid period.', field='month')
    return year, month


def month_range(year, month):
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def text_arg(value, field):
    """A string field from a request body. Missing is ``''``; other JSON types are rejected."""
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f'Invalid {field.replace("_", " ")}.', field=field)
    return value.strip()


def clean_text(value, field, max_length, required=False):
    text = text_arg(value, field)
    if required and not text:
        raise ValidationError(f'{field.capitalize()} is required.', field=field)
    if len(text) > max_length:
        raise ValidationError(f'{field.capitalize()} must be at most {max_length} characters.', field=field)
    return text or None


def household_member_ids(household_id):
    rows = db.session.query(HouseholdMember.user_id).filter_by(household_id=household_id).all()
    return {r.user_id for r in rows}


def get_membership(household_id, user_id):
    return HouseholdMember.query.filter_by(household_id=household_id, user_id=user_id).first()


def require_member(household_id, user_id, field=None):
    membership = get_membership(household_id, user_id)
    if membership is None:
        if field:
            raise ValidationError('That person is not a member of this household.', field=field)
        raise AuthorizationError(f'user {user_id} is not in household {household_id}')
    return membership


def require_owner(household_id, user_id):
    membership = require_member(household_id, user_id)
    if membership.role != 'owner':
        raise AuthorizationError(f'user {user_id} is not the owner of household {household_id}')
    return membership


def get_scoped(model, obj_id, household_id, what):
    """Fetch a household-scoped row; rows of other households look missing."""
    obj = model.query.filter_by(id=obj_id, household_id=household_id).first()
    if obj is None:
        raise NotFoundError(what)
    return obj
