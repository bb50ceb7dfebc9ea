"""Recurring expense templates and their materialization into expenses.

A template owns a ``next_execution_date``. Materializing catches up on every
period that has fully elapsed before the reference date, creating one expense
per period dated at its nominal due date, and advances the due date past them.
"""
import logging
from datetime import date, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from categories import Category
from errors import ValidationError
from ledger.common import (clean_text, get_scoped, household_member_ids, month_range, parse_amount,
                           parse_date)
from ledger.expenses import MAX_DESCRIPTION_LENGTH, add_expense, clean_tags
from models import RecurringExpense, db

logger = logging.getLogger(__name__)

FREQUENCIES = ('weekly', 'biweekly', 'monthly', 'yearly')
SCHEDULE_FIELDS = ('frequency', 'day_of_month', 'day_of_week', 'month_of_year', 'start_date')


def _anchor_day(template):
    return template.day_of_month or template.start_date.day


def _anchor_month(template):
    return template.month_of_year or template.start_date.month


def step(template, current):
    """The due date one period after ``current``.

    Monthly and yearly schedules keep their anchor day, clamped to the end of
    shorter months (31 Jan -> 29 Feb -> 31 Mar).
    """
    if template.frequency == 'weekly':
        return current + timedelta(weeks=1)
    if template.frequency == 'biweekly':
        return current + timedelta(weeks=2)
    if template.frequency == 'monthly':
        return current + relativedelta(months=1, day=_anchor_day(template))
    if template.frequency == 'yearly':
        return current + relativedelta(years=1, month=_anchor_month(template), day=_anchor_day(template))
    raise ValueError(f'unknown frequency {template.frequency!r}')


def first_due(template):
    start = template.start_date
    if template.frequency in ('weekly', 'biweekly'):
        if template.day_of_week is None:
            return start
        return start + timedelta(days=(template.day_of_week - start.weekday()) % 7)
    if template.frequency == 'monthly':
        candidate = start + relativedelta(day=_anchor_day(template))
        return candidate if candidate >= start else step(template, candidate)
    candidate = start + relativedelta(month=_anchor_month(template), day=_anchor_day(template))
    return candidate if candidate >= start else step(template, candidate)


def _int_in_range(value, field, low, high):
    if value in (None, ''):
        return None
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field.replace("_", " ")}.', field=field) from None
    if not low <= value <= high:
        raise ValidationError(f'Invalid {field.replace("_", " ")}.', field=field)
    return value


def _apply(template, data, creating):
    if creating or 'amount' in data:
        template.amount = parse_amount(data.get('amount'))
    if creating or 'category' in data:
        template.category = Category.parse(data.get('category')).value
    if creating or 'description' in data:
        template.description = clean_text(data.get('description'), 'description', MAX_DESCRIPTION_LENGTH)
    if creating or 'tags' in data:
        template.tags = clean_tags(data.get('tags'))
    if creating or 'frequency' in data:
        frequency = str(data.get('frequency') or '').lower()
        if frequency not in FREQUENCIES:
            raise ValidationError('Choose weekly, biweekly, monthly or yearly.', field='frequency')
        template.frequency = frequency
    if creating or 'day_of_month' in data:
        template.day_of_month = _int_in_range(data.get('day_of_month'), 'day_of_month', 1, 31)
    if creating or 'day_of_week' in data:
        template.day_of_week = _int_in_range(data.get('day_of_week'), 'day_of_week', 0, 6)
    if creating or 'month_of_year' in data:
        template.month_of_year = _int_in_range(data.get('month_of_year'), 'month_of_year', 1, 12)
    if creating or 'start_date' in data:
        template.start_date = parse_date(data['start_date'], 'start_date') if data.get('start_date') else date.today()
    if creating or 'end_date' in data:
        template.end_date = parse_date(data['end_date'], 'end_date') if data.get('end_date') else None
    if template.end_date and template.end_date < template.start_date:
        raise ValidationError('End date must be after the start date.', field='end_date')


def create_template(household_id, user_id, data):
    template = RecurringExpense(household_id=household_id, created_by=user_id, is_active=True)
    _apply(template, data, creating=True)
    template.next_execution_date = first_due(template)
    db.session.add(template)
    db.session.commit()
    logger.info('Recurring template %s created, first due %s', template.id, template.next_execution_date)
    return template


def get_template(household_id, template_id):
    return get_scoped(RecurringExpense, template_id, household_id, 'Recurring expense')


def update_template(household_id, template_id, data):
    template = get_template(household_id, template_id)
    _apply(template, data, creating=False)
    if any(field in data for field in SCHEDULE_FIELDS):
        # A new schedule starts over from its start date, skipping periods already materialized
        due = first_due(template)
        while template.last_executed_date and due <= template.last_executed_date:
            due = step(template, due)
        template.next_execution_date = due
    db.session.commit()
    return template


def set_active(household_id, template_id, active):
    template = get_template(household_id, template_id)
    template.is_active = bool(active)
    db.session.commit()
    return template


def delete_template(household_id, template_id):
    # Expenses already materialized from the template are kept
    template = get_template(household_id, template_id)
    db.session.delete(template)
    db.session.commit()


def list_templates(household_id, active_only=False):
    q = RecurringExpense.query.filter_by(household_id=household_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(RecurringExpense.next_execution_date, RecurringExpense.id).all()


def materialize(template, reference_date, payer_id=None):
    """Create the expenses for every elapsed period. The caller commits."""
    if not template.is_active:
        return []
    created = []
    while step(template, template.next_execution_date) <= reference_date:
        due = template.next_execution_date
        if template.end_date and due > template.end_date:
            break
        created.append(add_expense(
            template.household_id,
            payer_id or template.created_by,
            template.amount,
            template.category,
            due,
            template.description,
            template.tags,
            source='recurring',
        ))
        template.last_executed_date = due
        template.next_execution_date = step(template, due)
    if template.end_date and template.next_execution_date > template.end_date:
        template.is_active = False
        logger.info('Recurring template %s ended on %s', template.id, template.end_date)
    return created


def materialize_due(household_id, reference_date=None, payer_id=None):
    reference_date = reference_date or date.today()
    members = household_member_ids(household_id)
    created = []
    for template in list_templates(household_id, active_only=True):
        # The creator pays unless they have left the household
        payer = template.created_by if template.created_by in members else payer_id
        created.extend(materialize(template, reference_date, payer))
    db.session.commit()
    if created:
        logger.info('Materialized %s recurring expenses in household %s', len(created), household_id)
    return created


def upcoming_for_month(household_id, year, month):
    """Occurrences of active templates falling inside the month."""
    start, end = month_range(year, month)
    occurrences = []
    for template in list_templates(household_id, active_only=True):
        due = template.next_execution_date
        while due < start:
            due = step(template, due)
        while due <= end and not (template.end_date and due > template.end_date):
            occurrences.append({'template_id': template.id, 'date': due.isoformat(),
                                'description': template.description, 'category': template.category,
                                'amount': float(template.amount)})
            due = step(template, due)
    occurrences.sort(key=lambda o: o['date'])
    total = sum((Decimal(str(o['amount'])) for o in occurrences), Decimal('0.00'))
    return {'occurrences': occurrences, 'total': float(total)}
