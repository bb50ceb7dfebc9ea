import logging
from decimal import Decimal

from errors import ValidationError
from ledger.common import clean_text, get_scoped, parse_amount, parse_date
from models import SavingsGoal, db

logger = logging.getLogger(__name__)

STATUSES = ('active', 'completed', 'cancelled')


def _sync_status(goal):
    if goal.status == 'cancelled':
        return
    goal.status = 'completed' if goal.current_amount >= goal.target_amount else 'active'


def create_goal(household_id, data):
    goal = SavingsGoal(
        household_id=household_id,
        name=clean_text(data.get('name'), 'name', 100, required=True),
        target_amount=parse_amount(data.get('target_amount'), field='target_amount'),
        current_amount=parse_amount(data.get('current_amount') or 0, field='current_amount', allow_zero=True),
        deadline=parse_date(data['deadline'], 'deadline') if data.get('deadline') else None,
        status='active',
    )
    _sync_status(goal)
    db.session.add(goal)
    db.session.commit()
    return goal


def get_goal(household_id, goal_id):
    return get_scoped(SavingsGoal, goal_id, household_id, 'Savings goal')


def update_goal(household_id, goal_id, data):
    goal = get_goal(household_id, goal_id)
    if 'name' in data:
        goal.name = clean_text(data['name'], 'name', 100, required=True)
    if 'target_amount' in data:
        goal.target_amount = parse_amount(data['target_amount'], field='target_amount')
    if 'current_amount' in data:
        goal.current_amount = parse_amount(data['current_amount'], field='current_amount', allow_zero=True)
    if 'deadline' in data:
        goal.deadline = parse_date(data['deadline'], 'deadline') if data['deadline'] else None
    if 'status' in data:
        if data['status'] not in STATUSES:
            raise ValidationError('Invalid status.', field='status')
        goal.status = data['status']
        if goal.status != 'cancelled':
            goal.status = 'active'
    _sync_status(goal)
    db.session.commit()
    return goal


def delete_goal(household_id, goal_id):
    goal = get_goal(household_id, goal_id)
    db.session.delete(goal)
    db.session.commit()


def contribute(household_id, goal_id, amount):
    goal = get_goal(household_id, goal_id)
    if goal.status == 'cancelled':
        raise ValidationError('This goal was cancelled.', field='amount')
    amount = parse_amount(amount)
    goal.current_amount = (goal.current_amount or Decimal('0')) + amount
    was = goal.status
    _sync_status(goal)
    db.session.commit()
    if was != 'completed' and goal.status == 'completed':
        logger.info('Savings goal %s reached its target of %s', goal.id, goal.target_amount)
    return goal


def withdraw(household_id, goal_id, amount):
    goal = get_goal(household_id, goal_id)
    amount = parse_amount(amount)
    if amount > goal.current_amount:
        raise ValidationError('You cannot withdraw more than the saved amount.', field='amount')
    goal.current_amount -= amount
    _sync_status(goal)
    db.session.commit()
    return goal


def list_goals(household_id, status=None):
    q = SavingsGoal.query.filter_by(household_id=household_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(SavingsGoal.created_at.desc(), SavingsGoal.id.desc()).all()


def savings_summary(household_id):
    goals = list_goals(household_id)
    active = [g for g in goals if g.status == 'active']
    saved = sum((g.current_amount for g in active), Decimal('0.00'))
    target = sum((g.target_amount for g in active), Decimal('0.00'))
    return {
        'active_goals': len(active),
        'completed_goals': sum(1 for g in goals if g.status == 'completed'),
        'total_saved': float(saved),
        'total_target': float(target),
        'percentage': float(saved / target * 100) if target > 0 else 0.0,
    }
