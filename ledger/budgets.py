import logging
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from categories import TOTAL_BUDGET_KEY, Category
from ledger.common import CENT, get_scoped, month_range, parse_amount, parse_period
from ledger.expenses import spent_between
from models import Budget, db

logger = logging.getLogger(__name__)

OK = 'ok'
WARNING = 'warning'
DANGER = 'danger'


@dataclass
class BudgetStatus:
    level: str
    percentage: Decimal = None
    spent: Decimal = Decimal('0.00')
    ceiling: Decimal = None
    remaining: Decimal = None

    def to_dict(self):
        def f(v):
            return float(v) if v is not None else None
        return {
            'level': self.level,
            'percentage': f(self.percentage),
            'spent': f(self.spent),
            'ceiling': f(self.ceiling),
            'remaining': f(self.remaining),
        }


def evaluate(spent, ceiling, warning=80, danger=100):
    """Classify spend against a ceiling.

    No ceiling (or a non-positive one) is never an alert: the level is ``ok``
    and the percentage is undefined.
    """
    spent = Decimal(str(spent))
    if ceiling is None or Decimal(str(ceiling)) <= 0:
        return BudgetStatus(OK, None, spent, None, None)
    ceiling = Decimal(str(ceiling))
    pct = spent / ceiling * 100
    if pct >= danger:
        level = DANGER
    elif pct >= warning:
        level = WARNING
    else:
        level = OK
    return BudgetStatus(level, pct.quantize(Decimal('0.1')), spent, ceiling, (ceiling - spent).quantize(CENT))


def _thresholds():
    return (current_app.config['BUDGET_WARNING_THRESHOLD'],
            current_app.config['BUDGET_DANGER_THRESHOLD'])


def _budget_key(category):
    if category in (None, '', TOTAL_BUDGET_KEY):
        return TOTAL_BUDGET_KEY
    return Category.parse(category).value


def set_budget(household_id, amount, year, month, category=None):
    year, month = parse_period(year, month)
    amount = parse_amount(amount)
    key = _budget_key(category)
    budget = Budget.query.filter_by(household_id=household_id, category=key, year=year, month=month).first()
    if budget is None:
        budget = Budget(household_id=household_id, category=key, year=year, month=month)
        db.session.add(budget)
    budget.monthly_limit = amount
    db.session.commit()
    logger.info('Budget %s for %s-%02d in household %s set to %s', key, year, month, household_id, amount)
    return budget


def get_budget(household_id, year, month, category=None):
    year, month = parse_period(year, month)
    return Budget.query.filter_by(household_id=household_id, category=_budget_key(category),
                                  year=year, month=month).first()


def delete_budget(household_id, budget_id):
    budget = get_scoped(Budget, budget_id, household_id, 'Budget')
    db.session.delete(budget)
    db.session.commit()


def budget_summary(household_id, year, month):
    year, month = parse_period(year, month)
    start, end = month_range(year, month)
    budget = get_budget(household_id, year, month)
    spent = spent_between(household_id, start, end)
    status = evaluate(spent, budget.monthly_limit if budget else None, *_thresholds())
    data = status.to_dict()
    data.update({'year': year, 'month': month, 'budget_id': budget.id if budget else None})
    return data


def category_budget_summary(household_id, year, month):
    year, month = parse_period(year, month)
    start, end = month_range(year, month)
    warning, danger = _thresholds()
    budgets = (Budget.query.filter(Budget.household_id == household_id, Budget.year == year,
                                   Budget.month == month, Budget.category != TOTAL_BUDGET_KEY)
               .order_by(Budget.category).all())
    summary = []
    for budget in budgets:
        category = Category.parse(budget.category)
        status = evaluate(spent_between(household_id, start, end, category.value), budget.monthly_limit,
                          warning, danger)
        row = status.to_dict()
        row.update({'budget_id': budget.id, 'category': category.value, 'label': category.label,
                    'color': category.color})
        summary.append(row)
    return summary


def budget_alerts(household_id, year, month):
    """Every budget of the period that is at warning level or worse."""
    alerts = []
    total = budget_summary(household_id, year, month)
    if total['level'] != OK:
        alerts.append(dict(total, category=TOTAL_BUDGET_KEY))
    alerts.extend(row for row in category_budget_summary(household_id, year, month) if row['level'] != OK)
    return alerts
