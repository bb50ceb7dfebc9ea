from datetime import date
from decimal import Decimal

import pytest

from errors import ValidationError
from ledger import recurring
from models import Expense


def make_template(home, **overrides):
    data = {
        'amount': '50.00',
        'category': 'bills',
        'description': 'Internet',
        'frequency': 'monthly',
        'start_date': '2024-01-01',
    }
    data.update(overrides)
    return recurring.create_template(home.id, home.owner.id, data)


class TestStep:

    def test_monthly_keeps_anchor_day_and_clamps(self, home):
        template = make_template(home, start_date='2024-01-31')
        assert recurring.step(template, date(2024, 1, 31)) == date(2024, 2, 29)
        assert recurring.step(template, date(2024, 2, 29)) == date(2024, 3, 31)
        assert recurring.step(template, date(2024, 3, 31)) == date(2024, 4, 30)

    def test_weekly_and_biweekly(self, home):
        weekly = make_template(home, frequency='weekly')
        biweekly = make_template(home, frequency='biweekly')
        assert recurring.step(weekly, date(2024, 1, 1)) == date(2024, 1, 8)
        assert recurring.step(biweekly, date(2024, 1, 1)) == date(2024, 1, 15)

    def test_yearly_from_leap_day(self, home):
        template = make_template(home, frequency='yearly', start_date='2024-02-29')
        assert recurring.step(template, date(2024, 2, 29)) == date(2025, 2, 28)
        assert recurring.step(template, date(2025, 2, 28)) == date(2026, 2, 28)

    def test_first_due_honours_day_of_month(self, home):
        template = make_template(home, start_date='2024-01-20', day_of_month=5)
        assert template.next_execution_date == date(2024, 2, 5)


class TestMaterialize:

    def test_catches_up_elapsed_periods(self, home):
        template = make_template(home)
        assert template.next_execution_date == date(2024, 1, 1)

        created = recurring.materialize_due(home.id, date(2024, 3, 15))

        assert sorted(e.date for e in created) == [date(2024, 1, 1), date(2024, 2, 1)]
        assert all(e.source == 'recurring' and e.amount == Decimal('50.00') for e in created)
        assert template.next_execution_date == date(2024, 3, 1)
        assert template.last_executed_date == date(2024, 2, 1)

    def test_running_again_creates_nothing(self, home):
        make_template(home)
        recurring.materialize_due(home.id, date(2024, 3, 15))
        assert recurring.materialize_due(home.id, date(2024, 3, 15)) == []
        assert Expense.query.filter_by(household_id=home.id).count() == 2

    def test_next_due_only_moves_forward(self, home):
        template = make_template(home)
        recurring.materialize_due(home.id, date(2024, 3, 15))
        recurring.materialize_due(home.id, date(2024, 1, 1))
        assert template.next_execution_date == date(2024, 3, 1)

    def test_paused_template_never_materializes(self, home):
        template = make_template(home)
        recurring.set_active(home.id, template.id, False)
        assert recurring.materialize_due(home.id, date(2024, 6, 1)) == []
        assert template.next_execution_date == date(2024, 1, 1)

    def test_end_date_deactivates(self, home):
        template = make_template(home, end_date='2024-02-15')
        created = recurring.materialize_due(home.id, date(2024, 6, 1))
        assert [e.date for e in created] == [date(2024, 1, 1), date(2024, 2, 1)]
        assert template.is_active is False

    def test_delete_keeps_materialized_expenses(self, home):
        template = make_template(home)
        recurring.materialize_due(home.id, date(2024, 3, 15))
        recurring.delete_template(home.id, template.id)
        assert Expense.query.filter_by(source='recurring').count() == 2


class TestTemplates:

    def test_invalid_frequency(self, home):
        with pytest.raises(ValidationError) as exc:
            make_template(home, frequency='daily')
        assert exc.value.field == 'frequency'

    def test_end_before_start(self, home):
        with pytest.raises(ValidationError):
            make_template(home, end_date='2023-12-01')

    def test_schedule_change_skips_executed_periods(self, home):
        template = make_template(home)
        recurring.materialize_due(home.id, date(2024, 3, 15))
        recurring.update_template(home.id, template.id, {'day_of_month': 15})
        assert template.next_execution_date == date(2024, 2, 15)

    def test_upcoming_for_month(self, home):
        make_template(home, frequency='weekly', amount='10', start_date='2024-03-04')
        make_template(home, amount='700', start_date='2024-03-01')
        upcoming = recurring.upcoming_for_month(home.id, 2024, 3)
        assert len(upcoming['occurrences']) == 5
        assert upcoming['total'] == 740.0
