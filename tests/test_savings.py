from decimal import Decimal

import pytest

from errors import NotFoundError, ValidationError
from ledger import savings


class TestSavingsGoals:

    def test_contribution_completes_goal(self, home):
        goal = savings.create_goal(home.id, {'name': 'Holidays', 'target_amount': '1000'})
        assert goal.status == 'active'
        savings.contribute(home.id, goal.id, '600')
        assert goal.status == 'active'
        savings.contribute(home.id, goal.id, '400')
        assert goal.status == 'completed'
        assert goal.current_amount == Decimal('1000.00')

    def test_withdraw_reactivates(self, home):
        goal = savings.create_goal(home.id, {'name': 'Car', 'target_amount': '100', 'current_amount': '100'})
        assert goal.status == 'completed'
        savings.withdraw(home.id, goal.id, '30')
        assert goal.status == 'active'
        assert goal.current_amount == Decimal('70.00')
        with pytest.raises(ValidationError):
            savings.withdraw(home.id, goal.id, '70.01')

    def test_cancelled_goal_takes_no_contributions(self, home):
        goal = savings.create_goal(home.id, {'name': 'Bike', 'target_amount': '300'})
        savings.update_goal(home.id, goal.id, {'status': 'cancelled'})
        with pytest.raises(ValidationError):
            savings.contribute(home.id, goal.id, '10')

    @pytest.mark.parametrize('data', [
        {'name': '', 'target_amount': '10'},
        {'name': 'x' * 101, 'target_amount': '10'},
        {'name': 'Trip', 'target_amount': '0'},
        {'name': 'Trip', 'target_amount': '10', 'current_amount': '-1'},
        {'name': 'Trip', 'target_amount': '10', 'deadline': 'soon'},
    ])
    def test_validation(self, home, data):
        with pytest.raises(ValidationError):
            savings.create_goal(home.id, data)

    def test_summary_counts_active_goals(self, home):
        savings.create_goal(home.id, {'name': 'A', 'target_amount': '100', 'current_amount': '25'})
        savings.create_goal(home.id, {'name': 'B', 'target_amount': '300', 'current_amount': '75'})
        savings.create_goal(home.id, {'name': 'C', 'target_amount': '50', 'current_amount': '50'})
        summary = savings.savings_summary(home.id)
        assert summary['active_goals'] == 2
        assert summary['completed_goals'] == 1
        assert summary['total_saved'] == 100.0
        assert summary['percentage'] == 25.0

    def test_goals_are_household_scoped(self, home, make_user):
        goal = savings.create_goal(home.id, {'name': 'A', 'target_amount': '100'})
        carol = make_user('Carol')
        with pytest.raises(NotFoundError):
            savings.contribute(carol.household_id, goal.id, '10')
