import logging
import random
from collections import defaultdict
from decimal import Decimal

import pytest

from conftest import money
from errors import AuthorizationError, ValidationError
from ledger import balances, households, splits
from models import ExpenseSplit, Settlement


def D(value):
    return Decimal(value)


class TestNetTransfers:

    def test_pair_is_netted_into_one_transfer(self):
        debts = [(1, 2, D('30.00')), (2, 1, D('10.00'))]
        transfers, positions = balances.net_transfers(debts, {1, 2})
        assert transfers == [balances.Transfer(1, 2, D('20.00'))]
        assert positions == {1: D('-20.00'), 2: D('20.00')}

    def test_zero_net_is_omitted(self):
        transfers, positions = balances.net_transfers([(1, 2, D('15')), (2, 1, D('15'))], {1, 2})
        assert transfers == []
        assert positions == {}

    def test_own_share_contributes_nothing(self):
        transfers, _ = balances.net_transfers([(1, 1, D('50'))], {1})
        assert transfers == []

    def test_non_member_is_excluded_and_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger='ledger.balances'):
            transfers, positions = balances.net_transfers([(1, 2, D('10')), (3, 2, D('99'))], {1, 2})
        assert transfers == [balances.Transfer(1, 2, D('10.00'))]
        assert 3 not in positions
        assert 'non-member' in caplog.text

    def test_netting_is_pairwise_only(self):
        # A cycle is not collapsed across three members
        debts = [(1, 2, D('10')), (2, 3, D('10')), (3, 1, D('10'))]
        transfers, positions = balances.net_transfers(debts, {1, 2, 3})
        assert len(transfers) == 3
        assert positions == {}

    def test_amounts_are_rounded_and_positive(self):
        transfers, _ = balances.net_transfers([(2, 1, D('10.333')), (2, 1, D('0.001'))], {1, 2})
        assert transfers == [balances.Transfer(2, 1, D('10.33'))]
        assert all(t.amount > 0 for t in transfers)

    def test_transfers_conserve_every_member_position(self):
        rng = random.Random(7)
        members = {1, 2, 3, 4, 5}
        for _ in range(50):
            debts = [(rng.choice(list(members)), rng.choice(list(members)),
                      Decimal(rng.randint(1, 50000)) / 100) for _ in range(rng.randint(0, 25))]
            transfers, positions = balances.net_transfers(debts, members)
            flow = defaultdict(Decimal)
            for t in transfers:
                assert t.amount > 0
                flow[t.from_user] -= t.amount
                flow[t.to_user] += t.amount
            for member in members:
                assert flow[member] == positions.get(member, Decimal('0'))


class TestHouseholdBalances:

    def test_unpaid_splits_become_transfers(self, home, add_expense):
        expense = add_expense('90.00', paid_by=home.owner)
        splits.create_splits(home.id, expense.id, [
            {'user_id': home.owner.id, 'amount': '45.00'},
            {'user_id': home.member.id, 'amount': '45.00'},
        ])
        result = balances.household_balances(home.id)
        assert result['transfers'] == [{
            'from': home.member.id, 'to': home.owner.id,
            'from_name': 'Bob', 'to_name': 'Alice', 'amount': 45.0,
        }]
        assert result['positions'] == {home.member.id: -45.0, home.owner.id: 45.0}

    def test_settle_pair_marks_splits_paid(self, home, add_expense):
        first = add_expense('60.00', paid_by=home.owner)
        second = add_expense('20.00', paid_by=home.member)
        splits.create_splits(home.id, first.id, [{'user_id': home.member.id, 'amount': '30.00'}])
        splits.create_splits(home.id, second.id, [{'user_id': home.owner.id, 'amount': '10.00'}])

        settlement = balances.settle_pair(home.id, home.owner.id, home.member.id, home.member.id, 'cash')

        # Direction follows the net: Bob owed the difference
        assert settlement.from_user_id == home.member.id
        assert settlement.to_user_id == home.owner.id
        assert settlement.amount == money('20.00')
        assert ExpenseSplit.query.filter_by(is_paid=False).count() == 0
        assert balances.household_balances(home.id)['transfers'] == []
        assert Settlement.query.count() == 1

    def test_debts_that_cancel_out_record_no_settlement(self, home, add_expense):
        first = add_expense('20.00', paid_by=home.owner)
        second = add_expense('30.00', paid_by=home.member)
        splits.create_splits(home.id, first.id, [{'user_id': home.member.id, 'amount': '10.00'}])
        splits.create_splits(home.id, second.id, [{'user_id': home.owner.id, 'amount': '10.00'}])

        assert balances.settle_pair(home.id, home.owner.id, home.member.id, home.owner.id) is None

        assert Settlement.query.count() == 0
        assert ExpenseSplit.query.filter_by(is_paid=False).count() == 0
        assert balances.outstanding_for_member(home.id, home.member.id) == money('0.00')

    def test_settle_with_nothing_outstanding(self, home):
        with pytest.raises(ValidationError):
            balances.settle_pair(home.id, home.owner.id, home.member.id, home.owner.id)

    def test_only_the_pair_can_settle(self, home, make_user, add_expense):
        carol = make_user('Carol')
        households.join_by_code(carol.id, home.household.invite_code)
        expense = add_expense('10.00', paid_by=home.owner)
        splits.create_splits(home.id, expense.id, [{'user_id': home.member.id, 'amount': '10.00'}])
        with pytest.raises(AuthorizationError):
            balances.settle_pair(home.id, home.member.id, home.owner.id, carol.id)

    def test_outstanding_for_member(self, home, add_expense):
        expense = add_expense('40.00', paid_by=home.owner)
        splits.create_splits(home.id, expense.id, [
            {'user_id': home.owner.id, 'amount': '20.00'},
            {'user_id': home.member.id, 'amount': '20.00'},
        ])
        assert balances.outstanding_for_member(home.id, home.member.id) == money('20.00')
        assert balances.outstanding_for_member(home.id, home.owner.id) == money('20.00')
