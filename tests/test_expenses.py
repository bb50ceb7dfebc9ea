from datetime import date
from decimal import Decimal

import pytest

from conftest import money
from errors import AuthorizationError, NotFoundError, ValidationError
from ledger import expenses, splits
from models import ExpenseSplit


class TestCreateExpense:

    def base(self, **overrides):
        data = {'amount': '12.50', 'category': 'food', 'date': '2024-03-01', 'description': 'Lunch'}
        data.update(overrides)
        return data

    def test_creates_expense(self, home):
        expense = expenses.create_expense(home.id, home.owner.id, self.base(tags=['Work', 'work', ' lunch ']))
        assert expense.amount == Decimal('12.50')
        assert expense.category == 'food'
        assert expense.tags == ['work', 'lunch']
        assert expense.paid_by == home.owner.id
        assert expense.source == 'manual'

    @pytest.mark.parametrize('field,value', [
        ('amount', '0'),
        ('amount', '-3'),
        ('amount', '1.234'),
        ('amount', 'abc'),
        ('category', 'pets'),
        ('date', '01/03/2024'),
        ('description', 'x' * 201),
        ('tags', ['a', 'b', 'c', 'd', 'e', 'f']),
        ('tags', ['x' * 31]),
    ])
    def test_rejects_invalid_fields(self, home, field, value):
        with pytest.raises(ValidationError) as exc:
            expenses.create_expense(home.id, home.owner.id, self.base(**{field: value}))
        assert exc.value.field == field

    def test_payer_must_be_member(self, home, make_user):
        carol = make_user('Carol')
        with pytest.raises(ValidationError) as exc:
            expenses.create_expense(home.id, home.owner.id, self.base(paid_by=carol.id))
        assert exc.value.field == 'paid_by'

    def test_other_households_look_missing(self, home, make_user, add_expense):
        expense = add_expense('10.00')
        carol = make_user('Carol')
        with pytest.raises(NotFoundError):
            expenses.delete_expense(carol.household_id, expense.id)
        with pytest.raises(NotFoundError):
            expenses.update_expense(carol.household_id, expense.id, {'amount': '1'})


class TestQueries:

    def test_list_is_newest_first_and_filtered(self, home, add_expense):
        add_expense('1.00', on=date(2024, 3, 1))
        add_expense('2.00', on=date(2024, 3, 5), category='bills')
        add_expense('3.00', on=date(2024, 3, 3))
        rows = expenses.list_expenses(home.id)
        assert [e.amount for e in rows] == [money('2.00'), money('3.00'), money('1.00')]
        rows = expenses.list_expenses(home.id, category='bills')
        assert [e.amount for e in rows] == [money('2.00')]
        rows = expenses.list_expenses(home.id, start='2024-03-02', end='2024-03-04')
        assert [e.amount for e in rows] == [money('3.00')]

    def test_monthly_stats(self, home, add_expense):
        add_expense('10.00', on=date(2024, 3, 1))
        add_expense('5.50', on=date(2024, 3, 31), category='home')
        add_expense('100.00', on=date(2024, 4, 1))
        stats = expenses.monthly_stats(home.id, 2024, 3)
        assert stats['total'] == money('15.50')
        assert stats['count'] == 2
        assert stats['by_category']['food'] == money('10.00')
        assert stats['by_category']['home'] == money('5.50')
        assert stats['by_category']['health'] == money('0')

    def test_monthly_history(self, home, add_expense):
        add_expense('10.00', on=date(2024, 2, 10))
        add_expense('20.00', on=date(2024, 3, 10))
        history = expenses.monthly_history(home.id, months=3, today=date(2024, 3, 20))
        assert [(h['month'], h['total']) for h in history] == [
            (1, money('0')), (2, money('10.00')), (3, money('20.00'))]


class TestSplits:

    def test_split_sum_cannot_exceed_expense(self, home, add_expense):
        expense = add_expense('50.00')
        with pytest.raises(ValidationError) as exc:
            splits.create_splits(home.id, expense.id, [
                {'user_id': home.owner.id, 'amount': '30.00'},
                {'user_id': home.member.id, 'amount': '20.01'},
            ])
        assert exc.value.field == 'splits'
        assert ExpenseSplit.query.count() == 0

    def test_partial_split_is_allowed(self, home, add_expense):
        expense = add_expense('50.00')
        rows = splits.create_splits(home.id, expense.id, [{'user_id': home.member.id, 'amount': '20.00'}])
        assert len(rows) == 1
        assert rows[0].percentage == Decimal('40.00')

    def test_member_appears_once(self, home, add_expense):
        expense = add_expense('50.00')
        with pytest.raises(ValidationError):
            splits.create_splits(home.id, expense.id, [
                {'user_id': home.member.id, 'amount': '10.00'},
                {'user_id': home.member.id, 'amount': '10.00'},
            ])

    def test_non_member_rejected(self, home, make_user, add_expense):
        carol = make_user('Carol')
        expense = add_expense('50.00')
        with pytest.raises(ValidationError):
            splits.create_splits(home.id, expense.id, [{'user_id': carol.id, 'amount': '10.00'}])

    def test_payer_share_is_paid_and_resplit_replaces(self, home, add_expense):
        expense = add_expense('50.00', paid_by=home.owner)
        splits.create_splits(home.id, expense.id, [
            {'user_id': home.owner.id, 'amount': '25.00'},
            {'user_id': home.member.id, 'amount': '25.00'},
        ])
        by_user = {s.user_id: s for s in expense.splits}
        assert by_user[home.owner.id].is_paid is True
        assert by_user[home.member.id].is_paid is False

        splits.create_splits(home.id, expense.id, [{'user_id': home.member.id, 'amount': '50.00'}])
        assert [(s.user_id, s.amount) for s in ExpenseSplit.query.all()] == [(home.member.id, money('50.00'))]

    def test_equal_shares_distribute_cents(self):
        shares = splits.equal_shares(Decimal('10.00'), [1, 2, 3])
        assert [s['amount'] for s in shares] == [Decimal('3.34'), Decimal('3.33'), Decimal('3.33')]
        assert sum(s['amount'] for s in shares) == Decimal('10.00')

    def test_amount_cannot_drop_below_split_total(self, home, add_expense):
        expense = add_expense('50.00')
        splits.create_splits(home.id, expense.id, [{'user_id': home.member.id, 'amount': '40.00'}])
        with pytest.raises(ValidationError):
            expenses.update_expense(home.id, expense.id, {'amount': '39.99'})
        expenses.update_expense(home.id, expense.id, {'amount': '40.00'})

    def test_pending_owed_and_summary(self, home, add_expense):
        expense = add_expense('30.00', paid_by=home.owner)
        splits.create_splits(home.id, expense.id, [
            {'user_id': home.owner.id, 'amount': '15.00'},
            {'user_id': home.member.id, 'amount': '15.00'},
        ])
        assert [s.amount for s in splits.pending_splits_for(home.id, home.member.id)] == [money('15.00')]
        assert [s.amount for s in splits.splits_owed_to(home.id, home.owner.id)] == [money('15.00')]
        assert splits.pending_splits_for(home.id, home.owner.id) == []
        summary = splits.splits_summary(home.id, home.member.id)
        assert summary == {'i_owe': money('15.00'), 'owed_to_me': money('0'), 'net': money('-15.00')}

    def test_mark_paid_by_outsider_is_denied(self, home, make_user, add_expense):
        from ledger import households
        carol = make_user('Carol')
        households.join_by_code(carol.id, home.household.invite_code)
        expense = add_expense('30.00', paid_by=home.owner)
        split = splits.create_splits(home.id, expense.id, [{'user_id': home.member.id, 'amount': '10.00'}])[0]
        with pytest.raises(AuthorizationError):
            splits.mark_split_paid(home.id, split.id, carol.id)
        splits.mark_split_paid(home.id, split.id, home.member.id)
        assert split.is_paid is True
        assert split.paid_at is not None
