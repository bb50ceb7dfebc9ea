from datetime import date
from decimal import Decimal

from ml import reports
from ml.recommender import generate_recommendations, predict_next_month_expense
from models import BankTransaction, db

TODAY = date(2024, 3, 20)


def credit(account, amount, on, tx_id):
    db.session.add(BankTransaction(account_id=account.id, external_id=tx_id, booking_date=on,
                                   amount=Decimal(amount), description='Payroll'))
    db.session.commit()


class TestReports:

    def test_month_over_month(self, home, add_expense):
        add_expense('100.00', on=date(2024, 2, 10))
        add_expense('150.00', on=date(2024, 3, 5))
        add_expense('999.00', on=date(2024, 1, 5))
        result = reports.month_over_month(home.id, today=TODAY)
        assert result['current_month'] == '2024-03'
        assert result['previous_total'] == 100.0
        assert result['current_total'] == 150.0
        assert result['change_pct'] == 50.0
        food = next(c for c in result['categories'] if c['category'] == 'food')
        assert food['change_pct'] == 50.0
        bills = next(c for c in result['categories'] if c['category'] == 'bills')
        assert bills['change_pct'] is None

    def test_month_over_month_empty(self, home):
        result = reports.month_over_month(home.id, today=TODAY)
        assert result['current_total'] == 0.0
        assert len(result['categories']) == 7

    def test_category_trends_fill_missing_months(self, home, add_expense):
        add_expense('40.00', on=date(2024, 3, 1), category='home')
        rows = reports.category_trends(home.id, months=3, today=TODAY)
        assert [r['month'] for r in rows] == ['2024-01', '2024-02', '2024-03']
        assert rows[-1]['home'] == 40.0
        assert rows[0]['home'] == 0.0

    def test_annual_summary(self, home, add_expense):
        add_expense('30.00', on=date(2024, 1, 3))
        add_expense('70.00', on=date(2024, 4, 3), category='leisure')
        summary = reports.annual_summary(home.id, 2024)
        assert summary['total'] == 100.0
        assert summary['highest_month'] == '2024-04'
        assert summary['average_monthly'] == 50.0
        assert summary['by_category']['leisure'] == 70.0

    def test_unusual_expenses(self, home, add_expense):
        for day in (1, 2, 3):
            add_expense('10.00', on=date(2024, 3, day))
        spike = add_expense('100.00', on=date(2024, 3, 4), description='Party')
        add_expense('5.00', on=date(2024, 3, 4), category='bills')
        add_expense('50.00', on=date(2024, 3, 5), category='bills')

        rows = reports.unusual_expenses(home.id, today=TODAY)

        # bills has only two samples and is not judged
        assert [r['id'] for r in rows] == [spike.id]
        assert rows[0]['category_average'] == 32.5

    def test_top_merchants(self, home, add_expense):
        add_expense('10.00', on=date(2024, 3, 1), description='Bakery')
        add_expense('15.00', on=date(2024, 3, 2), description='Bakery ')
        add_expense('20.00', on=date(2024, 3, 3), description='Cinema', category='leisure')
        add_expense('99.00', on=date(2024, 3, 3))
        rows = reports.top_merchants(home.id, today=TODAY)
        assert [(r['merchant'], r['total'], r['count']) for r in rows] == [('Bakery', 25.0, 2), ('Cinema', 20.0, 1)]

    def test_income_vs_expenses_counts_members_only(self, home, add_expense, bank_account, make_user):
        credit(bank_account(home.member), '1500.00', date(2024, 3, 1), 'pay-1')
        outsider = make_user('Carol')
        credit(bank_account(outsider, uid='acc-carol'), '900.00', date(2024, 3, 1), 'pay-2')
        add_expense('100.00', on=date(2024, 3, 5))

        rows = reports.income_vs_expenses(home.id, months=2, today=TODAY)

        assert rows == [
            {'month': '2024-02', 'income': 0.0, 'expenses': 0.0, 'balance': 0.0},
            {'month': '2024-03', 'income': 1500.0, 'expenses': 100.0, 'balance': 1400.0},
        ]


class TestRecommender:

    def test_prediction_follows_trend(self, home, add_expense):
        add_expense('100.00', on=date(2024, 1, 10))
        add_expense('200.00', on=date(2024, 2, 10))
        add_expense('300.00', on=date(2024, 3, 10))
        assert predict_next_month_expense(home.id) == 400.0

    def test_prediction_with_little_data(self, home, add_expense):
        assert predict_next_month_expense(home.id) == 0.0
        add_expense('80.00', on=date(2024, 1, 10))
        assert predict_next_month_expense(home.id) == 80.0

    def test_recommendations(self, home, add_expense):
        assert len(generate_recommendations(home.id)) == 1
        add_expense('100.00', on=date(2024, 1, 10))
        add_expense('300.00', on=date(2024, 2, 10), category='leisure')
        recs = generate_recommendations(home.id)
        assert any('Connect a bank account' in r for r in recs)
        assert any('"Leisure"' in r and '€300' in r for r in recs)
        assert any('exceeded your previous average' in r for r in recs)
