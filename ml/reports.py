"""Spending analytics over a household's expenses, built on pandas frames."""
from datetime import date

import pandas as pd
from dateutil.relativedelta import relativedelta

from categories import Category
from models import BankAccount, BankConnection, BankTransaction, Expense, HouseholdMember, db

UNUSUAL_FACTOR = 2
UNUSUAL_MIN_SAMPLES = 3


def _window_start(today, months):
    return today.replace(day=1) - relativedelta(months=months - 1)


def expense_frame(household_id, start=None, end=None):
    q = db.session.query(Expense).filter(Expense.household_id == household_id)
    if start:
        q = q.filter(Expense.date >= start)
    if end:
        q = q.filter(Expense.date <= end)
    rows = q.all()
    if not rows:
        return pd.DataFrame(columns=['id', 'date', 'amount', 'category', 'description', 'paid_by'])
    df = pd.DataFrame([{
        'id': r.id,
        'date': r.date,
        'amount': float(r.amount),
        'category': r.category,
        'description': r.description or '',
        'paid_by': r.paid_by,
    } for r in rows])
    df['date'] = pd.to_datetime(df['date'])
    return df


def income_frame(household_id, start=None, end=None):
    """Bank credits on accounts connected by members of the household."""
    q = (db.session.query(BankTransaction.booking_date, BankTransaction.amount)
         .join(BankAccount, BankTransaction.account_id == BankAccount.id)
         .join(BankConnection, BankAccount.connection_id == BankConnection.id)
         .join(HouseholdMember, HouseholdMember.user_id == BankConnection.user_id)
         .filter(HouseholdMember.household_id == household_id, BankTransaction.amount > 0))
    if start:
        q = q.filter(BankTransaction.booking_date >= start)
    if end:
        q = q.filter(BankTransaction.booking_date <= end)
    rows = q.all()
    if not rows:
        return pd.DataFrame(columns=['date', 'amount'])
    df = pd.DataFrame([{'date': d, 'amount': float(a)} for d, a in rows])
    df['date'] = pd.to_datetime(df['date'])
    return df


def _months(start, count):
    return [(start + relativedelta(months=i)).strftime('%Y-%m') for i in range(count)]


def _monthly(df, months):
    if df.empty:
        return pd.Series(0.0, index=months)
    ym = df['date'].dt.to_period('M').astype(str)
    return df.groupby(ym)['amount'].sum().reindex(months, fill_value=0.0)


def month_over_month(household_id, today=None):
    today = today or date.today()
    this_start = today.replace(day=1)
    prev_start = this_start - relativedelta(months=1)
    df = expense_frame(household_id, prev_start, this_start + relativedelta(months=1, days=-1))
    this_key, prev_key = this_start.strftime('%Y-%m'), prev_start.strftime('%Y-%m')
    if df.empty:
        by_cat = pd.DataFrame(0.0, index=[c.value for c in Category], columns=[prev_key, this_key])
    else:
        df['ym'] = df['date'].dt.to_period('M').astype(str)
        by_cat = (df.pivot_table(index='category', columns='ym', values='amount', aggfunc='sum', fill_value=0.0)
                  .reindex(index=[c.value for c in Category], columns=[prev_key, this_key], fill_value=0.0))

    def change(current, previous):
        return round((current - previous) / previous * 100, 1) if previous else None

    current, previous = float(by_cat[this_key].sum()), float(by_cat[prev_key].sum())
    return {
        'current_month': this_key,
        'previous_month': prev_key,
        'current_total': round(current, 2),
        'previous_total': round(previous, 2),
        'change_pct': change(current, previous),
        'categories': [{
            'category': cat,
            'current': round(float(row[this_key]), 2),
            'previous': round(float(row[prev_key]), 2),
            'change_pct': change(float(row[this_key]), float(row[prev_key])),
        } for cat, row in by_cat.iterrows()],
    }


def category_trends(household_id, months=6, today=None):
    today = today or date.today()
    start = _window_start(today, months)
    df = expense_frame(household_id, start)
    keys = _months(start, months)
    cats = [c.value for c in Category]
    if df.empty:
        table = pd.DataFrame(0.0, index=keys, columns=cats)
    else:
        df['ym'] = df['date'].dt.to_period('M').astype(str)
        table = (df.pivot_table(index='ym', columns='category', values='amount', aggfunc='sum', fill_value=0.0)
                 .reindex(index=keys, columns=cats, fill_value=0.0))
    return [{'month': ym, **{c: round(float(v), 2) for c, v in row.items()}} for ym, row in table.iterrows()]


def annual_summary(household_id, year):
    df = expense_frame(household_id, date(year, 1, 1), date(year, 12, 31))
    keys = [f'{year}-{m:02d}' for m in range(1, 13)]
    monthly = _monthly(df, keys)
    by_category = df.groupby('category')['amount'].sum() if not df.empty else pd.Series(dtype=float)
    total = float(monthly.sum())
    active_months = int((monthly > 0).sum())
    return {
        'year': year,
        'total': round(total, 2),
        'count': int(len(df)),
        'monthly': [{'month': k, 'total': round(float(v), 2)} for k, v in monthly.items()],
        'by_category': {c.value: round(float(by_category.get(c.value, 0.0)), 2) for c in Category},
        'average_monthly': round(total / active_months, 2) if active_months else 0.0,
        'highest_month': monthly.idxmax() if total > 0 else None,
    }


def unusual_expenses(household_id, months=3, today=None):
    """Expenses more than twice their category's average.

    The average covers the whole history; categories with fewer than three
    expenses are not judged.
    """
    today = today or date.today()
    df = expense_frame(household_id)
    if df.empty:
        return []
    stats = df.groupby('category')['amount'].agg(['mean', 'count'])
    df = df.join(stats, on='category')
    recent = df[(df['date'] >= pd.Timestamp(_window_start(today, months)))
                & (df['count'] >= UNUSUAL_MIN_SAMPLES)
                & (df['amount'] > UNUSUAL_FACTOR * df['mean'])]
    recent = recent.sort_values('amount', ascending=False)
    return [{
        'id': int(r['id']),
        'date': r['date'].date().isoformat(),
        'amount': round(r['amount'], 2),
        'category': r['category'],
        'description': r['description'],
        'category_average': round(r['mean'], 2),
        'times_average': round(r['amount'] / r['mean'], 1),
    } for _, r in recent.iterrows()]


def top_merchants(household_id, months=3, limit=10, today=None):
    today = today or date.today()
    df = expense_frame(household_id, _window_start(today, months))
    df = df[df['description'].str.strip() != ''] if not df.empty else df
    if df.empty:
        return []
    grouped = (df.groupby(df['description'].str.strip())
               .agg(total=('amount', 'sum'), count=('amount', 'size'), category=('category', 'first'))
               .sort_values('total', ascending=False).head(limit))
    return [{'merchant': name, 'total': round(float(r['total']), 2), 'count': int(r['count']),
             'category': r['category']} for name, r in grouped.iterrows()]


def income_vs_expenses(household_id, months=6, today=None):
    today = today or date.today()
    start = _window_start(today, months)
    keys = _months(start, months)
    spent = _monthly(expense_frame(household_id, start), keys)
    earned = _monthly(income_frame(household_id, start), keys)
    return [{
        'month': k,
        'income': round(float(earned[k]), 2),
        'expenses': round(float(spent[k]), 2),
        'balance': round(float(earned[k] - spent[k]), 2),
    } for k in keys]
