
from datetime import date

from sklearn.linear_model import LinearRegression

from categories import CURRENCY_SYMBOL, Category
from ml.reports import expense_frame, income_frame

# Note: runs inside the Flask app context; the frames are loaded through db.session.


def _monthly_totals(df):
    df = df.copy()
    df['ym'] = df['date'].dt.to_period('M').astype(str)
    return df.groupby('ym')['amount'].sum().reset_index()


def predict_next_month_expense(household_id):
    df = expense_frame(household_id, end=date.today())
    if df.empty:
        return 0.0
    # Create monthly expense totals
    m = _monthly_totals(df)
    if len(m) < 2:
        # Not enough data to fit
        return float(m['amount'].iloc[-1]) if len(m) else 0.0
    # Turn months into an integer index
    m['idx'] = range(1, len(m) + 1)
    X = m[['idx']].values
    y = m['amount'].values
    model = LinearRegression().fit(X, y)
    next_idx = m['idx'].max() + 1
    pred = float(model.predict([[next_idx]])[0])
    return round(max(pred, 0.0), 2)


def generate_recommendations(household_id):
    df = expense_frame(household_id)
    income = income_frame(household_id)
    recs = []
    if df.empty:
        recs.append('Add at least 2 months of expenses to get personalized savings insights.')
        return recs
    # Basic ratios
    total_income = income['amount'].sum() if not income.empty else 0.0
    total_expense = df['amount'].sum()
    if total_income > 0:
        savings_rate = max((total_income - total_expense) / total_income, 0)
        recs.append(f'Your overall savings rate is {savings_rate*100:.1f}%. Aim for 20%+ as a baseline.')
    else:
        recs.append('Connect a bank account to compute your savings rate.')
    # Category suggestions (top 3 spend categories)
    cat = df.groupby('category')['amount'].sum().sort_values(ascending=False)
    for c, v in cat.head(3).items():
        label = Category.parse(c).label
        recs.append(f'High spend in "{label}": {CURRENCY_SYMBOL}{v:.0f}. '
                    'Consider setting a category budget or finding cheaper alternatives.')
    # Volatility check: if last month higher than prior avg
    monthly = _monthly_totals(df)['amount']
    if len(monthly) >= 2:
        last = monthly.iloc[-1]
        prev_avg = monthly.iloc[:-1].mean()
        if last > 1.2 * prev_avg:
            recs.append("Last month's expenses exceeded your previous average by 20%+. Review discretionary categories.")
    # Prediction informed suggestion
    pred = predict_next_month_expense(household_id)
    if total_income > 0:
        target_save = max(total_income * 0.2, 0)
        recs.append(f'Predicted next month expense: {CURRENCY_SYMBOL}{pred:.0f}. '
                    f'Set a savings target of at least {CURRENCY_SYMBOL}{target_save:.0f}.')
    else:
        recs.append(f'Predicted next month expense: {CURRENCY_SYMBOL}{pred:.0f}.')
    return recs
