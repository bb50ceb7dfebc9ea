import logging
import os
from datetime import date
from functools import wraps

from flask import Blueprint, Flask, current_app, jsonify, redirect, request, session
from werkzeug.exceptions import HTTPException

import auth
from bank_sync import connections as bank_connections
from bank_sync import reconciler
from bank_sync.client import get_provider
from categories import category_list
from errors import FinanceError, NotFoundError, ValidationError
from ledger import balances, budgets, expenses, households, invitations, recurring, savings, splits
from ledger.common import parse_date, parse_period
from ml import reports
from ml.recommender import generate_recommendations, predict_next_month_expense
from models import User, db

api = Blueprint('api', __name__)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///finance.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-me')
    app.config['APP_URL'] = os.environ.get('APP_URL', 'http://localhost:5000')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    # Banking vendor
    app.config['ENABLE_BANKING_APP_ID'] = os.environ.get('ENABLE_BANKING_APP_ID')
    app.config['ENABLE_BANKING_PRIVATE_KEY'] = os.environ.get('ENABLE_BANKING_PRIVATE_KEY')
    app.config['ENABLE_BANKING_API_URL'] = os.environ.get('ENABLE_BANKING_API_URL', 'https://api.enablebanking.com')
    app.config['BANK_AUTH_STATE_TTL_MINUTES'] = int(os.environ.get('BANK_AUTH_STATE_TTL_MINUTES', 10))
    app.config['BANK_CONSENT_DAYS'] = int(os.environ.get('BANK_CONSENT_DAYS', 90))
    app.config['BANK_SYNC_DAYS_BACK'] = int(os.environ.get('BANK_SYNC_DAYS_BACK', 30))
    # Email
    app.config['RESEND_API_KEY'] = os.environ.get('RESEND_API_KEY')
    app.config['EMAIL_FROM'] = os.environ.get('EMAIL_FROM', 'HomeFinance <onboarding@resend.dev>')
    app.config['INVITATION_TTL_DAYS'] = int(os.environ.get('INVITATION_TTL_DAYS', 7))
    app.config['PASSWORD_RESET_TTL_MINUTES'] = int(os.environ.get('PASSWORD_RESET_TTL_MINUTES', 10))
    # Budget alert tiers, in percent of the ceiling
    app.config['BUDGET_WARNING_THRESHOLD'] = float(os.environ.get('BUDGET_WARNING_THRESHOLD', 80))
    app.config['BUDGET_DANGER_THRESHOLD'] = float(os.environ.get('BUDGET_DANGER_THRESHOLD', 100))
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    logging.getLogger().setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)
    app.register_blueprint(api)
    with app.app_context():
        db.create_all()
    return app


# ---------------------- Auth Helpers ----------------------
def current_user():
    uid = session.get('user_id')
    if uid:
        return db.session.get(User, uid)
    return None


def current_household_id():
    household_id = current_user().household_id
    if household_id is None:
        raise NotFoundError('Household')
    return household_id


def login_required(view_func):
    @wraps(view_func)
    def wrapped(*args, **kwargs):
        if not current_user():
            return jsonify({'error': 'Not authenticated'}), 401
        return view_func(*args, **kwargs)
    return wrapped


def _json():
    return request.get_json(silent=True) or {}


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f'Invalid {name}.', field=name) from None


def _int_field(data, name):
    value = data.get(name)
    if value in (None, ''):
        return None
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {name}.', field=name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {name}.', field=name) from None


def _period_args():
    today = date.today()
    return parse_period(_int_arg('year', today.year), _int_arg('month', today.month))


def _money(value):
    return float(value) if value is not None else None


# ---------------------- Error Handlers ----------------------
@api.app_errorhandler(FinanceError)
def handle_finance_error(exc):
    db.session.rollback()
    if exc.status_code >= 500:
        current_app.logger.warning('Upstream failure on %s %s: %s', request.method, request.path, exc)
    return jsonify(exc.to_dict()), exc.status_code


@api.app_errorhandler(HTTPException)
def handle_http_error(exc):
    return jsonify({'error': exc.description}), exc.code


@api.app_errorhandler(Exception)
def handle_unexpected(exc):
    db.session.rollback()
    current_app.logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({'error': 'Something went wrong, please try again'}), 500


# ---------------------- Routes: Auth ----------------------
@api.route('/auth/register', methods=['POST'])
def register():
    data = _json()
    user = auth.register_user(data.get('name'), data.get('email'), data.get('password'))
    session['user_id'] = user.id
    return jsonify({'success': True, 'user': user.to_dict()}), 201


@api.route('/auth/login', methods=['POST'])
def login():
    data = _json()
    user = auth.authenticate(data.get('email'), data.get('password'))
    session.clear()
    session['user_id'] = user.id
    return jsonify({'success': True, 'user': user.to_dict()})


@api.route('/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})


@api.route('/auth/me')
@login_required
def me():
    return jsonify(current_user().to_dict())


@api.route('/auth/password-reset', methods=['POST'])
def password_reset():
    auth.request_password_reset(_json().get('email'))
    # Same answer whether or not the email exists
    return jsonify({'success': True, 'message': 'If the email is registered, a code is on its way.'})


@api.route('/auth/password-reset/confirm', methods=['POST'])
def password_reset_confirm():
    data = _json()
    auth.confirm_password_reset(data.get('email'), data.get('code'), data.get('password'))
    return jsonify({'success': True})


@api.route('/api/categories')
def categories():
    return jsonify(category_list())


# ---------------------- Routes: Expenses ----------------------
@api.route('/api/expenses', methods=['GET'])
@login_required
def list_expenses():
    rows = expenses.list_expenses(
        current_household_id(),
        category=request.args.get('category'),
        start=request.args.get('start'),
        end=request.args.get('end'),
        limit=_int_arg('limit', 50),
        offset=_int_arg('offset', 0),
    )
    return jsonify([e.to_dict() for e in rows])


@api.route('/api/expenses', methods=['POST'])
@login_required
def add_expense():
    expense = expenses.create_expense(current_household_id(), current_user().id, _json())
    return jsonify(expense.to_dict()), 201


@api.route('/api/expenses/<int:expense_id>', methods=['GET'])
@login_required
def get_expense(expense_id):
    expense = expenses.get_expense(current_household_id(), expense_id)
    data = expense.to_dict()
    data['splits'] = [s.to_dict() for s in expense.splits]
    return jsonify(data)


@api.route('/api/expenses/<int:expense_id>', methods=['PUT'])
@login_required
def update_expense(expense_id):
    expense = expenses.update_expense(current_household_id(), expense_id, _json())
    return jsonify(expense.to_dict())


@api.route('/api/expenses/<int:expense_id>', methods=['DELETE'])
@login_required
def delete_expense(expense_id):
    expenses.delete_expense(current_household_id(), expense_id)
    return jsonify({'success': True})


@api.route('/api/expenses/stats')
@login_required
def expense_stats():
    year, month = _period_args()
    stats = expenses.monthly_stats(current_household_id(), year, month)
    stats['total'] = _money(stats['total'])
    stats['by_category'] = {k: _money(v) for k, v in stats['by_category'].items()}
    return jsonify(stats)


@api.route('/api/expenses/history')
@login_required
def expense_history():
    months = max(1, min(_int_arg('months', 6), 24))
    history = expenses.monthly_history(current_household_id(), months)
    return jsonify([dict(h, total=_money(h['total'])) for h in history])


# ---------------------- Routes: Splits ----------------------
@api.route('/api/expenses/<int:expense_id>/splits', methods=['GET'])
@login_required
def get_splits(expense_id):
    return jsonify([s.to_dict() for s in splits.expense_splits(current_household_id(), expense_id)])


@api.route('/api/expenses/<int:expense_id>/splits', methods=['POST'])
@login_required
def set_splits(expense_id):
    household_id = current_household_id()
    data = _json()
    if data.get('equal') is not None:
        if not isinstance(data['equal'], list):
            raise ValidationError('List the members to split between.', field='equal')
        expense = expenses.get_expense(household_id, expense_id)
        shares = splits.equal_shares(expense.amount, data['equal'])
    else:
        shares = data.get('splits')
    rows = splits.create_splits(household_id, expense_id, shares)
    return jsonify([s.to_dict() for s in rows]), 201


@api.route('/api/expenses/<int:expense_id>/splits', methods=['DELETE'])
@login_required
def delete_splits(expense_id):
    splits.remove_splits(current_household_id(), expense_id)
    return jsonify({'success': True})


@api.route('/api/splits/pending')
@login_required
def pending_splits():
    rows = splits.pending_splits_for(current_household_id(), current_user().id)
    return jsonify([dict(s.to_dict(), expense=s.expense.to_dict()) for s in rows])


@api.route('/api/splits/owed')
@login_required
def owed_splits():
    rows = splits.splits_owed_to(current_household_id(), current_user().id)
    return jsonify([dict(s.to_dict(), expense=s.expense.to_dict()) for s in rows])


@api.route('/api/splits/summary')
@login_required
def split_summary():
    summary = splits.splits_summary(current_household_id(), current_user().id)
    return jsonify({k: _money(v) for k, v in summary.items()})


@api.route('/api/splits/<int:split_id>/paid', methods=['POST'])
@login_required
def mark_split_paid(split_id):
    split = splits.mark_split_paid(current_household_id(), split_id, current_user().id)
    return jsonify(split.to_dict())


# ---------------------- Routes: Balances ----------------------
@api.route('/api/balances')
@login_required
def get_balances():
    return jsonify(balances.household_balances(current_household_id()))


@api.route('/api/balances/settle', methods=['POST'])
@login_required
def settle():
    data = _json()
    try:
        from_user, to_user = int(data.get('from')), int(data.get('to'))
    except (TypeError, ValueError):
        raise ValidationError('Choose the two members to settle.', field='from') from None
    settlement = balances.settle_pair(current_household_id(), from_user, to_user, current_user().id,
                                      data.get('note'))
    if settlement is None:
        return jsonify({'success': True, 'settlement': None})
    return jsonify(settlement.to_dict()), 201


@api.route('/api/settlements')
@login_required
def get_settlements():
    return jsonify([s.to_dict() for s in balances.list_settlements(current_household_id())])


# ---------------------- Routes: Budgets ----------------------
@api.route('/api/budgets', methods=['GET'])
@login_required
def get_budgets():
    household_id = current_household_id()
    year, month = _period_args()
    return jsonify({
        'total': budgets.budget_summary(household_id, year, month),
        'categories': budgets.category_budget_summary(household_id, year, month),
    })


@api.route('/api/budgets', methods=['POST'])
@login_required
def set_budget():
    data = _json()
    today = date.today()
    budget = budgets.set_budget(current_household_id(), data.get('amount'), data.get('year', today.year),
                                data.get('month', today.month), data.get('category'))
    return jsonify(budget.to_dict())


@api.route('/api/budgets/<int:budget_id>', methods=['DELETE'])
@login_required
def delete_budget(budget_id):
    budgets.delete_budget(current_household_id(), budget_id)
    return jsonify({'success': True})


@api.route('/api/budgets/alerts')
@login_required
def budget_alerts():
    year, month = _period_args()
    return jsonify(budgets.budget_alerts(current_household_id(), year, month))


# ---------------------- Routes: Recurring ----------------------
@api.route('/api/recurring', methods=['GET'])
@login_required
def list_recurring():
    return jsonify([t.to_dict() for t in recurring.list_templates(current_household_id())])


@api.route('/api/recurring', methods=['POST'])
@login_required
def create_recurring():
    template = recurring.create_template(current_household_id(), current_user().id, _json())
    return jsonify(template.to_dict()), 201


@api.route('/api/recurring/<int:template_id>', methods=['PUT'])
@login_required
def update_recurring(template_id):
    template = recurring.update_template(current_household_id(), template_id, _json())
    return jsonify(template.to_dict())


@api.route('/api/recurring/<int:template_id>', methods=['DELETE'])
@login_required
def delete_recurring(template_id):
    recurring.delete_template(current_household_id(), template_id)
    return jsonify({'success': True})


@api.route('/api/recurring/<int:template_id>/pause', methods=['POST'])
@login_required
def pause_recurring(template_id):
    return jsonify(recurring.set_active(current_household_id(), template_id, False).to_dict())


@api.route('/api/recurring/<int:template_id>/resume', methods=['POST'])
@login_required
def resume_recurring(template_id):
    return jsonify(recurring.set_active(current_household_id(), template_id, True).to_dict())


@api.route('/api/recurring/run', methods=['POST'])
@login_required
def run_recurring():
    data = _json()
    reference = parse_date(data['date']) if data.get('date') else date.today()
    created = recurring.materialize_due(current_household_id(), reference, current_user().id)
    return jsonify({'created': len(created), 'expenses': [e.to_dict() for e in created]})


@api.route('/api/recurring/upcoming')
@login_required
def upcoming_recurring():
    year, month = _period_args()
    return jsonify(recurring.upcoming_for_month(current_household_id(), year, month))


# ---------------------- Routes: Savings ----------------------
@api.route('/api/savings', methods=['GET'])
@login_required
def list_goals():
    goals = savings.list_goals(current_household_id(), request.args.get('status'))
    return jsonify([g.to_dict() for g in goals])


@api.route('/api/savings', methods=['POST'])
@login_required
def create_goal():
    return jsonify(savings.create_goal(current_household_id(), _json()).to_dict()), 201


@api.route('/api/savings/<int:goal_id>', methods=['PUT'])
@login_required
def update_goal(goal_id):
    return jsonify(savings.update_goal(current_household_id(), goal_id, _json()).to_dict())


@api.route('/api/savings/<int:goal_id>', methods=['DELETE'])
@login_required
def delete_goal(goal_id):
    savings.delete_goal(current_household_id(), goal_id)
    return jsonify({'success': True})


@api.route('/api/savings/<int:goal_id>/contribute', methods=['POST'])
@login_required
def contribute(goal_id):
    goal = savings.contribute(current_household_id(), goal_id, _json().get('amount'))
    return jsonify(goal.to_dict())


@api.route('/api/savings/<int:goal_id>/withdraw', methods=['POST'])
@login_required
def withdraw(goal_id):
    goal = savings.withdraw(current_household_id(), goal_id, _json().get('amount'))
    return jsonify(goal.to_dict())


@api.route('/api/savings/summary')
@login_required
def savings_summary():
    return jsonify(savings.savings_summary(current_household_id()))


# ---------------------- Routes: Household ----------------------
@api.route('/api/household', methods=['GET'])
@login_required
def get_household():
    return jsonify(households.household_details(current_household_id(), current_user().id))


@api.route('/api/household', methods=['POST'])
@login_required
def create_household():
    household = households.create_household(current_user().id, _json().get('name'))
    return jsonify(household.to_dict(current_user().id)), 201


@api.route('/api/household', methods=['PUT'])
@login_required
def rename_household():
    household = households.rename_household(current_household_id(), current_user().id, _json().get('name'))
    return jsonify(household.to_dict(current_user().id))


@api.route('/api/household/join', methods=['POST'])
@login_required
def join_household():
    household = households.join_by_code(current_user().id, _json().get('code'))
    return jsonify(household.to_dict(current_user().id))


@api.route('/api/household/leave', methods=['POST'])
@login_required
def leave_household():
    household = households.leave_household(current_user().id)
    return jsonify(household.to_dict(current_user().id))


@api.route('/api/household/members/<int:user_id>', methods=['DELETE'])
@login_required
def remove_member(user_id):
    households.remove_member(current_household_id(), current_user().id, user_id)
    return jsonify({'success': True})


@api.route('/api/household/invite-code', methods=['POST'])
@login_required
def new_invite_code():
    household = households.regenerate_invite_code(current_household_id(), current_user().id)
    return jsonify({'invite_code': household.invite_code})


# ---------------------- Routes: Invitations ----------------------
@api.route('/api/invitations', methods=['GET'])
@login_required
def list_invitations():
    rows = invitations.list_pending(current_household_id(), current_user().id)
    return jsonify([i.to_dict() for i in rows])


@api.route('/api/invitations', methods=['POST'])
@login_required
def create_invitation():
    invitation = invitations.create_invitation(current_household_id(), current_user().id,
                                               _json().get('email'))
    return jsonify(invitation.to_dict()), 201


@api.route('/api/invitations/history')
@login_required
def invitation_history():
    rows = invitations.invitation_history(current_household_id(), current_user().id)
    return jsonify([i.to_dict() for i in rows])


@api.route('/api/invitations/<int:invitation_id>', methods=['DELETE'])
@login_required
def cancel_invitation(invitation_id):
    invitations.cancel_invitation(current_household_id(), current_user().id, invitation_id)
    return jsonify({'success': True})


@api.route('/api/invitations/<int:invitation_id>/resend', methods=['POST'])
@login_required
def resend_invitation(invitation_id):
    invitation = invitations.resend_invitation(current_household_id(), current_user().id, invitation_id)
    return jsonify(invitation.to_dict())


@api.route('/api/invitations/validate')
def validate_invitation():
    return jsonify(invitations.validate_token(request.args.get('token')))


@api.route('/api/invitations/accept', methods=['POST'])
@login_required
def accept_invitation():
    household = invitations.accept_invitation(_json().get('token'), current_user().id)
    return jsonify(household.to_dict(current_user().id))


# ---------------------- Routes: Bank ----------------------
@api.route('/api/bank/institutions')
@login_required
def bank_institutions():
    return jsonify(bank_connections.list_institutions(get_provider(), request.args.get('country', 'ES')))


@api.route('/api/bank/connect', methods=['POST'])
@login_required
def bank_connect():
    data = _json()
    redirect_url = f"{current_app.config['APP_URL'].rstrip('/')}/api/bank/callback"
    result = bank_connections.start_connection(current_user().id, get_provider(), data.get('bank_name'),
                                               data.get('country', 'ES'), redirect_url)
    return jsonify(result)


@api.route('/api/bank/callback')
@login_required
def bank_callback():
    base = current_app.config['APP_URL'].rstrip('/')
    try:
        bank_connections.complete_connection(current_user().id, get_provider(), request.args.get('code'),
                                             request.args.get('state'), request.args.get('error'))
    except FinanceError as exc:
        db.session.rollback()
        current_app.logger.warning('Bank callback failed for user %s: %s', current_user().id, exc)
        return redirect(f'{base}/profile?bank=error')
    return redirect(f'{base}/profile?bank=connected')


@api.route('/api/bank/status')
@login_required
def bank_status():
    return jsonify(bank_connections.connection_status(current_user().id))


@api.route('/api/bank/balance')
@login_required
def bank_balance():
    return jsonify(bank_connections.account_balances(current_user().id, get_provider()))


@api.route('/api/bank/sync', methods=['POST'])
@login_required
def bank_sync():
    data = _json()
    result = reconciler.sync_user(
        current_user().id,
        current_household_id(),
        get_provider(),
        connection_id=_int_field(data, 'connection_id'),
        account_id=_int_field(data, 'account_id'),
        days_back=data.get('days_back'),
    )
    return jsonify(result)


@api.route('/api/bank/disconnect', methods=['POST'])
@login_required
def bank_disconnect():
    connection_id = _int_field(_json(), 'connection_id')
    if connection_id is None:
        raise ValidationError('Choose a connection.', field='connection_id')
    bank_connections.disconnect(current_user().id, get_provider(), connection_id)
    return jsonify({'success': True})


@api.route('/api/bank/transactions')
@login_required
def bank_transactions():
    rows = reconciler.recent_transactions(current_user().id, _int_arg('limit', 50), request.args.get('type'))
    return jsonify([t.to_dict() for t in rows])


# ---------------------- Routes: Analytics ----------------------
@api.route('/api/analytics/month-over-month')
@login_required
def analytics_month_over_month():
    return jsonify(reports.month_over_month(current_household_id()))


@api.route('/api/analytics/category-trends')
@login_required
def analytics_category_trends():
    return jsonify(reports.category_trends(current_household_id(), max(1, min(_int_arg('months', 6), 24))))


@api.route('/api/analytics/annual')
@login_required
def analytics_annual():
    year, _ = parse_period(_int_arg('year', date.today().year), 1)
    return jsonify(reports.annual_summary(current_household_id(), year))


@api.route('/api/analytics/unusual')
@login_required
def analytics_unusual():
    return jsonify(reports.unusual_expenses(current_household_id(), max(1, min(_int_arg('months', 3), 24))))


@api.route('/api/analytics/top-merchants')
@login_required
def analytics_top_merchants():
    return jsonify(reports.top_merchants(current_household_id(), max(1, min(_int_arg('months', 3), 24)),
                                         max(1, min(_int_arg('limit', 10), 50))))


@api.route('/api/analytics/income-vs-expenses')
@login_required
def analytics_income_vs_expenses():
    return jsonify(reports.income_vs_expenses(current_household_id(), max(1, min(_int_arg('months', 6), 24))))


@api.route('/api/analytics/insights')
@login_required
def analytics_insights():
    household_id = current_household_id()
    return jsonify({
        'prediction': predict_next_month_expense(household_id),
        'recommendations': generate_recommendations(household_id),
    })


app = create_app()
