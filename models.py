from datetime import datetime, timezone
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    # Naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value is not None else None


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    membership = db.relationship('HouseholdMember', back_populates='user', uselist=False)

    @property
    def household_id(self):
        return self.membership.household_id if self.membership else None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'household_id': self.household_id,
            'role': self.membership.role if self.membership else None,
        }


# ---------------------- Households ----------------------
class Household(db.Model):
    __tablename__ = 'households'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, default='My Home')
    invite_code = db.Column(db.String(6), unique=True, nullable=False, index=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    owner = db.relationship('User', foreign_keys=[owner_id])
    members = db.relationship('HouseholdMember', back_populates='household', cascade='all, delete-orphan',
                              order_by='HouseholdMember.joined_at')
    invitations = db.relationship('Invitation', back_populates='household', cascade='all, delete-orphan')

    def to_dict(self, viewer_id=None):
        data = {
            'id': self.id,
            'name': self.name,
            'invite_code': self.invite_code,
            'owner_id': self.owner_id,
        }
        if viewer_id is not None:
            data['is_owner'] = self.owner_id == viewer_id
        return data


class HouseholdMember(db.Model):
    __tablename__ = 'household_members'

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False, index=True)
    # One household per user at a time
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    role = db.Column(db.String(10), nullable=False, default='member')  # 'owner' or 'member'
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    household = db.relationship('Household', back_populates='members')
    user = db.relationship('User', back_populates='membership')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'role': self.role,
            'joined_at': _iso(self.joined_at),
            'user': {'id': self.user.id, 'name': self.user.name, 'email': self.user.email},
        }


class Invitation(db.Model):
    __tablename__ = 'household_invitations'

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending | accepted | cancelled | expired
    invited_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    accepted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    household = db.relationship('Household', back_populates='invitations')
    inviter = db.relationship('User', foreign_keys=[invited_by])

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'status': self.status,
            'expires_at': _iso(self.expires_at),
            'created_at': _iso(self.created_at),
            'invited_by_name': self.inviter.name if self.inviter else None,
        }


# ---------------------- Ledger ----------------------
class Expense(db.Model):
    __tablename__ = 'expenses'
    __table_args__ = (
        db.Index('idx_expenses_household_date', 'household_id', 'date'),
    )

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)  # always positive
    description = db.Column(db.Text)
    category = db.Column(db.String(20), nullable=False, index=True)
    tags = db.Column(db.JSON, nullable=False, default=list)
    date = db.Column(db.Date, nullable=False)
    paid_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    source = db.Column(db.String(20), nullable=False, default='manual')  # manual | recurring | bank_sync
    bank_transaction_id = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    payer = db.relationship('User', foreign_keys=[paid_by])
    splits = db.relationship('ExpenseSplit', back_populates='expense', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'amount': _money(self.amount),
            'description': self.description,
            'category': self.category,
            'tags': list(self.tags or []),
            'date': _iso(self.date),
            'paid_by': self.paid_by,
            'paid_by_name': self.payer.name if self.payer else None,
            'source': self.source,
            'has_splits': bool(self.splits),
            'created_at': _iso(self.created_at),
        }


class ExpenseSplit(db.Model):
    __tablename__ = 'expense_splits'
    __table_args__ = (
        db.UniqueConstraint('expense_id', 'user_id', name='uq_split_expense_user'),
    )

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey('expenses.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    percentage = db.Column(db.Numeric(5, 2))
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime)

    expense = db.relationship('Expense', back_populates='splits')
    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'expense_id': self.expense_id,
            'user_id': self.user_id,
            'user_name': self.user.name if self.user else None,
            'amount': _money(self.amount),
            'percentage': _money(self.percentage),
            'is_paid': self.is_paid,
            'paid_at': _iso(self.paid_at),
        }


class Settlement(db.Model):
    __tablename__ = 'settlements'

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False, index=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    to_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    note = db.Column(db.Text)
    settled_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'from_user_id': self.from_user_id,
            'to_user_id': self.to_user_id,
            'amount': _money(self.amount),
            'note': self.note,
            'settled_at': _iso(self.settled_at),
        }


class Budget(db.Model):
    __tablename__ = 'budgets'
    __table_args__ = (
        db.UniqueConstraint('household_id', 'category', 'year', 'month', name='uq_budget_period'),
    )

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False)
    category = db.Column(db.String(20), nullable=False)  # a Category value or '_total'
    monthly_limit = db.Column(db.Numeric(10, 2), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)  # 1-12
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'category': self.category,
            'amount': _money(self.monthly_limit),
            'year': self.year,
            'month': self.month,
        }


class RecurringExpense(db.Model):
    __tablename__ = 'recurring_expenses'

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(20), nullable=False)
    tags = db.Column(db.JSON, nullable=False, default=list)

    frequency = db.Column(db.String(10), nullable=False)  # weekly | biweekly | monthly | yearly
    day_of_month = db.Column(db.Integer)
    day_of_week = db.Column(db.Integer)  # 0=Monday
    month_of_year = db.Column(db.Integer)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    last_executed_date = db.Column(db.Date)
    next_execution_date = db.Column(db.Date, nullable=False, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': _money(self.amount),
            'description': self.description,
            'category': self.category,
            'tags': list(self.tags or []),
            'frequency': self.frequency,
            'day_of_month': self.day_of_month,
            'day_of_week': self.day_of_week,
            'month_of_year': self.month_of_year,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'last_executed_date': _iso(self.last_executed_date),
            'next_execution_date': _iso(self.next_execution_date),
            'is_active': self.is_active,
        }


class SavingsGoal(db.Model):
    __tablename__ = 'savings_goals'

    id = db.Column(db.Integer, primary_key=True)
    household_id = db.Column(db.Integer, db.ForeignKey('households.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    target_amount = db.Column(db.Numeric(10, 2), nullable=False)
    current_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    deadline = db.Column(db.Date)
    status = db.Column(db.String(20), nullable=False, default='active')  # active | completed | cancelled
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        target = self.target_amount or Decimal('0')
        current = self.current_amount or Decimal('0')
        return {
            'id': self.id,
            'name': self.name,
            'target_amount': _money(target),
            'current_amount': _money(current),
            'deadline': _iso(self.deadline),
            'status': self.status,
            'percentage': float(current / target * 100) if target > 0 else 0.0,
            'remaining': _money(target - current),
            'created_at': _iso(self.created_at),
        }


# ---------------------- Banking ----------------------
class BankAuthState(db.Model):
    __tablename__ = 'bank_auth_states'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    state = db.Column(db.String(64), unique=True, nullable=False)
    bank_name = db.Column(db.String(200), nullable=False)
    country = db.Column(db.String(2), nullable=False, default='ES')
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class BankConnection(db.Model):
    __tablename__ = 'bank_connections'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    session_id = db.Column(db.String(200), nullable=False)
    bank_name = db.Column(db.String(200), nullable=False)
    country = db.Column(db.String(2), nullable=False, default='ES')
    status = db.Column(db.String(20), nullable=False, default='active')  # active | expired | error
    connected_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime)  # consent expiry
    last_synced_at = db.Column(db.DateTime)

    accounts = db.relationship('BankAccount', back_populates='connection', cascade='all, delete-orphan')

    def is_expired(self, now=None):
        return self.expires_at is not None and self.expires_at < (now or utcnow())


class BankAccount(db.Model):
    __tablename__ = 'bank_accounts'

    id = db.Column(db.Integer, primary_key=True)
    connection_id = db.Column(db.Integer, db.ForeignKey('bank_connections.id'), nullable=False, index=True)
    account_uid = db.Column(db.String(200), nullable=False)
    iban = db.Column(db.String(40))
    name = db.Column(db.String(200))
    currency = db.Column(db.String(3), default='EUR')
    account_type = db.Column(db.String(40))

    connection = db.relationship('BankConnection', back_populates='accounts')
    transactions = db.relationship('BankTransaction', back_populates='account', cascade='all, delete-orphan')
    sync_logs = db.relationship('BankSyncLog', back_populates='account', cascade='all, delete-orphan',
                                order_by='BankSyncLog.synced_at.desc()')

    @property
    def display_name(self):
        return self.name or self.iban or 'Unnamed account'


class BankTransaction(db.Model):
    __tablename__ = 'bank_transactions'
    __table_args__ = (
        db.UniqueConstraint('account_id', 'external_id', name='uq_bank_tx_external'),
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('bank_accounts.id'), nullable=False, index=True)
    external_id = db.Column(db.String(200), nullable=False)
    booking_date = db.Column(db.Date, nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)  # signed: negative = debit
    currency = db.Column(db.String(3), default='EUR')
    creditor_name = db.Column(db.String(200))
    debtor_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    merchant_code = db.Column(db.String(4))
    raw_data = db.Column(db.JSON)
    expense_id = db.Column(db.Integer, db.ForeignKey('expenses.id'))
    is_processed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    account = db.relationship('BankAccount', back_populates='transactions')

    @property
    def is_income(self):
        return self.amount >= 0

    def to_dict(self):
        return {
            'id': self.id,
            'booking_date': _iso(self.booking_date),
            'amount': _money(self.amount),
            'currency': self.currency,
            'creditor_name': self.creditor_name,
            'debtor_name': self.debtor_name,
            'description': self.description,
            'type': 'income' if self.is_income else 'expense',
            'expense_id': self.expense_id,
        }


class BankSyncLog(db.Model):
    __tablename__ = 'bank_sync_log'

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('bank_accounts.id'), nullable=False, index=True)
    synced_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    transactions_fetched = db.Column(db.Integer, nullable=False, default=0)
    transactions_new = db.Column(db.Integer, nullable=False, default=0)
    expenses_created = db.Column(db.Integer, nullable=False, default=0)
    malformed_skipped = db.Column(db.Integer, nullable=False, default=0)
    error = db.Column(db.Text)  # set when the sync failed

    account = db.relationship('BankAccount', back_populates='sync_logs')

    @property
    def status(self):
        return 'failed' if self.error else 'success'

    def to_dict(self):
        return {
            'synced_at': _iso(self.synced_at),
            'status': self.status,
            'transactions_fetched': self.transactions_fetched,
            'transactions_new': self.transactions_new,
            'expenses_created': self.expenses_created,
            'malformed_skipped': self.malformed_skipped,
            'error': self.error,
        }


class PasswordResetCode(db.Model):
    __tablename__ = 'password_reset_codes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    code_hash = db.Column(db.String(255), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime)
