import os

# The module-level app in app.py is built at import time; keep it off disk
os.environ['DATABASE_URL'] = 'sqlite://'

from datetime import date, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402

import auth  # noqa: E402
import mailer  # noqa: E402
from app import create_app  # noqa: E402
from bank_sync.client import BankingProvider  # noqa: E402
from ledger import expenses, households  # noqa: E402
from models import BankAccount, BankConnection, db, utcnow  # noqa: E402


class FakeBankingProvider(BankingProvider):
    """In-memory vendor: pages of records per account uid."""

    def __init__(self):
        self.pages = {}
        self.errors = {}
        self.balances = {}
        self.sessions = {}
        self.consents = []
        self.deleted_sessions = []
        self.delete_error = None
        self.fetch_calls = []

    def list_institutions(self, country):
        return [{'name': 'Test Bank', 'country': country, 'logo': None, 'bic': 'TESTESMM'}]

    def start_consent(self, bank_name, country, state, redirect_url, valid_until, psu_type='personal'):
        self.consents.append({'bank_name': bank_name, 'country': country, 'state': state,
                              'redirect_url': redirect_url, 'valid_until': valid_until})
        return {'url': f'https://bank.example/authorize?state={state}', 'authorization_id': 'auth-1'}

    def create_session(self, code):
        return self.sessions[code]

    def fetch_balances(self, account_uid):
        if account_uid in self.errors:
            raise self.errors[account_uid]
        return self.balances.get(account_uid, [])

    def fetch_transactions(self, account_uid, date_from=None, date_to=None, continuation_key=None):
        self.fetch_calls.append((account_uid, date_from, date_to, continuation_key))
        if account_uid in self.errors:
            raise self.errors[account_uid]
        pages = self.pages.get(account_uid) or [[]]
        index = int(continuation_key or 0)
        next_key = str(index + 1) if index + 1 < len(pages) else None
        return {'transactions': pages[index], 'continuation_key': next_key}

    def delete_session(self, session_id):
        if self.delete_error:
            raise self.delete_error
        self.deleted_sessions.append(session_id)


def bank_record(tx_id, amount, indicator=None, creditor=None, debtor=None, booking_date='2024-03-01',
                mcc=None, remittance=None, currency='EUR'):
    record = {
        'transaction_amount': {'amount': amount, 'currency': currency},
        'booking_date': booking_date,
    }
    if tx_id:
        record['transaction_id'] = tx_id
    if indicator:
        record['credit_debit_indicator'] = indicator
    if creditor:
        record['creditor'] = {'name': creditor}
    if debtor:
        record['debtor'] = {'name': debtor}
    if mcc:
        record['merchant_category_code'] = mcc
    if remittance:
        record['remittance_information'] = [remittance]
    return record


@pytest.fixture
def app():
    app = create_app({
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'APP_URL': 'http://testserver',
    })
    app.extensions['banking_provider'] = FakeBankingProvider()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def provider(app):
    return app.extensions['banking_provider']


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent = []
    monkeypatch.setattr(mailer, 'outbox', sent)
    return sent


@pytest.fixture
def make_user(app):
    def _make(name, email=None, password='password123'):
        return auth.register_user(name, email or f'{name.lower()}@example.com', password)
    return _make


@pytest.fixture
def home(make_user):
    """A household owned by Alice with Bob as a member."""
    alice = make_user('Alice')
    bob = make_user('Bob')
    household = households.household_of(alice.id)
    households.join_by_code(bob.id, household.invite_code)
    return SimpleNamespace(id=household.id, household=household, owner=alice, member=bob)


@pytest.fixture
def add_expense(home):
    def _add(amount, paid_by=None, category='food', on=None, description=None, household_id=None):
        data = {
            'amount': str(amount),
            'category': category,
            'date': (on or date(2024, 3, 10)).isoformat(),
            'paid_by': (paid_by or home.owner).id,
        }
        if description:
            data['description'] = description
        return expenses.create_expense(household_id or home.id, (paid_by or home.owner).id, data)
    return _add


@pytest.fixture
def bank_account(app):
    def _make(user, uid='acc-1', expires_at=None, status='active'):
        conn = BankConnection(user_id=user.id, session_id=f'session-{uid}', bank_name='Test Bank',
                              country='ES', status=status,
                              expires_at=expires_at or utcnow() + timedelta(days=90))
        account = BankAccount(account_uid=uid, iban='ES9121000418450200051332', name=f'Account {uid}',
                              currency='EUR')
        conn.accounts.append(account)
        db.session.add(conn)
        db.session.commit()
        return account
    return _make


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id


def money(value):
    return Decimal(str(value)).quantize(Decimal('0.01'))
