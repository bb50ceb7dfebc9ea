import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app

from bank_sync.client import BankingAPIError, consent_valid_until
from errors import NotFoundError, ValidationError
from ledger.common import text_arg
from models import BankAccount, BankAuthState, BankConnection, db, utcnow

logger = logging.getLogger(__name__)

# Preferred balance types, best first
BALANCE_TYPES = ('CLAV', 'ITAV', 'XPCD', 'CLBD', 'ITBD', 'OPBD')


def _country(value):
    country = (text_arg(value, 'country') or 'ES').upper()
    if not re.fullmatch(r'[A-Z]{2}', country):
        raise ValidationError('Use a 2-letter country code.', field='country')
    return country


def list_institutions(provider, country):
    banks = provider.list_institutions(_country(country))
    return [{'name': b.get('name'), 'country': b.get('country'), 'logo': b.get('logo'),
             'bic': b.get('bic')} for b in banks]


def start_connection(user_id, provider, bank_name, country, redirect_url):
    bank_name = text_arg(bank_name, 'bank_name')
    if not bank_name:
        raise ValidationError('Choose a bank.', field='bank_name')
    country = _country(country)
    now = utcnow()
    BankAuthState.query.filter(BankAuthState.user_id == user_id, BankAuthState.expires_at < now).delete()

    state = secrets.token_hex(24)
    ttl = timedelta(minutes=current_app.config['BANK_AUTH_STATE_TTL_MINUTES'])
    auth = provider.start_consent(bank_name, country, state, redirect_url,
                                  consent_valid_until(current_app.config['BANK_CONSENT_DAYS']))
    if not auth or not auth.get('url'):
        raise BankingAPIError('authorization start returned no redirect url')
    db.session.add(BankAuthState(user_id=user_id, state=state, bank_name=bank_name, country=country,
                                 expires_at=now + ttl))
    db.session.commit()
    logger.info('User %s started bank authorization with %s (%s)', user_id, bank_name, country)
    return {'url': auth['url'], 'state': state}


def _consent_expiry(session):
    valid_until = (session.get('access') or {}).get('valid_until') or session.get('valid_until')
    if valid_until:
        try:
            parsed = datetime.fromisoformat(str(valid_until).replace('Z', '+00:00'))
        except ValueError:
            logger.warning('Unparseable consent expiry %r', valid_until)
        else:
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
    return utcnow() + timedelta(days=current_app.config['BANK_CONSENT_DAYS'])


def complete_connection(user_id, provider, code, state, error=None):
    if error:
        raise ValidationError(f'Bank authorization failed: {error}')
    if not code or not state:
        raise ValidationError('Missing authorization parameters.')
    auth = BankAuthState.query.filter_by(state=state, user_id=user_id).first()
    if auth is None:
        raise ValidationError('Invalid or expired authorization state.', field='state')
    if auth.expires_at < utcnow():
        db.session.delete(auth)
        db.session.commit()
        raise ValidationError('Invalid or expired authorization state.', field='state')

    session = provider.create_session(code)
    aspsp = session.get('aspsp') or {}
    conn = BankConnection(
        user_id=user_id,
        session_id=session['session_id'],
        bank_name=aspsp.get('name') or auth.bank_name,
        country=aspsp.get('country') or auth.country,
        status='active',
        expires_at=_consent_expiry(session),
    )
    for acc in session.get('accounts') or []:
        if isinstance(acc, str):
            acc = {'uid': acc}
        account_id = acc.get('account_id') or {}
        conn.accounts.append(BankAccount(
            account_uid=acc['uid'],
            iban=account_id.get('iban') or acc.get('iban'),
            name=acc.get('name') or acc.get('product'),
            currency=acc.get('currency') or 'EUR',
            account_type=acc.get('cash_account_type') or acc.get('account_type'),
        ))
    db.session.add(conn)
    db.session.delete(auth)
    db.session.commit()
    logger.info('Bank connection %s created for user %s with %s accounts', conn.id, user_id, len(conn.accounts))
    return conn


def mask_iban(iban):
    if not iban:
        return None
    compact = iban.replace(' ', '')
    return f'{compact[:4]} **** {compact[-4:]}' if len(compact) > 8 else compact


def _owned_connection(user_id, connection_id):
    conn = BankConnection.query.filter_by(id=connection_id, user_id=user_id).first()
    if conn is None:
        raise NotFoundError('Bank connection')
    return conn


def connection_status(user_id):
    now = utcnow()
    connections = (BankConnection.query.filter_by(user_id=user_id)
                   .order_by(BankConnection.connected_at.desc()).all())
    changed = False
    data = []
    for conn in connections:
        if conn.status == 'active' and conn.is_expired(now):
            conn.status = 'expired'
            changed = True
        data.append({
            'id': conn.id,
            'bank_name': conn.bank_name,
            'status': conn.status,
            'connected_at': conn.connected_at.isoformat(),
            'expires_at': conn.expires_at.isoformat() if conn.expires_at else None,
            'last_synced_at': conn.last_synced_at.isoformat() if conn.last_synced_at else None,
            'accounts': [{
                'id': a.id,
                'name': a.display_name,
                'iban': mask_iban(a.iban),
                'currency': a.currency,
                'last_sync': a.sync_logs[0].to_dict() if a.sync_logs else None,
            } for a in conn.accounts],
        })
    if changed:
        db.session.commit()
    return {'connected': any(c['status'] == 'active' for c in data), 'connections': data}


def _pick_balance(balances):
    by_type = {b.get('balance_type'): b for b in balances}
    for kind in BALANCE_TYPES:
        if kind in by_type:
            return by_type[kind]
    return balances[0] if balances else None


def account_balances(user_id, provider):
    connections = BankConnection.query.filter_by(user_id=user_id, status='active').all()
    result = []
    for conn in connections:
        for account in conn.accounts:
            row = {'account_id': account.id, 'name': account.display_name, 'iban': mask_iban(account.iban),
                   'bank_name': conn.bank_name, 'balance': None, 'currency': account.currency}
            try:
                balance = _pick_balance(provider.fetch_balances(account.account_uid))
            except BankingAPIError as exc:
                logger.warning('Balance fetch failed for account %s: %s', account.id, exc)
                row['error'] = 'Something went wrong, please try again'
            else:
                if balance:
                    amount = balance.get('balance_amount') or {}
                    row['balance'] = float(amount.get('amount', 0))
                    row['currency'] = amount.get('currency') or account.currency
                    row['balance_type'] = balance.get('balance_type')
                    row['reference_date'] = balance.get('reference_date')
            result.append(row)
    return result


def disconnect(user_id, provider, connection_id):
    conn = _owned_connection(user_id, connection_id)
    try:
        provider.delete_session(conn.session_id)
    except BankingAPIError as exc:
        # The local connection goes regardless; the consent lapses on its own
        logger.warning('Could not revoke session for connection %s: %s', conn.id, exc)
    db.session.delete(conn)
    db.session.commit()
    logger.info('Bank connection %s removed by user %s', connection_id, user_id)
