"""Open-banking vendor access.

The reconciler only talks to a ``BankingProvider``. ``EnableBankingClient``
is the production implementation; tests register an in-memory one under
``app.extensions['banking_provider']``.
"""
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import httpx
import jwt
from flask import current_app

from errors import UpstreamError

logger = logging.getLogger(__name__)


class BankingAPIError(UpstreamError):
    def __init__(self, detail, status=None):
        super().__init__(detail)
        self.status = status


class BankingProvider(ABC):

    @abstractmethod
    def list_institutions(self, country):
        """Banks available in ``country`` as vendor dicts (``name``, ``country``, ``logo``...)."""

    @abstractmethod
    def start_consent(self, bank_name, country, state, redirect_url, valid_until, psu_type='personal'):
        """Begin authorization; returns a dict with the bank ``url`` to redirect to."""

    @abstractmethod
    def create_session(self, code):
        """Exchange the callback code for ``session_id``, ``accounts`` and ``access.valid_until``."""

    @abstractmethod
    def fetch_balances(self, account_uid):
        pass

    @abstractmethod
    def fetch_transactions(self, account_uid, date_from=None, date_to=None, continuation_key=None):
        """One page: ``{'transactions': [...], 'continuation_key': str | None}``."""

    @abstractmethod
    def delete_session(self, session_id):
        pass


class EnableBankingClient(BankingProvider):
    TOKEN_TTL = 3600

    def __init__(self, app_id, private_key, base_url='https://api.enablebanking.com', timeout=30.0,
                 http=None):
        self.app_id = app_id
        self.private_key = private_key
        self.base_url = base_url.rstrip('/')
        self.http = http or httpx.Client(timeout=timeout)
        self._token = None
        self._token_exp = 0

    @classmethod
    def from_config(cls, config):
        app_id = config.get('ENABLE_BANKING_APP_ID')
        key = config.get('ENABLE_BANKING_PRIVATE_KEY')
        if not app_id or not key:
            raise BankingAPIError('Enable Banking credentials not configured. '
                                  'Check ENABLE_BANKING_APP_ID and ENABLE_BANKING_PRIVATE_KEY')
        if key.startswith('@'):
            with open(key[1:], encoding='utf-8') as fh:
                key = fh.read()
        return cls(app_id, key, config.get('ENABLE_BANKING_API_URL') or 'https://api.enablebanking.com')

    def _auth_header(self):
        now = int(time.time())
        # Reuse the signed assertion until shortly before it expires
        if self._token is None or now > self._token_exp - 60:
            claims = {
                'iss': 'enablebanking.com',
                'aud': 'api.enablebanking.com',
                'iat': now,
                'exp': now + self.TOKEN_TTL,
            }
            self._token = jwt.encode(claims, self.private_key, algorithm='RS256',
                                     headers={'kid': self.app_id})
            self._token_exp = now + self.TOKEN_TTL
        return {'Authorization': f'Bearer {self._token}'}

    def _request(self, method, path, params=None, body=None):
        try:
            resp = self.http.request(method, f'{self.base_url}{path}', params=params, json=body,
                                     headers=self._auth_header())
        except httpx.HTTPError as exc:
            raise BankingAPIError(f'{method} {path} failed: {exc}') from exc
        if resp.is_error:
            try:
                payload = resp.json()
                message = payload.get('message') or payload.get('error') or resp.text
            except ValueError:
                message = resp.text or resp.reason_phrase
            raise BankingAPIError(f'{method} {path} returned {resp.status_code}: {message}', resp.status_code)
        return resp.json() if resp.content else None

    def list_institutions(self, country):
        data = self._request('GET', '/aspsps', params={'country': country.upper()})
        return (data or {}).get('aspsps', [])

    def start_consent(self, bank_name, country, state, redirect_url, valid_until, psu_type='personal'):
        body = {
            'aspsp': {'name': bank_name, 'country': country.upper()},
            'state': state,
            'redirect_url': redirect_url,
            'access': {'valid_until': valid_until.isoformat(), 'balances': True, 'transactions': True},
            'psu_type': psu_type,
        }
        return self._request('POST', '/auth', body=body)

    def create_session(self, code):
        return self._request('POST', '/sessions', body={'code': code})

    def fetch_balances(self, account_uid):
        data = self._request('GET', f'/accounts/{account_uid}/balances')
        return (data or {}).get('balances', [])

    def fetch_transactions(self, account_uid, date_from=None, date_to=None, continuation_key=None):
        params = {}
        if date_from:
            params['date_from'] = date_from.isoformat()
        if date_to:
            params['date_to'] = date_to.isoformat()
        if continuation_key:
            params['continuation_key'] = continuation_key
        data = self._request('GET', f'/accounts/{account_uid}/transactions', params=params) or {}
        return {'transactions': data.get('transactions') or data.get('booked') or [],
                'continuation_key': data.get('continuation_key')}

    def delete_session(self, session_id):
        self._request('DELETE', f'/sessions/{session_id}')


def consent_valid_until(days):
    return datetime.now(timezone.utc) + timedelta(days=days)


def get_provider():
    provider = current_app.extensions.get('banking_provider')
    if provider is None:
        provider = EnableBankingClient.from_config(current_app.config)
        current_app.extensions['banking_provider'] = provider
    return provider
