"""Transactional email through the Resend HTTP API.

Sending is fire-and-forget: a missing API key or a failed request is logged
and reported as ``False``, never raised to the caller.
"""
import logging
from datetime import date

import httpx
from flask import current_app

logger = logging.getLogger(__name__)

RESEND_URL = 'https://api.resend.com/emails'

# Tests swap this for a list to capture outgoing mail instead of sending it
outbox = None


def send_email(to, subject, html, text=None):
    message = {
        'from': current_app.config['EMAIL_FROM'],
        'to': [to],
        'subject': subject,
        'html': html,
    }
    if text:
        message['text'] = text

    if outbox is not None:
        outbox.append(message)
        return True

    api_key = current_app.config.get('RESEND_API_KEY')
    if not api_key:
        logger.warning('RESEND_API_KEY not configured, email to %s not sent (%s)', to, subject)
        return False

    try:
        resp = httpx.post(RESEND_URL, json=message, timeout=10.0,
                          headers={'Authorization': f'Bearer {api_key}'})
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning('Email to %s failed: %s', to, exc)
        return False
    logger.info('Email sent to %s: %s', to, resp.json().get('id'))
    return True


def _layout(body):
    return (
        '<!DOCTYPE html><html><body style="font-family: sans-serif; background: #f5f5f5; padding: 20px;">'
        '<div style="max-width: 420px; margin: 0 auto; background: white; border-radius: 12px; padding: 32px;">'
        '<h1 style="margin: 0 0 24px; font-size: 20px;">HomeFinance</h1>'
        f'{body}'
        '</div>'
        f'<p style="text-align: center; color: #999; font-size: 11px;">&copy; {date.today().year} HomeFinance</p>'
        '</body></html>'
    )


def send_invitation_email(to, inviter_name, household_name, token, expires_at):
    link = f"{current_app.config['APP_URL'].rstrip('/')}/invite/accept?token={token}"
    expires = expires_at.strftime('%d %b %Y')
    html = _layout(
        f'<p><strong>{inviter_name}</strong> invited you to join <strong>{household_name}</strong>.</p>'
        f'<p><a href="{link}" style="background: #10b981; color: white; padding: 12px 20px; '
        f'border-radius: 8px; text-decoration: none;">Accept invitation</a></p>'
        f'<p style="color: #666; font-size: 13px;">This invitation expires on {expires}.</p>'
    )
    text = f'{inviter_name} invited you to join {household_name} on HomeFinance.\n\n{link}\n\nExpires on {expires}.'
    return send_email(to, f'{inviter_name} invited you to {household_name}', html, text)


def send_password_reset_email(to, code, ttl_minutes):
    html = _layout(
        '<p>Use this code to reset your password:</p>'
        f'<p style="font-family: monospace; font-size: 32px; letter-spacing: 8px; color: #059669;">{code}</p>'
        f'<p style="color: #666; font-size: 13px;">This code expires in <strong>{ttl_minutes} minutes</strong>.</p>'
        '<p style="color: #999; font-size: 12px;">If you did not ask for it you can ignore this email.</p>'
    )
    text = f'Your HomeFinance reset code is: {code}\n\nIt expires in {ttl_minutes} minutes.'
    return send_email(to, 'Your HomeFinance reset code', html, text)
