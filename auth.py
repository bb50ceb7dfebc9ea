import logging
import secrets
from datetime import timedelta

from flask import current_app
from werkzeug.security import check_password_hash, generate_password_hash

import mailer
from errors import ValidationError
from ledger.common import text_arg
from ledger.households import new_household
from ledger.invitations import EMAIL_RE
from models import PasswordResetCode, User, db, utcnow

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _check_password(password, field='password'):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.', field=field)


def register_user(name, email, password):
    name = text_arg(name, 'name')
    email = text_arg(email, 'email').lower()
    if not name:
        raise ValidationError('Name is required.', field='name')
    if not EMAIL_RE.match(email):
        raise ValidationError('Enter a valid email address.', field='email')
    _check_password(password)
    if User.query.filter_by(email=email).first():
        raise ValidationError('Email already registered.', field='email')

    user = User(name=name[:120], email=email, password_hash=generate_password_hash(password))
    db.session.add(user)
    db.session.flush()
    new_household(user)
    db.session.commit()
    logger.info('User %s registered', user.id)
    return user


def authenticate(email, password):
    email = text_arg(email, 'email').lower()
    user = User.query.filter_by(email=email).first()
    if not user or not isinstance(password, str) or not check_password_hash(user.password_hash, password):
        raise ValidationError('Invalid credentials.')
    return user


def request_password_reset(email):
    """Email a 6-digit code. Unknown emails are silently ignored."""
    email = text_arg(email, 'email').lower()
    user = User.query.filter_by(email=email).first()
    if user is None:
        logger.info('Password reset requested for unknown email')
        return
    ttl = current_app.config['PASSWORD_RESET_TTL_MINUTES']
    now = utcnow()
    # Only the newest code is valid
    PasswordResetCode.query.filter_by(user_id=user.id, used_at=None).update({'used_at': now})
    code = f'{secrets.randbelow(10 ** 6):06d}'
    db.session.add(PasswordResetCode(user_id=user.id, code_hash=generate_password_hash(code),
                                     expires_at=now + timedelta(minutes=ttl)))
    db.session.commit()
    mailer.send_password_reset_email(user.email, code, ttl)


def confirm_password_reset(email, code, new_password):
    email = text_arg(email, 'email').lower()
    _check_password(new_password)
    user = User.query.filter_by(email=email).first()
    reset = None
    if user is not None:
        reset = (PasswordResetCode.query
                 .filter(PasswordResetCode.user_id == user.id, PasswordResetCode.used_at.is_(None),
                         PasswordResetCode.expires_at >= utcnow())
                 .order_by(PasswordResetCode.id.desc()).first())
    if reset is None or not check_password_hash(reset.code_hash, str(code or '').strip()):
        raise ValidationError('Invalid or expired code.', field='code')
    reset.used_at = utcnow()
    user.password_hash = generate_password_hash(new_password)
    db.session.commit()
    logger.info('Password reset for user %s', user.id)
    return user
