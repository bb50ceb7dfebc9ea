import logging
import re
import secrets
from datetime import timedelta

from flask import current_app

import mailer
from errors import NotFoundError, ValidationError
from ledger.common import require_owner, text_arg
from ledger.households import get_household, move_user_to
from models import HouseholdMember, Invitation, User, db, utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def _clean_email(email):
    email = text_arg(email, 'email').lower()
    if not EMAIL_RE.match(email):
        raise ValidationError('Enter a valid email address.', field='email')
    return email


def _expire_stale(household_id=None):
    q = Invitation.query.filter(Invitation.status == 'pending', Invitation.expires_at < utcnow())
    if household_id is not None:
        q = q.filter(Invitation.household_id == household_id)
    n = q.update({'status': 'expired'}, synchronize_session='fetch')
    if n:
        db.session.commit()
    return n


def _send(invitation):
    household = invitation.household
    mailer.send_invitation_email(invitation.email, invitation.inviter.name, household.name,
                                 invitation.token, invitation.expires_at)


def _ttl():
    return timedelta(days=current_app.config['INVITATION_TTL_DAYS'])


def create_invitation(household_id, inviter_id, email):
    require_owner(household_id, inviter_id)
    email = _clean_email(email)
    already_member = (HouseholdMember.query.join(User, HouseholdMember.user_id == User.id)
                      .filter(HouseholdMember.household_id == household_id, User.email == email).first())
    if already_member:
        raise ValidationError('That person is already a member.', field='email')

    _expire_stale(household_id)
    if Invitation.query.filter_by(household_id=household_id, email=email, status='pending').first():
        raise ValidationError('There is already a pending invitation for that email.', field='email')

    invitation = Invitation(
        household_id=household_id,
        email=email,
        token=secrets.token_hex(32),
        invited_by=inviter_id,
        expires_at=utcnow() + _ttl(),
        status='pending',
    )
    db.session.add(invitation)
    db.session.commit()
    logger.info('Invitation %s sent to %s for household %s', invitation.id, email, household_id)
    _send(invitation)
    return invitation


def _owned_invitation(household_id, owner_id, invitation_id):
    require_owner(household_id, owner_id)
    invitation = Invitation.query.filter_by(id=invitation_id, household_id=household_id).first()
    if invitation is None:
        raise NotFoundError('Invitation')
    return invitation


def list_pending(household_id, owner_id):
    require_owner(household_id, owner_id)
    _expire_stale(household_id)
    return (Invitation.query.filter_by(household_id=household_id, status='pending')
            .order_by(Invitation.created_at.desc()).all())


def invitation_history(household_id, owner_id, limit=50):
    require_owner(household_id, owner_id)
    _expire_stale(household_id)
    return (Invitation.query.filter_by(household_id=household_id)
            .order_by(Invitation.created_at.desc()).limit(limit).all())


def cancel_invitation(household_id, owner_id, invitation_id):
    invitation = _owned_invitation(household_id, owner_id, invitation_id)
    if invitation.status != 'pending':
        raise ValidationError('Only pending invitations can be cancelled.')
    invitation.status = 'cancelled'
    db.session.commit()
    return invitation


def resend_invitation(household_id, owner_id, invitation_id):
    invitation = _owned_invitation(household_id, owner_id, invitation_id)
    if invitation.status not in ('pending', 'expired'):
        raise ValidationError('This invitation can no longer be resent.')
    # A fresh token invalidates the link in the previous email
    invitation.token = secrets.token_hex(32)
    invitation.expires_at = utcnow() + _ttl()
    invitation.status = 'pending'
    db.session.commit()
    _send(invitation)
    return invitation


def _by_token(token):
    if not isinstance(token, str) or not re.fullmatch(r'[0-9a-f]{64}', token):
        return None
    return Invitation.query.filter_by(token=token).first()


def validate_token(token):
    """Public lookup used by the accept page before the user signs in."""
    invitation = _by_token(token)
    if invitation is None:
        return {'valid': False, 'reason': 'not_found'}
    if invitation.status == 'pending' and invitation.expires_at < utcnow():
        invitation.status = 'expired'
        db.session.commit()
    if invitation.status != 'pending':
        return {'valid': False, 'reason': invitation.status}
    return {
        'valid': True,
        'email': invitation.email,
        'household_name': invitation.household.name,
        'inviter_name': invitation.inviter.name,
        'expires_at': invitation.expires_at.isoformat(),
    }


def accept_invitation(token, user_id):
    invitation = _by_token(token)
    if invitation is None:
        raise NotFoundError('Invitation')
    if invitation.status == 'pending' and invitation.expires_at < utcnow():
        invitation.status = 'expired'
        db.session.commit()
    if invitation.status != 'pending':
        raise ValidationError(f'This invitation is {invitation.status}.', field='token')

    user = db.session.get(User, user_id)
    if user.email.lower() != invitation.email:
        raise ValidationError('This invitation was sent to a different email.', field='token')

    household = get_household(invitation.household_id)
    move_user_to(user, household)
    invitation.status = 'accepted'
    invitation.accepted_at = utcnow()
    db.session.commit()
    logger.info('User %s accepted invitation %s into household %s', user_id, invitation.id, household.id)
    return household
