import logging

from sqlalchemy.orm import Session

from academy.config import settings
from academy.models import Role, User
from academy.services.invoice_service import ensure_invoice_sequence


logger = logging.getLogger(__name__)


def _seed_default_admin_if_needed(db: Session) -> dict:
    if db.query(User).filter(User.role == Role.ADMIN.value).count() > 0:
        return {'seeded': False, 'reason': 'admin_exists'}
    email = (settings.bootstrap_admin_email or '').strip().lower()
    if not email:
        logger.warning('admin_seed_skipped missing_bootstrap_admin_email')
        return {'seeded': False, 'reason': 'no_admin_email'}
    row = User(
        name=settings.bootstrap_admin_name,
        email=email,
        role=Role.ADMIN.value,
        timezone=settings.app_timezone,
    )
    db.add(row)
    db.commit()
    logger.warning('Default admin created - review after setup (email=%s)', email)
    return {'seeded': True, 'email': email}


def run_bootstrap(db: Session) -> dict:
    sequence = ensure_invoice_sequence(db)
    admin = _seed_default_admin_if_needed(db)
    return {
        'ran': True,
        'invoice_sequence_last_value': sequence.last_value,
        'admin': admin,
    }
