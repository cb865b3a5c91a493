"""Prepare a fresh academy database: create tables, seed the invoice sequence and the first admin."""

import logging
import sys

from academy.db import Base, SessionLocal, engine
from academy.services.bootstrap_service import run_bootstrap


logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s %(message)s')
logger = logging.getLogger('bootstrap')


def main() -> int:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = run_bootstrap(db)
    finally:
        db.close()
    admin = result['admin']
    logger.info('invoice_sequence_ready last_value=%s', result['invoice_sequence_last_value'])
    if admin.get('seeded'):
        logger.info('admin_seeded email=%s', admin['email'])
    elif admin.get('reason') == 'no_admin_email':
        logger.warning('No admin exists yet; set BOOTSTRAP_ADMIN_EMAIL and rerun')
        return 1
    else:
        logger.info('admin_seed_skipped reason=%s', admin.get('reason'))
    return 0


if __name__ == '__main__':
    sys.exit(main())
