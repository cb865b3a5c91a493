import sys

from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.runtime.migration import MigrationContext
from sqlalchemy import text

from academy.config import settings
from academy.core.periods import parse_hhmm
from academy.db import SessionLocal, engine
from academy.models import InvoiceSequence
from academy.services.invoice_service import INVOICE_SEQUENCE_NAME


GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity_and_write():
    with engine.begin() as conn:
        conn.execute(text('SELECT 1'))
        conn.execute(text('CREATE TABLE IF NOT EXISTS _healthcheck_probe (id INTEGER PRIMARY KEY, note TEXT)'))
        conn.execute(text("INSERT INTO _healthcheck_probe (note) VALUES ('probe')"))
        conn.execute(text("DELETE FROM _healthcheck_probe WHERE note='probe'"))
        conn.execute(text('DROP TABLE IF EXISTS _healthcheck_probe'))
    return 'connect + write ok'


def check_alembic_head():
    cfg = Config('alembic.ini')
    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())
    if not heads:
        raise RuntimeError('No alembic heads found in repository')

    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()

    if current is None:
        raise RuntimeError('No migration version in DB (run alembic upgrade head)')
    if current not in heads:
        raise RuntimeError(f'DB revision {current} is not at head {sorted(heads)}')
    return f'current={current}'


def check_settings():
    parse_hhmm(settings.billing_run_time)
    if settings.invoice_due_days <= 0:
        raise RuntimeError('INVOICE_DUE_DAYS must be positive')
    if settings.invoice_number_width <= 0:
        raise RuntimeError('INVOICE_NUMBER_WIDTH must be positive')
    return f'timezone={settings.app_timezone} currency={settings.default_currency}'


def check_invoice_sequence():
    db = SessionLocal()
    try:
        row = db.get(InvoiceSequence, INVOICE_SEQUENCE_NAME)
        if row is None:
            raise RuntimeError('Invoice sequence missing (run bootstrap.py)')
        return f'last_value={row.last_value}'
    finally:
        db.close()


def main():
    checks = [
        ('Database connectivity and write access', check_db_connectivity_and_write),
        ('Alembic migration status at head', check_alembic_head),
        ('Settings are valid', check_settings),
        ('Invoice sequence seeded', check_invoice_sequence),
    ]

    all_ok = True
    for name, fn in checks:
        all_ok = run_check(name, fn) and all_ok

    if not all_ok:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
