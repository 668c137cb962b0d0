"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to head
  python migrate.py --sql      # print the SQL instead of running it

Uses Alembic with the scripts under migrations/.
"""

import argparse
import logging
import os
import sys

from alembic import command
from alembic.config import Config

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def build_config():
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    return cfg


def main(argv=None):
    parser = argparse.ArgumentParser(description="Apply schema migrations.")
    parser.add_argument('--revision', default='head', help="Target revision (default: head)")
    parser.add_argument('--sql', action='store_true', help="Print SQL instead of executing it")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        print("Applying database migrations...")
        command.upgrade(build_config(), args.revision, sql=args.sql)
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        logging.exception("Migration failed")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
