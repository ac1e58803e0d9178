"""
Migration script to create the fulfillment engine tables.

Creates every table defined in fulfillment.models that does not exist yet,
including the partial unique indexes on retry_operations and dropship_orders.
Existing tables are left untouched, so the script is safe to re-run.

Run this script with:
    python migrations/create_fulfillment_tables.py
    python migrations/create_fulfillment_tables.py --dry-run

Or from the app context:
    from migrations.create_fulfillment_tables import migrate
    migrate()
"""

import argparse
import sys
import os

# Add parent directory to path to import fulfillment modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

from fulfillment import create_app
from fulfillment.models import db


def existing_tables():
    """Names of tables already present in the database."""
    return set(inspect(db.engine).get_table_names())


def migrate(dry_run=False):
    """Create missing fulfillment tables. Returns True on success."""
    app = create_app()

    with app.app_context():
        present = existing_tables()
        # sorted_tables is in foreign-key dependency order
        missing = [table for table in db.metadata.sorted_tables if table.name not in present]

        if not missing:
            print("✓ All fulfillment tables already exist. Migration not needed.")
            return True

        for table in missing:
            print(f"{'Would create' if dry_run else 'Creating'} table '{table.name}'...")
        if dry_run:
            return True

        try:
            for table in missing:
                table.create(db.engine, checkfirst=True)
        except Exception as e:
            print(f"✗ ERROR: Failed to create tables: {e}")
            db.session.rollback()
            return False

        inspector = inspect(db.engine)
        for table in missing:
            if table.name not in inspector.get_table_names():
                print(f"✗ ERROR: Table '{table.name}' creation verification failed")
                return False
            indexes = inspector.get_indexes(table.name)
            print(f"✓ Created '{table.name}'")
            for idx in indexes:
                print(f"  - {idx['name']}: {idx['column_names']}{' (unique)' if idx.get('unique') else ''}")

        return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create fulfillment engine tables")
    parser.add_argument("--dry-run", action="store_true", help="List the tables that would be created")
    args = parser.parse_args()

    success = migrate(dry_run=args.dry_run)
    sys.exit(0 if success else 1)
