#!/usr/bin/env python3
"""
Management Script

CLI commands for database migrations (Flask-Migrate/Alembic), admin account
bootstrap and delete history retention.
"""

from app import app, db
from flask_migrate import init, migrate, upgrade, downgrade, current, history

# Note: Migrate is already initialized in app.py, just importing it here for CLI commands


def print_usage():
    print("Usage: python manage.py [command]")
    print("\nAvailable commands:")
    print("  init             - Initialize migrations directory (first time only)")
    print("  migrate          - Generate a new migration from model changes")
    print("  upgrade          - Apply pending migrations to database")
    print("  downgrade        - Rollback the last migration")
    print("  current          - Show current migration version")
    print("  history          - Show migration history")
    print("  create_tables    - Create all tables directly (development only)")
    print("  create_admin     - Create or promote an admin: create_admin <email> <password>")
    print("  cleanup_history  - Purge expired delete history: cleanup_history [days] [--dry-run]")
    print("\nExamples:")
    print("  python manage.py init")
    print("  python manage.py migrate -m 'Add gram batches'")
    print("  python manage.py upgrade")
    print("  python manage.py create_admin admin@example.com s3cret")
    print("  python manage.py cleanup_history 60 --dry-run")


if __name__ == '__main__':
    import sys

    if len(sys.argv) < 2:
        print_usage()
        sys.exit(1)

    command = sys.argv[1]

    if command == 'cleanup_history':
        from audit_retention import run_history_cleanup
        args = [a for a in sys.argv[2:] if a != '--dry-run']
        run_history_cleanup(days=args[0] if args else None, dry_run='--dry-run' in sys.argv[2:])
        sys.exit(0)

    with app.app_context():
        if command == 'init':
            print("Initializing migrations directory...")
            init()
            print("Migrations directory created successfully!")

        elif command == 'migrate':
            message = sys.argv[3] if len(sys.argv) > 3 and sys.argv[2] == '-m' else 'Auto-generated migration'
            print(f"Generating migration: {message}")
            migrate(message=message)
            print("Migration generated successfully!")

        elif command == 'upgrade':
            print("Applying migrations...")
            upgrade()
            print("Database upgraded successfully!")

        elif command == 'downgrade':
            print("Rolling back last migration...")
            downgrade()
            print("Migration rolled back successfully!")

        elif command == 'current':
            print("Current migration version:")
            current()

        elif command == 'history':
            print("Migration history:")
            history()

        elif command == 'create_tables':
            print("Creating tables...")
            db.create_all()
            print("Tables created successfully!")

        elif command == 'create_admin':
            if len(sys.argv) < 4:
                print("Usage: python manage.py create_admin <email> <password>")
                sys.exit(1)
            from auth_utils import ensure_admin
            user = ensure_admin(sys.argv[2], sys.argv[3])
            print(f"Admin account ready: {user.email}")

        else:
            print(f"Unknown command: {command}")
            print("Run 'python manage.py' to see available commands")
            sys.exit(1)
