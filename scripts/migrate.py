"""Script to run database migrations."""

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"

USAGE = "Usage: python scripts/migrate.py [upgrade [rev] | downgrade <rev> | current | create <msg>]"


def get_config() -> Config:
    """Load alembic.ini from the repository root."""
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    return alembic_cfg


def run_migrations(revision: str = "head") -> None:
    """Upgrade the database to ``revision``."""
    try:
        print(f"Running database migrations up to {revision}...")
        command.upgrade(get_config(), revision)
        print("✓ Migrations completed successfully!")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        sys.exit(1)


def rollback(revision: str) -> None:
    """Downgrade the database to ``revision``."""
    try:
        print(f"Rolling back to {revision}...")
        command.downgrade(get_config(), revision)
        print("✓ Rollback completed successfully!")
    except Exception as e:
        print(f"✗ Rollback failed: {e}", file=sys.stderr)
        sys.exit(1)


def create_migration(message: str) -> None:
    """Create a new migration."""
    try:
        print(f"Creating migration: {message}")
        command.revision(get_config(), message=message, autogenerate=True)
        print("✓ Migration created successfully!")
    except Exception as e:
        print(f"✗ Migration creation failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    args = sys.argv[1:]
    if not args:
        run_migrations()
    elif args[0] == "upgrade":
        run_migrations(args[1] if len(args) > 1 else "head")
    elif args[0] == "downgrade" and len(args) > 1:
        rollback(args[1])
    elif args[0] == "current":
        command.current(get_config(), verbose=True)
    elif args[0] == "create" and len(args) > 1:
        create_migration(" ".join(args[1:]))
    else:
        print(USAGE)
