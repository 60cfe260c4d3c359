import logging
import subprocess
import sys
from pathlib import Path

from messenger.core.config import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent


def _sqlite_path(database_url: str) -> Path | None:
    """Returns the file path of a file based SQLite URL, None otherwise."""
    if "sqlite" not in database_url or ":memory:" in database_url:
        return None
    _, _, path = database_url.partition(":///")
    return Path(path) if path else None


def _alembic_command() -> list[str]:
    try:
        subprocess.run(
            ["alembic", "--version"], check=True, capture_output=True, text=True
        )
        return ["alembic"]
    except (subprocess.CalledProcessError, FileNotFoundError):
        return [sys.executable, "-m", "alembic"]


async def run_migrations():
    """Upgrades the database to the latest alembic revision."""
    try:
        logger.info("Running database migrations...")

        db_path = _sqlite_path(settings.DATABASE_URL)
        if db_path is not None and not db_path.parent.exists():
            logger.info(f"Creating database directory: {db_path.parent}")
            db_path.parent.mkdir(parents=True, exist_ok=True)

        result = subprocess.run(
            _alembic_command() + ["upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            cwd=str(PROJECT_ROOT),
        )
        logger.info("Migrations completed successfully")
        if result.stdout:
            logger.info(f"Alembic output: {result.stdout}")

    except subprocess.CalledProcessError as e:
        logger.error(f"Migration failed with exit code {e.returncode}")
        if e.stdout:
            logger.error(f"Stdout: {e.stdout}")
        if e.stderr:
            logger.error(f"Stderr: {e.stderr}")
        raise RuntimeError("Database migration failed") from e
    except Exception as e:
        logger.error(f"Unexpected error during migration: {e}")
        raise RuntimeError("Database migration failed") from e
