"""
Alembic migration runner for application startup.
"""
import logging
from pathlib import Path

from sqlalchemy.exc import OperationalError
from alembic import command
from alembic.config import Config
from database import DATABASE_URL

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parent / "alembic.ini"


def get_alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
    return alembic_cfg


def run_migrations() -> None:
    """
    Upgrade the database to head. Called during application startup.
    Connection failures are re-raised so startup can report them.
    """
    try:
        logger.info("Running Alembic migrations...")
        command.upgrade(get_alembic_config(), "head")
        logger.info("Alembic migrations completed successfully")
    except OperationalError as e:
        logger.error(f"Failed to connect to database during migrations: {e}")
        raise
