"""
Migration Runner - applies pending Alembic migrations at startup.

Alembic's command API is synchronous, so the asyncpg URL is rewritten
to psycopg2 for the duration of the upgrade.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def sync_database_url(url: str) -> str:
    """postgresql+asyncpg://... -> postgresql+psycopg2://..."""
    return url.replace("+asyncpg", "+psycopg2")


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _alembic_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    # Keep structlog's handlers; alembic.ini would otherwise replace them
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def run_migrations() -> None:
    """
    Upgrade the database to head if it is behind.

    Raises:
        RuntimeError: the upgrade failed; the app must not start on a stale schema
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = sync_database_url(settings.database_url)
    alembic_cfg = _alembic_config(sync_url)

    try:
        engine = create_engine(sync_url)
        try:
            current = _current_revision(engine)
            head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

            if current == head:
                logger.info("database_schema_current", revision=current)
                return

            logger.info("migrations_starting", current=current, head=head)
            command.upgrade(alembic_cfg, "head")
            logger.info("migrations_complete", revision=_current_revision(engine))
        finally:
            engine.dispose()
    except Exception as exc:
        logger.error("migration_failed", error=str(exc))
        raise RuntimeError(f"Database migration failed: {exc}") from exc
