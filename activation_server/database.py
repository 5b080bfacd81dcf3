# activation_server/database.py
import logging

from sqlalchemy import create_engine, inspect, text, false
from sqlalchemy.engine import Dialect, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker

from activation_server.models import Base, LicenseCode, LICENSE_CODES_TABLE

logger = logging.getLogger(__name__)

# columns added to license_codes after its first release
TRIAL_COLUMNS = ("is_trial", "trial_expires_at")


def make_engine(database_url: str) -> Engine:
    # Use SQLAlchemy engine (sync)
    return create_engine(database_url, pool_pre_ping=True, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _add_column_sql(dialect: Dialect, name: str) -> str:
    column = LicenseCode.__table__.c[name]
    # postgres can skip a column another replica added first; sqlite has no IF NOT EXISTS here
    guard = "IF NOT EXISTS " if dialect.name == "postgresql" else ""
    ddl = f"ALTER TABLE {LICENSE_CODES_TABLE} ADD COLUMN {guard}{name} {column.type.compile(dialect=dialect)}"
    if name == "is_trial":
        default = false().compile(dialect=dialect)
        ddl += f" NOT NULL DEFAULT {default}"
    return ddl


def _existing_columns(engine: Engine) -> set[str]:
    return {col["name"] for col in inspect(engine).get_columns(LICENSE_CODES_TABLE)}


def migrate(engine: Engine) -> list[str]:
    """
    Bring the schema up to date. Safe to run any number of times, including
    from several processes booting at once.

    Creates license_codes when it is missing and adds the trial columns to
    tables created before trials existed. Returns the names of the columns
    this call added.
    """
    # create tables if not present
    Base.metadata.create_all(bind=engine)

    existing = _existing_columns(engine)
    added = []
    for name in TRIAL_COLUMNS:
        if name in existing:
            continue
        try:
            with engine.begin() as conn:
                conn.execute(text(_add_column_sql(engine.dialect, name)))
        except DBAPIError:
            # another process may have added it between our inspect and the ALTER
            if name not in _existing_columns(engine):
                raise
            logger.info("Column %s was added concurrently, skipping", name)
            continue
        added.append(name)

    if added:
        logger.info("Added columns %s to %s", ", ".join(added), LICENSE_CODES_TABLE)
    else:
        logger.debug("Schema for %s is up to date", LICENSE_CODES_TABLE)
    return added
