# activation_server/store.py
# Store handles for the license_codes table. One handle is opened at process
# start and closed at shutdown; request handlers receive it by injection.
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import requests
from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from activation_server.config import Settings
from activation_server.database import make_engine, make_session_factory, migrate
from activation_server.errors import ConfigurationError, StoreError
from activation_server.models import LicenseCode, LicenseRecord, LICENSE_CODES_TABLE

logger = logging.getLogger(__name__)


class LicenseStore:
    """Interface shared by the SQL and Supabase handles."""

    def migrate(self) -> None:
        raise NotImplementedError

    def get_by_code(self, code: str) -> Optional[LicenseRecord]:
        raise NotImplementedError

    def claim(self, record_id: int, machine_id: str, activated_at: datetime,
              is_trial: bool, trial_expires_at: Optional[datetime]) -> bool:
        """
        Mark an unused record as activated by machine_id.

        Returns False when the record was already used by the time the
        update ran, i.e. another request won the first activation.
        """
        raise NotImplementedError

    def add_code(self, code: str, is_trial: bool = False) -> Optional[LicenseRecord]:
        """Insert an unused code. Returns None if the code already exists."""
        raise NotImplementedError

    def close(self) -> None:
        pass


# ---------------------------
# SQLAlchemy
class SqlLicenseStore(LicenseStore):
    def __init__(self, engine: Engine, owns_engine: bool = True):
        self.engine = engine
        self.owns_engine = owns_engine
        self.SessionLocal = make_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlLicenseStore":
        return cls(make_engine(database_url))

    @contextmanager
    def _session(self):
        db = self.SessionLocal()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError() from exc
        finally:
            db.close()

    def migrate(self) -> None:
        try:
            migrate(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError() from exc

    def get_by_code(self, code: str) -> Optional[LicenseRecord]:
        with self._session() as db:
            row = db.execute(select(LicenseCode).where(LicenseCode.code == code)).scalar_one_or_none()
            return LicenseRecord.from_row(row) if row else None

    def claim(self, record_id, machine_id, activated_at, is_trial, trial_expires_at) -> bool:
        stmt = (
            update(LicenseCode)
            .where(LicenseCode.id == record_id, LicenseCode.is_used == False)  # noqa: E712
            .values(
                is_used=True,
                machine_id=machine_id,
                activated_at=activated_at,
                is_trial=is_trial,
                trial_expires_at=trial_expires_at,
            )
        )
        with self._session() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def add_code(self, code: str, is_trial: bool = False) -> Optional[LicenseRecord]:
        with self._session() as db:
            row = LicenseCode(code=code, is_used=False, is_trial=is_trial)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
            db.refresh(row)
            return LicenseRecord.from_row(row)

    def close(self) -> None:
        if self.owns_engine:
            self.engine.dispose()


# ---------------------------
# Supabase REST (PostgREST) with the service role key
class SupabaseLicenseStore(LicenseStore):
    def __init__(self, url: str, service_key: str, timeout: float = 8):
        self.table_url = f"{url.rstrip('/')}/rest/v1/{LICENSE_CODES_TABLE}"
        self.timeout = timeout
        self.headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method, params=None, json=None, extra_headers=None, ok=(200,)):
        headers = dict(self.headers)
        if extra_headers:
            headers.update(extra_headers)
        try:
            r = method(self.table_url, headers=headers, params=params, json=json, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreError() from exc
        if r.status_code not in ok:
            logger.error("Supabase returned %s: %s", r.status_code, r.text)
            raise StoreError()
        return r

    @staticmethod
    def _rows(r) -> list:
        try:
            rows = r.json()
        except ValueError as exc:
            logger.error("Supabase returned a non-JSON body: %s", r.text[:200])
            raise StoreError() from exc
        if not isinstance(rows, list):
            logger.error("Supabase returned %s instead of a row list", type(rows).__name__)
            raise StoreError()
        return rows

    @staticmethod
    def _first_record(rows: list) -> Optional[LicenseRecord]:
        if not rows:
            return None
        try:
            return LicenseRecord.from_dict(rows[0])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Supabase returned an unreadable %s row: %r", LICENSE_CODES_TABLE, rows[0])
            raise StoreError() from exc

    def migrate(self) -> None:
        # DDL is not available over PostgREST
        logger.info("Schema for %s is managed in Supabase, skipping migration", LICENSE_CODES_TABLE)

    def get_by_code(self, code: str) -> Optional[LicenseRecord]:
        params = {"select": "*", "code": f"eq.{code}"}
        return self._first_record(self._rows(self._call(requests.get, params=params)))

    def claim(self, record_id, machine_id, activated_at, is_trial, trial_expires_at) -> bool:
        params = {"id": f"eq.{record_id}", "is_used": "eq.false"}
        payload = {
            "is_used": True,
            "machine_id": machine_id,
            "activated_at": activated_at.isoformat(),
            "is_trial": is_trial,
            "trial_expires_at": trial_expires_at.isoformat() if trial_expires_at else None,
        }
        rows = self._rows(self._call(
            requests.patch, params=params, json=payload,
            extra_headers={"Prefer": "return=representation"},
        ))
        return len(rows) == 1

    def add_code(self, code: str, is_trial: bool = False) -> Optional[LicenseRecord]:
        payload = {"code": code, "is_used": False, "is_trial": is_trial}
        r = self._call(
            requests.post, json=payload,
            extra_headers={"Prefer": "return=representation"},
            ok=(200, 201, 409),
        )
        if r.status_code == 409:
            return None
        return self._first_record(self._rows(r))


def create_store(settings: Settings) -> LicenseStore:
    if settings.database_url:
        logger.info("Using SQL license store")
        return SqlLicenseStore.from_url(settings.database_url)
    if settings.supabase_url and settings.supabase_service_key:
        logger.info("Using Supabase license store at %s", settings.supabase_url)
        return SupabaseLicenseStore(
            settings.supabase_url, settings.supabase_service_key, timeout=settings.store_timeout_seconds
        )
    raise ConfigurationError("DATABASE_URL or SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
