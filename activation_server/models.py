# activation_server/models.py
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, Text, Boolean, DateTime, false
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

LICENSE_CODES_TABLE = "license_codes"


class LicenseCode(Base):
    __tablename__ = LICENSE_CODES_TABLE
    id = Column(Integer, primary_key=True, index=True)
    code = Column(Text, unique=True, nullable=False, index=True)
    is_used = Column(Boolean, nullable=False, default=False, server_default=false())
    machine_id = Column(Text, nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    # trial columns were added after the table first shipped, see database.migrate
    is_trial = Column(Boolean, nullable=False, default=False, server_default=false())
    trial_expires_at = Column(DateTime(timezone=True), nullable=True)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    # PostgREST returns ISO strings, SQLAlchemy returns datetimes
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return as_utc(value)


@dataclass
class LicenseRecord:
    """Store-independent view of one license_codes row."""

    id: int
    code: str
    is_used: bool = False
    machine_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    is_trial: bool = False
    trial_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: LicenseCode) -> "LicenseRecord":
        return cls(
            id=row.id,
            code=row.code,
            is_used=bool(row.is_used),
            machine_id=row.machine_id,
            activated_at=as_utc(row.activated_at),
            created_at=as_utc(row.created_at),
            is_trial=bool(row.is_trial),
            trial_expires_at=as_utc(row.trial_expires_at),
        )

    @classmethod
    def from_dict(cls, row: dict) -> "LicenseRecord":
        return cls(
            id=row["id"],
            code=row["code"],
            is_used=bool(row.get("is_used")),
            machine_id=row.get("machine_id"),
            activated_at=parse_timestamp(row.get("activated_at")),
            created_at=parse_timestamp(row.get("created_at")),
            is_trial=bool(row.get("is_trial")),
            trial_expires_at=parse_timestamp(row.get("trial_expires_at")),
        )
