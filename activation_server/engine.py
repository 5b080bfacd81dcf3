# activation_server/engine.py
"""
Activation decision engine.

A request names a license code and a machine. The code's record is read once
and one of the following applies, in order:

    no record                              -> InvalidCode (404)
    used by another machine                -> BoundToOtherDevice (403)
    used by this machine, trial, expired   -> TrialExpired (402)
    used by this machine, trial, running   -> TrialActive (200)
    used by this machine                   -> Verified (200)
    unused                                 -> Activated (200), record claimed

Rejections are raised as ActivationError subclasses; accepted requests return
an Outcome. The only write is the conditional claim of an unused record.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from activation_server.errors import BoundToOtherDevice, InvalidCode, InvalidRequest, TrialExpired
from activation_server.models import LicenseRecord
from activation_server.store import LicenseStore

logger = logging.getLogger(__name__)

ACTIVATED = "Activated"
VERIFIED = "Verified"
TRIAL_ACTIVE = "TrialActive"


@dataclass
class Outcome:
    kind: str
    message: str
    is_trial: bool = False
    expires_at: Optional[datetime] = None
    remaining: Optional[timedelta] = None
    status_code: int = 200
    success: bool = True


@dataclass
class TrialPolicy:
    prefix: str = "TRIAL-"
    duration: timedelta = timedelta(minutes=10)

    def is_trial(self, record: LicenseRecord) -> bool:
        # issuance-time tag wins; the prefix is kept for codes minted before the tag existed
        if record.is_trial:
            return True
        return bool(self.prefix) and record.code.startswith(self.prefix)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _minutes(delta: timedelta) -> int:
    return max(0, math.ceil(delta.total_seconds() / 60))


def _plural(n: int) -> str:
    return "minute" if n == 1 else "minutes"


def resolve_used(record: LicenseRecord, machine_id: str, now: datetime) -> Outcome:
    """Decide the outcome for a record that has already been activated."""
    if record.machine_id != machine_id:
        raise BoundToOtherDevice()

    if record.is_trial:
        expires_at = record.trial_expires_at
        if expires_at is None or now > expires_at:
            raise TrialExpired(is_trial=True, expires_at=expires_at)
        remaining = max(expires_at - now, timedelta(0))
        minutes = _minutes(remaining)
        return Outcome(
            kind=TRIAL_ACTIVE,
            message=f"Trial active. {minutes} {_plural(minutes)} remaining.",
            is_trial=True,
            expires_at=expires_at,
            remaining=remaining,
        )

    return Outcome(kind=VERIFIED, message="License verified successfully.")


def verify_license(store: LicenseStore, code: Optional[str], machine_id: Optional[str],
                   policy: Optional[TrialPolicy] = None, now: Optional[datetime] = None) -> Outcome:
    code = (code or "").strip()
    machine_id = (machine_id or "").strip()
    if not (code and machine_id):
        raise InvalidRequest()

    policy = policy or TrialPolicy()
    now = now or utcnow()

    record = store.get_by_code(code)
    if record is None:
        raise InvalidCode()

    if record.is_used:
        return resolve_used(record, machine_id, now)

    # first activation
    is_trial = policy.is_trial(record)
    expires_at = now + policy.duration if is_trial else None
    claimed = store.claim(record.id, machine_id, now, is_trial, expires_at)
    if not claimed:
        logger.warning("Lost first-activation race for license %s, re-reading", record.id)
        record = store.get_by_code(code)
        if record is None or not record.is_used:
            # the row vanished or was reset between the two statements
            raise InvalidCode()
        return resolve_used(record, machine_id, now)

    if is_trial:
        minutes = _minutes(policy.duration)
        message = f"Trial license activated. Expires in {minutes} {_plural(minutes)}."
        return Outcome(kind=ACTIVATED, message=message, is_trial=True,
                       expires_at=expires_at, remaining=policy.duration)
    return Outcome(kind=ACTIVATED, message="License activated successfully.")
