# activation_server/utils/crypto.py
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from activation_server.config import Settings
from activation_server.errors import ConfigurationError

logger = logging.getLogger(__name__)

# the only fields covered by the signature, in the client's naming
SIGNED_FIELDS = ("success", "message", "machineId", "isTrial", "expiryDate")


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 in UTC with millisecond precision and a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_payload(success: bool, message: str, machine_id: Optional[str],
                  is_trial: bool, expiry_date: Optional[str]) -> dict:
    return {
        "success": success,
        "message": message,
        "machineId": machine_id,
        "isTrial": is_trial,
        "expiryDate": expiry_date,
    }


def canonicalize(payload: dict) -> bytes:
    # verifiers must serialize the same way: sorted keys, no whitespace, UTF-8
    fields = {name: payload.get(name) for name in SIGNED_FIELDS}
    return json.dumps(fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def load_private_key(settings: Settings):
    """
    Load the signing key from SIGNING_PRIVATE_KEY (PEM text) or
    SIGNING_PRIVATE_KEY_PATH. Raises ConfigurationError when neither is set.
    """
    password = settings.signing_key_password.encode() if settings.signing_key_password else None
    if settings.signing_private_key:
        # env files and dashboards often flatten the PEM onto one line
        pem = settings.signing_private_key.replace("\\n", "\n").encode()
    elif settings.signing_private_key_path:
        with open(settings.signing_private_key_path, "rb") as f:
            pem = f.read()
    else:
        raise ConfigurationError("SIGNING_PRIVATE_KEY or SIGNING_PRIVATE_KEY_PATH must be set")
    return serialization.load_pem_private_key(pem, password=password)


class ResponseSigner:
    """Signs response payloads with RSA PKCS#1 v1.5 over SHA-256."""

    def __init__(self, private_key=None):
        self.private_key = private_key
        self._warned = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResponseSigner":
        try:
            key = load_private_key(settings)
        except ConfigurationError as exc:
            logger.warning("Response signing disabled: %s", exc)
            return cls(None)
        return cls(key)

    @property
    def enabled(self) -> bool:
        return self.private_key is not None

    def sign(self, payload: dict) -> Optional[str]:
        if self.private_key is None:
            if not self._warned:
                logger.warning("No signing key configured, responses are sent without a signature")
                self._warned = True
            return None
        sig = self.private_key.sign(canonicalize(payload), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(sig).decode()

    def public_key_pem(self) -> Optional[str]:
        if self.private_key is None:
            return None
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()


def verify_signature(public_key, payload: dict, signature: Optional[str]) -> bool:
    """Check a response signature with the server's public key (object or PEM)."""
    if not signature:
        return False
    if isinstance(public_key, (str, bytes)):
        pem = public_key.encode() if isinstance(public_key, str) else public_key
        public_key = serialization.load_pem_public_key(pem)
    try:
        public_key.verify(base64.b64decode(signature), canonicalize(payload), padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError):
        return False
