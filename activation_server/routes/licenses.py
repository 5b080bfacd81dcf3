# activation_server/routes/licenses.py
import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from activation_server.engine import TrialPolicy, verify_license
from activation_server.errors import ActivationError, StoreError
from activation_server.store import LicenseStore
from activation_server.utils.crypto import ResponseSigner, build_payload, isoformat_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["license"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


class VerifyRequest(BaseModel):
    licenseCode: Optional[str] = None
    machineId: Optional[str] = None


class VerifyResponse(BaseModel):
    success: bool
    message: str
    isTrial: bool = False
    expiryDate: Optional[str] = None
    signature: Optional[str] = None


# ---------------------------
# dependencies, all wired up in main.create_app
def get_store(request: Request) -> LicenseStore:
    return request.app.state.store


def get_signer(request: Request) -> ResponseSigner:
    return request.app.state.signer


def get_policy(request: Request) -> TrialPolicy:
    return request.app.state.trial_policy


def get_clock(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


def signed_response(signer: ResponseSigner, status_code: int, success: bool, message: str,
                    machine_id: Optional[str] = None, is_trial: bool = False,
                    expires_at: Optional[datetime] = None) -> JSONResponse:
    payload = build_payload(success, message, machine_id, is_trial, isoformat_utc(expires_at))
    body = VerifyResponse(
        success=success,
        message=message,
        isTrial=is_trial,
        expiryDate=payload["expiryDate"],
        signature=signer.sign(payload),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ---------------------------
# Endpoints
@router.options("/verify", include_in_schema=False)
def verify_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/verify", response_model=VerifyResponse)
def verify(
    req: VerifyRequest,
    store: LicenseStore = Depends(get_store),
    signer: ResponseSigner = Depends(get_signer),
    policy: TrialPolicy = Depends(get_policy),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """
    Expected JSON body:
    {
      "licenseCode": "...",
      "machineId": "..."
    }
    """
    try:
        outcome = verify_license(store, req.licenseCode, req.machineId, policy=policy, now=clock())
    except StoreError as exc:
        logger.exception("Store failure while verifying license: %s", exc.__cause__ or exc)
        return signed_response(signer, exc.status_code, False, exc.message, req.machineId)
    except ActivationError as exc:
        logger.info("License rejected: %s (machine=%s)", type(exc).__name__, req.machineId)
        return signed_response(
            signer, exc.status_code, False, exc.message, req.machineId,
            is_trial=exc.is_trial, expires_at=exc.expires_at,
        )
    except Exception:
        # clients only trust signed bodies
        logger.exception("Unexpected failure while verifying license")
        err = StoreError()
        return signed_response(signer, err.status_code, False, err.message, req.machineId)

    logger.info("License %s (machine=%s, trial=%s)", outcome.kind, req.machineId, outcome.is_trial)
    return signed_response(
        signer, outcome.status_code, outcome.success, outcome.message, req.machineId,
        is_trial=outcome.is_trial, expires_at=outcome.expires_at,
    )
