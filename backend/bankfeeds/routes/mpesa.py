"""
M-Pesa result callbacks.

These endpoints are called by Safaricom, which cannot present a token we
issued, so they sit outside tenant auth. When CALLBACK_SIGNING_SECRET is
set the result URLs we hand to Daraja carry an HMAC of their path, and
requests without a matching signature are rejected.
"""
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from bankfeeds.config import get_settings
from bankfeeds.database import get_db
from bankfeeds.integrations.mpesa_adapter import callback_signature
from bankfeeds.schemas import CallbackAck
from bankfeeds.services.callback_service import ProviderCallbackService

logger = logging.getLogger(__name__)
router = APIRouter()


def verify_callback_signature(request: Request, signature: Optional[str] = Query(None)) -> None:
    secret = get_settings().callback_signing_secret
    if not secret:
        return
    expected = callback_signature(request.url.path, secret)
    if not signature or not hmac.compare_digest(expected, signature):
        logger.warning(f"Rejected M-Pesa callback with bad signature on {request.url.path}")
        raise HTTPException(status_code=401, detail="Invalid callback signature.")


@router.post("/balance-result", response_model=CallbackAck, dependencies=[Depends(verify_callback_signature)])
def balance_result(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """Result of an AccountBalance command."""
    logger.info("M-Pesa balance callback received")
    try:
        request = ProviderCallbackService(db).resolve_balance_result(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request is None:
        return CallbackAck(ResultDesc="Ignored")
    return CallbackAck(ResultDesc="Balance processed")


@router.post("/status-result", response_model=CallbackAck, dependencies=[Depends(verify_callback_signature)])
def status_result(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """Result of a TransactionStatusQuery command."""
    logger.info("M-Pesa status callback received")
    try:
        request = ProviderCallbackService(db).resolve_status_result(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request is None:
        return CallbackAck(ResultDesc="Ignored")
    return CallbackAck(ResultDesc="Status processed")


@router.post("/timeout", response_model=CallbackAck, dependencies=[Depends(verify_callback_signature)])
def queue_timeout(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """Daraja gave up on a queued command."""
    ProviderCallbackService(db).record_timeout(payload)
    return CallbackAck(ResultDesc="Timeout received")
