"""
Signature check for inbound FSM webhooks.

The FSM signs each delivery with ``X-FSM-Signature``: the hex HMAC-SHA256
of the raw request body keyed with the app's webhook secret.

Usage:
    @router.post("/fsm")
    async def fsm_webhook(
        ...,
        _: None = Depends(verify_fsm_webhook_signature),
    ):
        ...
"""
import hashlib
import hmac

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def is_valid_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(signature.strip().lower(), compute_signature(body, secret))


async def verify_fsm_webhook_signature(
    request: Request,
    x_fsm_signature: str | None = Header(None),
) -> None:
    """
    Verify ``X-FSM-Signature`` on webhook requests.

    - ``FSM_WEBHOOK_SECRET`` unset: skipped (a startup warning is already logged).
    - Header missing or not matching: 403 Forbidden.
    """
    secret = settings.FSM_WEBHOOK_SECRET
    if not secret:
        return

    if not x_fsm_signature:
        logger.warning("FSM webhook without X-FSM-Signature header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook signature",
        )

    body = await request.body()
    if not is_valid_signature(body, x_fsm_signature, secret):
        logger.warning("FSM webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook signature",
        )
