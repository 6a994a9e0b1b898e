"""
Inbound provider notifications.

Both endpoints always answer 200 so the provider does not redeliver: the
work is deferred to a process-history task on the account's queue.
"""
import base64
import binascii
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from src.config import get_settings
from src.database.connection import get_db_session
from src.queue.queue import PROCESS_HISTORY, account_queue_name, publish
from src.webhook.history import Notification, resolve_account

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["webhooks"])


def get_db():
    db = get_db_session()
    try:
        yield db
    finally:
        db.close()


def decode_pubsub(envelope: Dict[str, Any]) -> Optional[Notification]:
    """Pub/Sub push envelope -> {emailAddress, historyId}"""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("message"), dict):
        return None
    data = envelope["message"].get("data")
    if not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data))
    except (binascii.Error, TypeError, ValueError):
        return None
    if not isinstance(decoded, dict):
        return None
    if not decoded.get("emailAddress") or not decoded.get("historyId"):
        return None
    return Notification(email_address=decoded["emailAddress"], history_id=str(decoded["historyId"]))


def enqueue_history(db: Session, notification: Notification) -> bool:
    account = resolve_account(db, notification)
    if account is None:
        logger.warning("Notification for unknown account", notification=notification.to_body())
        return False
    publish(db, account_queue_name(account.id), PROCESS_HISTORY, notification.to_body(),
            parallelism=get_settings().account_queue_parallelism)
    db.commit()
    return True


@router.post("/google/webhook")
async def google_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    try:
        envelope = await request.json()
    except ValueError:
        logger.warning("Google webhook with invalid JSON")
        return {"ok": False}

    notification = decode_pubsub(envelope)
    if notification is None:
        logger.warning("Google webhook with invalid payload")
        return {"ok": False}

    logger.info("Google notification", email=notification.email_address, history_id=notification.history_id)
    return {"ok": enqueue_history(db, notification)}


@router.post("/outlook/webhook")
async def outlook_webhook(request: Request, validation_token: Optional[str] = Query(default=None, alias="validationToken"),
                          db: Session = Depends(get_db)):
    # Subscription handshake: echo the token as plain text
    if validation_token:
        return PlainTextResponse(validation_token)

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Outlook webhook with invalid JSON")
        return {"ok": False}

    changes = payload.get("value") if isinstance(payload, dict) else None
    if not isinstance(changes, list):
        logger.warning("Outlook webhook with invalid payload")
        return {"ok": False}

    client_state = get_settings().outlook_client_state
    enqueued = 0
    seen = set()
    for change in changes:
        if not isinstance(change, dict):
            continue
        subscription_id = change.get("subscriptionId")
        if not subscription_id or subscription_id in seen:
            continue
        if client_state and change.get("clientState") != client_state:
            logger.warning("Outlook notification with wrong client state", subscription_id=subscription_id)
            continue
        seen.add(subscription_id)
        if enqueue_history(db, Notification(subscription_id=subscription_id)):
            enqueued += 1

    logger.info("Outlook notifications", received=len(changes), enqueued=enqueued)
    return {"ok": True}


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}
