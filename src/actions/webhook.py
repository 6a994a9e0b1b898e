"""
Outbound CALL_WEBHOOK requests
"""
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


def build_payload(message_id: str, thread_id: str, rule_id: Optional[int], action_type: str,
                  fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'messageId': message_id,
        'threadId': thread_id,
        'ruleId': rule_id,
        'actionType': action_type,
        'fields': fields,
    }


def call_webhook(url: str, payload: Dict[str, Any], timeout: float = 10.0,
                 client: Optional[httpx.Client] = None) -> bool:
    """POST the JSON payload; failures are logged and reported as False"""
    try:
        if client is not None:
            response = client.post(url, json=payload, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as session:
                response = session.post(url, json=payload)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Webhook call to {url} failed: {e}")
        return False
    logger.debug(f"Webhook call to {url} returned {response.status_code}")
    return True
