"""
Extraction of the inbound message from a WhatsApp Cloud API webhook event.

The provider nests the message several levels deep and omits whole branches
for status callbacks, so every step of the traversal is optional.
"""

import logging
from typing import Any, Optional

from relay.schemas import IncomingMessage

logger = logging.getLogger(__name__)


def _first(node: Any) -> Optional[dict]:
    """Return the first element of a list if it is a dict, else None."""
    if isinstance(node, list) and node and isinstance(node[0], dict):
        return node[0]
    return None


def _get(node: Any, key: str) -> Any:
    if isinstance(node, dict):
        return node.get(key)
    return None


def _change_value(payload: Any) -> Optional[dict]:
    """Navigate to ``entry[0].changes[0].value``."""
    entry = _first(_get(payload, "entry"))
    change = _first(_get(entry, "changes"))
    value = _get(change, "value")
    return value if isinstance(value, dict) else None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def extract_message(payload: Any) -> Optional[IncomingMessage]:
    """
    Pull the first inbound message out of a webhook event.

    Args:
        payload: Decoded JSON body of the webhook POST (any shape)

    Returns:
        IncomingMessage, or None when the event carries no message
        (e.g. a delivery status callback) or the message lacks id/from/type.
    """
    message = _first(_get(_change_value(payload), "messages"))
    if message is None:
        return None

    message_id = _as_str(message.get("id"))
    from_number = _as_str(message.get("from"))
    message_type = _as_str(message.get("type"))

    if not (message_id and from_number and message_type):
        logger.debug("Message entry missing id/from/type, treating as absent")
        return None

    text = _as_str(_get(message.get("text"), "body"))

    return IncomingMessage(
        message_id=message_id,
        from_number=from_number,
        type=message_type,
        text=text,
        timestamp=_as_str(message.get("timestamp")),
    )


def extract_statuses(payload: Any) -> list:
    """Return the delivery status entries of a status callback, if any."""
    statuses = _get(_change_value(payload), "statuses")
    if not isinstance(statuses, list):
        return []
    return [status for status in statuses if isinstance(status, dict)]
