"""
Operator notifications for the cleanup subsystem.
Alarms go to the process log and the cleanup audit table; hook email/Slack in
here when an on-call channel exists.
"""
from __future__ import annotations

from typing import Any, Dict, List
import json
import logging

logger = logging.getLogger(__name__)


async def send_alarm(storage, message: str, errors: List[Dict[str, Any]]) -> bool:
    """Record an ``alarm`` audit entry carrying the recent error list.

    Never raises: a broken alarm path must not take the cleanup loop down.
    """
    details = json.dumps(errors, indent=2, default=str)
    logger.error("🚨 ALARM: %s", message)
    logger.error("Recent errors: %s", details)
    try:
        written = await storage.log_action("alarm", message, error_details=details)
    except Exception:
        logger.exception("Alarm log could not be written")
        return False
    if not written:
        logger.error("Alarm log could not be written")
    return bool(written)
