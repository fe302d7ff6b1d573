"""Structured logging helpers for billing events and webhook security signals."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")
security_logger = logging.getLogger("billing.security")


def log_billing_event(*, message: str, event_id: Optional[str] = None, subscription_id: Optional[int] = None,
                      actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"message": message}
    if event_id:
        payload["event_id"] = event_id
    if subscription_id:
        payload["subscription_id"] = subscription_id
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.info(payload)


def log_security_event(*, message: str, remote_addr: Optional[str] = None,
                       extra: Optional[Dict[str, Any]] = None) -> None:
    """Authentication failures at the webhook; may indicate secret rotation drift."""

    payload: Dict[str, Any] = {"message": message}
    if remote_addr:
        payload["remote_addr"] = remote_addr
    if extra:
        payload.update(extra)
    security_logger.warning(payload)
