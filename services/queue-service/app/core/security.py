"""
Security event log for the public USSD channel.

Rejected and suspicious requests (rate limited, malformed phone numbers,
out-of-range menu selections, malformed ticket numbers) are written as JSON
lines to a dedicated ``security`` logger so they can be shipped to anomaly
monitoring separately from the application log. Phone numbers are always masked.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.config import settings
from app.core.phone import mask_phone

security_logger = logging.getLogger("security")

if settings.SECURITY_LOG_FILE and not security_logger.handlers:
    file_handler = logging.FileHandler(settings.SECURITY_LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    security_logger.addHandler(file_handler)
    security_logger.propagate = False


def log_security_event(
    event: str,
    phone: Optional[str],
    session_id: Optional[str] = None,
    **details: Any,
) -> None:
    """
    Record a security-relevant event.

    Args:
        event: Short event name (e.g. "ussd_rate_limited").
        phone: Raw phone number; only its masked form is written.
        session_id: Gateway session id, if known.
        details: Extra context. Must not contain unmasked phone numbers.
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "phone": mask_phone(phone),
    }
    if session_id:
        entry["session_id"] = session_id
    if details:
        entry["details"] = details

    security_logger.warning(json.dumps(entry, ensure_ascii=False, default=str))
