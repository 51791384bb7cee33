import re
from typing import Optional

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone(phone: Optional[str]) -> str:
    """Strip whitespace and make sure the number carries a leading '+'."""
    if not phone:
        return ""
    normalized = re.sub(r"\s+", "", phone)
    if normalized and not normalized.startswith("+"):
        normalized = f"+{normalized}"
    return normalized


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and E164_PATTERN.match(phone) is not None


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "<missing>"
    if len(phone) <= 8:
        return "*" * len(phone)
    return f"{phone[:4]}{'*' * (len(phone) - 8)}{phone[-4:]}"
