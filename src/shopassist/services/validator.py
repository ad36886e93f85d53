import re

from ..errors import ValidationError

MAX_MESSAGE_LENGTH = 2000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SUSPICIOUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
)
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_TRANSPORT_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_message(raw_text: object, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Validate and sanitize a user chat message.

    Args:
        raw_text: Text as received from the transport.
        max_length: Maximum number of code points after trimming.

    Returns:
        str: The sanitized message.

    Raises:
        ValidationError: If the message is empty, too long, or looks like an injection attempt.
    """
    if not isinstance(raw_text, str) or not raw_text:
        raise ValidationError("Message must be a non-empty string")

    trimmed = raw_text.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")
    if len(trimmed) > max_length:
        raise ValidationError(f"Message exceeds maximum length of {max_length} characters")

    sanitized = _CONTROL_CHARS.sub("", trimmed)
    for pattern in _SUSPICIOUS_PATTERNS:
        if pattern.search(sanitized):
            raise ValidationError("Message contains potentially unsafe content")
    return sanitized


def validate_session_id(session_id: object) -> str:
    """Accept a UUID or a transport-assigned id made of letters, digits, '_' and '-'."""
    if not isinstance(session_id, str) or not session_id:
        raise ValidationError("Session id must be a non-empty string")
    if _UUID.match(session_id) or _TRANSPORT_ID.match(session_id):
        return session_id
    raise ValidationError("Invalid session id")
