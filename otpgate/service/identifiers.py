from __future__ import annotations

import re
from typing import Optional

from otpgate.service.errors import ValidationError
from otpgate.storage.models import IdentifierKind

_PHONE_RE = re.compile(r"^(\+\d{1,3}[- ]?)?\d{9,15}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_IDENTIFIER_LENGTH = 254


def infer_kind(identifier: str) -> IdentifierKind:
    return IdentifierKind.EMAIL if "@" in (identifier or "") else IdentifierKind.PHONE


def validate_identifier(
    identifier: str, kind: Optional[IdentifierKind] = None
) -> tuple[str, IdentifierKind]:
    """Check an identifier against the pattern for its kind.

    Surrounding whitespace is stripped; otherwise the identifier is kept as
    given. Returns the cleaned identifier and its kind.
    """
    if not isinstance(identifier, str):
        raise ValidationError("identifier must be a string")
    cleaned = identifier.strip()
    if not cleaned or len(cleaned) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError("identifier is empty or too long")
    resolved = IdentifierKind(kind) if kind else infer_kind(cleaned)
    pattern = _EMAIL_RE if resolved == IdentifierKind.EMAIL else _PHONE_RE
    if not pattern.match(cleaned):
        raise ValidationError(
            f"invalid {resolved.value} format", detail={"kind": resolved.value}
        )
    return cleaned, resolved
