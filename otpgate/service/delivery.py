from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single email or SMS send; falsy when not delivered."""

    sent: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.sent

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(sent=True)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(sent=False, error=error)
