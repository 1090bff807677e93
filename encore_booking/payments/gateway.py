"""Payment collaborator contract: authorize, capture (partial), void."""

from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class CaptureMode(str, Enum):
    """When authorized funds are charged."""
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class AuthorizationHandle(BaseModel):
    """Opaque hold on a client's funds."""

    model_config = ConfigDict(frozen=True)

    id: str
    amount_cents: int = Field(ge=0)
    currency: str
    capture_mode: CaptureMode
    provider: str = ""
    client_secret: Optional[str] = None


class CaptureReceipt(BaseModel):
    """Proof that ``amount_cents`` was charged against an authorization."""

    model_config = ConfigDict(frozen=True)

    authorization_id: str
    amount_cents: int = Field(ge=0)
    provider: str = ""


class PaymentError(Exception):
    """Any failure reported by (or while reaching) a payment provider."""

    def __init__(self, reason: str, provider: str = "") -> None:
        self.reason = reason
        self.provider = provider
        super().__init__(f"[{provider or 'payment'}] {reason}")


class PaymentGateway(Protocol):
    """What the booking core needs from a payment provider."""

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        capture_mode: CaptureMode,
    ) -> AuthorizationHandle:
        ...

    def capture(self, handle: AuthorizationHandle, amount_cents: int) -> CaptureReceipt:
        """Charge up to the authorized amount; never more.

        Capturing an authorization that is already captured returns a receipt
        for the earlier charge instead of failing.
        """
        ...

    def void(self, handle: AuthorizationHandle) -> None:
        """Release an uncaptured hold, or refund an automatically captured one."""
        ...
