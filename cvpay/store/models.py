from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from cvpay.core.state_machine import IDLE, CONFIRMED, TERMINAL_STATES
from cvpay.errors import PaymentError

# Remote status vocabulary after normalization
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def freeze(value: Any) -> Any:
    """Deep read-only copy of a JSON-like snapshot (dicts -> mappingproxy, lists -> tuples)."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(), for JSON request bodies."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass
class StatusResult:
    status: str = STATUS_PENDING  # pending/completed/failed
    artifactUrl: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)


@dataclass
class PendingRecord:
    """Everything needed to resume a payment after a reload; no form data."""
    contextId: str
    reference: str
    transactionId: Optional[str] = None
    phoneNumber: str = ""
    mode: str = ""  # redirect/direct/embedded
    savedAtMs: int = 0


@dataclass
class PaymentSession:
    # Core identifiers
    reference: str
    contextId: str = ""
    transactionId: Optional[str] = None

    # State
    state: str = IDLE
    mode: str = ""  # redirect/direct/embedded

    # Frozen at Initiating; None when reconstructed from a PendingRecord
    payload: Optional[Mapping[str, Any]] = None
    phoneNumber: str = ""

    # Only ever set together with state == Confirmed
    artifactUrl: Optional[str] = None
    paymentUrl: Optional[str] = None

    # Wall-clock bounds (epoch ms)
    createdAtMs: int = 0
    deadlineMs: Optional[int] = None

    # Cancellation token: responses carrying an older generation are discarded
    generation: int = 0

    # Ops
    error: Optional[PaymentError] = None
    deliveryStatus: str = "none"  # none/started/saved/failed
    savedPath: Optional[str] = None

    # Extra fields the engine may attach (e.g. widget config); not persisted
    extras: dict = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def full_name(self) -> str:
        if not self.payload:
            return ""
        info = self.payload.get("personalInfo") or self.payload
        return str(info.get("fullName") or "").strip()

    def raise_for_state(self) -> None:
        """Raise the terminal error carried by a Failed/TimedOut session, if any."""
        if self.error is not None and self.state != CONFIRMED:
            raise self.error

    def to_pending_record(self, saved_at_ms: int) -> PendingRecord:
        return PendingRecord(
            contextId=self.contextId,
            reference=self.reference,
            transactionId=self.transactionId,
            phoneNumber=self.phoneNumber,
            mode=self.mode,
            savedAtMs=saved_at_ms,
        )

    def snapshot(self) -> dict:
        return {
            "reference": self.reference,
            "transactionId": self.transactionId,
            "state": self.state,
            "mode": self.mode,
            "artifactUrl": self.artifactUrl,
            "paymentUrl": self.paymentUrl,
            "createdAtMs": self.createdAtMs,
            "deadlineMs": self.deadlineMs,
            "error": str(self.error) if self.error is not None else None,
            "deliveryStatus": self.deliveryStatus,
        }
