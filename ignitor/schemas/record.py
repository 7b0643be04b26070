"""
ExecutionRecord schema - persisted outcome of one action.

One record exists per (network, module, action identity). Records are
immutable; every transition produces a new record through one of the
transition helpers, and the journal stores it with compare-and-set on
`version`.

Lifecycle:
    PENDING -> SUBMITTED -> CONFIRMED
                         -> FAILED
    PENDING -> FAILED         (rejected before reaching the chain)
    FAILED / PENDING -> PENDING   (retried by a later run)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ActionStatus(str, Enum):
    """Status of an action's execution."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRecord:
    """
    The journaled state of one action on one network.

    Attributes:
        network: Network identifier
        module: Module name
        identity: Action identity (journal key)
        name: Declared action name (used for drift detection)
        status: PENDING, SUBMITTED, CONFIRMED or FAILED
        tx_ref: Transaction reference once submitted
        result: Deployed address or call return value once confirmed
        resolved_args: Concrete arguments the transaction was built with
        sender: Account the transaction was sent from
        nonce: Sequence number reserved for the transaction
        attempts: Number of submission attempts across all runs
        error: Failure details if status is FAILED
        created_at / updated_at / submitted_at / confirmed_at: Timestamps
        version: Compare-and-set counter, 0 for records not yet stored
        superseded_by: Identity that replaced this record under a drift override
        history: Prior outcomes of this identity replaced by a drift override
    """
    network: str
    module: str
    identity: str
    name: str
    status: ActionStatus = ActionStatus.PENDING
    tx_ref: Optional[str] = None
    result: Any = None
    resolved_args: Optional[list[Any]] = None
    sender: Optional[str] = None
    nonce: Optional[int] = None
    attempts: int = 0
    error: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: int = 0
    superseded_by: Optional[str] = None
    history: tuple[dict[str, Any], ...] = ()

    def __post_init__(self):
        if self.status == ActionStatus.SUBMITTED and not self.tx_ref:
            raise ValueError(f"Submitted record '{self.identity}' must have a tx_ref")
        if self.status == ActionStatus.CONFIRMED and self.confirmed_at is None:
            raise ValueError(f"Confirmed record '{self.identity}' must have confirmed_at")

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.network, self.module, self.identity)

    @property
    def is_live(self) -> bool:
        return self.superseded_by is None

    # -- transitions ---------------------------------------------------------

    def pending(self, sender: str, nonce: Optional[int], resolved_args: list[Any]) -> "ExecutionRecord":
        """Reserve a sequence number before submitting."""
        return replace(
            self,
            status=ActionStatus.PENDING,
            sender=sender,
            nonce=nonce,
            resolved_args=resolved_args,
            tx_ref=None,
            error=None,
            attempts=self.attempts + 1,
            updated_at=_utcnow(),
        )

    def submitted(self, tx_ref: str) -> "ExecutionRecord":
        now = _utcnow()
        return replace(
            self,
            status=ActionStatus.SUBMITTED,
            tx_ref=tx_ref,
            submitted_at=now,
            updated_at=now,
        )

    def confirmed(self, result: Any) -> "ExecutionRecord":
        now = _utcnow()
        return replace(
            self,
            status=ActionStatus.CONFIRMED,
            result=result,
            error=None,
            confirmed_at=now,
            updated_at=now,
        )

    def failed(self, error_type: str, message: str) -> "ExecutionRecord":
        return replace(
            self,
            status=ActionStatus.FAILED,
            error={"type": error_type, "message": message},
            updated_at=_utcnow(),
        )

    def superseded(self, by_identity: str) -> "ExecutionRecord":
        return replace(self, superseded_by=by_identity, updated_at=_utcnow())

    def reset_for_rerun(self) -> "ExecutionRecord":
        """Archive the current outcome and return to PENDING (drift override)."""
        archived = {
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "result": self.result,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }
        return replace(
            self,
            status=ActionStatus.PENDING,
            tx_ref=None,
            result=None,
            error=None,
            nonce=None,
            submitted_at=None,
            confirmed_at=None,
            history=self.history + (archived,),
            superseded_by=None,
            updated_at=_utcnow(),
        )

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "network": self.network,
            "module": self.module,
            "identity": self.identity,
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }
        if self.tx_ref is not None:
            result["tx_ref"] = self.tx_ref
        if self.result is not None:
            result["result"] = self.result
        if self.resolved_args is not None:
            result["resolved_args"] = self.resolved_args
        if self.sender is not None:
            result["sender"] = self.sender
        if self.nonce is not None:
            result["nonce"] = self.nonce
        if self.error is not None:
            result["error"] = self.error
        if self.submitted_at is not None:
            result["submitted_at"] = self.submitted_at.isoformat()
        if self.confirmed_at is not None:
            result["confirmed_at"] = self.confirmed_at.isoformat()
        if self.superseded_by is not None:
            result["superseded_by"] = self.superseded_by
        if self.history:
            result["history"] = list(self.history)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        """Deserialize from dictionary."""
        return cls(
            network=data["network"],
            module=data["module"],
            identity=data["identity"],
            name=data["name"],
            status=ActionStatus(data.get("status", "pending")),
            tx_ref=data.get("tx_ref"),
            result=data.get("result"),
            resolved_args=data.get("resolved_args"),
            sender=data.get("sender"),
            nonce=data.get("nonce"),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            submitted_at=_parse_dt(data.get("submitted_at")),
            confirmed_at=_parse_dt(data.get("confirmed_at")),
            version=data.get("version", 0),
            superseded_by=data.get("superseded_by"),
            history=tuple(data.get("history", ())),
        )
