from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    VALIDATION = "validation"
    SCHEMA_DRIFT = "schema_drift"
    UPSTREAM = "upstream"
    NOT_FOUND = "not_found"


@dataclass
class StepResult:
    """
    Outcome of a single resolver or reconciler step.

    A skipped step (e.g. a duplicate purchase order line) is a success with
    skipped=True, never an error.
    """

    ok: bool
    value: Any = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    skipped: bool = False
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def success(cls, value=None, **details):
        return cls(ok=True, value=value, details=details)

    @classmethod
    def skip(cls, value=None, reason=None, **details):
        return cls(ok=True, value=value, skipped=True, reason=reason, details=details)

    @classmethod
    def failure(cls, error, kind=ErrorKind.UPSTREAM, **details):
        return cls(ok=False, error=str(error), kind=kind, details=details)

    def to_dict(self) -> dict:
        data = {"success": self.ok}
        if self.value is not None:
            data["value"] = self.value
        if self.skipped:
            data["skipped"] = True
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
            data["errorKind"] = self.kind.value if self.kind else None
        if self.details:
            data["errorDetails" if not self.ok else "details"] = self.details
        return data
