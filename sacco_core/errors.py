"""
Error Types and Operation Results

Every failure the ledger can report is a typed SaccoError with a
machine-readable code and an ErrorKind. Managers raise them; the service
boundary converts them into OperationResult values so callers never have to
parse messages.

    SaccoError (base)
    |
    +-- ValidationError            kind=validation
    +-- InvalidTransition          kind=invalid_transition
    +-- DuplicateError             kind=duplicate
    |   +-- DuplicatePeriod
    |   +-- DuplicateTarget
    |   +-- DuplicateDecision
    |   +-- DuplicateLoanNumber
    |   +-- DuplicateYearShareout
    +-- NotFoundError              kind=not_found
    +-- PreconditionFailed         kind=precondition_failed
    |   +-- PeriodNotActive
    |   +-- PeriodNotCompleted
    |   +-- CategoryRequired
    |   +-- DecisionLocked
    |   +-- AlreadySharedOut
    |   +-- ActiveLoanExists
    +-- Forbidden                  kind=forbidden
    +-- ConcurrencyError           kind=conflict

Storage failures are not SaccoErrors; they propagate to the caller after the
surrounding transaction has rolled back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar


class ErrorKind(Enum):
    """Discriminator for operation failures"""
    VALIDATION = "validation"
    INVALID_TRANSITION = "invalid_transition"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"


class SaccoError(Exception):
    """Base class for all ledger errors"""

    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "SACCO_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class ValidationError(SaccoError):
    """Malformed or out-of-range input"""
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"


class InvalidTransition(SaccoError):
    """Entity is not in the state the operation requires"""
    kind = ErrorKind.INVALID_TRANSITION
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: str, required: str, action: str):
        super().__init__(
            f"Cannot {action} {entity} {entity_id}: status is {current}, requires {required}",
            entity=entity, entity_id=entity_id, current=current, required=required, action=action
        )
        self.current = current
        self.required = required


class DuplicateError(SaccoError):
    """A uniqueness invariant would be violated"""
    kind = ErrorKind.DUPLICATE
    code = "DUPLICATE"


class DuplicatePeriod(DuplicateError):
    code = "DUPLICATE_PERIOD"


class DuplicateTarget(DuplicateError):
    code = "DUPLICATE_TARGET"


class DuplicateDecision(DuplicateError):
    code = "DUPLICATE_DECISION"


class DuplicateLoanNumber(DuplicateError):
    code = "DUPLICATE_LOAN_NUMBER"


class DuplicateYearShareout(DuplicateError):
    code = "DUPLICATE_YEAR_SHAREOUT"


class NotFoundError(SaccoError):
    """Referenced entity does not exist"""
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class PreconditionFailed(SaccoError):
    """A cross-entity precondition is not met"""
    kind = ErrorKind.PRECONDITION_FAILED
    code = "PRECONDITION_FAILED"


class PeriodNotActive(PreconditionFailed):
    code = "PERIOD_NOT_ACTIVE"


class PeriodNotCompleted(PreconditionFailed):
    code = "PERIOD_NOT_COMPLETED"


class CategoryRequired(PreconditionFailed):
    code = "CATEGORY_REQUIRED"


class DecisionLocked(PreconditionFailed):
    code = "DECISION_LOCKED"


class AlreadySharedOut(PreconditionFailed):
    code = "ALREADY_SHARED_OUT"


class ActiveLoanExists(PreconditionFailed):
    code = "ACTIVE_LOAN_EXISTS"


class Forbidden(SaccoError):
    """Caller lacks the capability for this operation"""
    kind = ErrorKind.FORBIDDEN
    code = "FORBIDDEN"


class ConcurrencyError(SaccoError):
    """A concurrent update won the race; the caller may retry"""
    kind = ErrorKind.CONFLICT
    code = "OPTIMISTIC_LOCK_CONFLICT"


T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Success value or typed failure returned across the service boundary"""
    ok: bool
    value: Optional[T] = None
    error: Optional[SaccoError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T = None, **metadata: Any) -> 'OperationResult[T]':
        return cls(ok=True, value=value, metadata=metadata)

    @classmethod
    def failure(cls, error: SaccoError) -> 'OperationResult[T]':
        return cls(ok=False, error=error)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def unwrap(self) -> T:
        """Return the value or re-raise the failure"""
        if not self.ok:
            raise self.error
        return self.value
