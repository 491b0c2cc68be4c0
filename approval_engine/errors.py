"""
Typed error taxonomy for the approval engine.

Every failure carries a machine-readable ``code`` (the ErrorKind tag) and a
``category`` that the hosting request layer maps to an HTTP status.
Callers branch on ``error.code`` rather than on message text.

Body format matches the rest of the platform:
    {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    BAD_REQUEST = "BAD_REQUEST"
    CONFLICT = "CONFLICT"

    @property
    def http_status(self) -> int:
        return {
            ErrorCategory.NOT_FOUND: 404,
            ErrorCategory.FORBIDDEN: 403,
            ErrorCategory.BAD_REQUEST: 400,
            ErrorCategory.CONFLICT: 409,
        }[self]


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    FORBIDDEN = "FORBIDDEN"
    BAD_REQUEST = "BAD_REQUEST"
    INVALID_CHAIN_STRUCTURE = "INVALID_CHAIN_STRUCTURE"
    NO_DEFAULT_CHAIN = "NO_DEFAULT_CHAIN"
    NO_LEVELS_DEFINED = "NO_LEVELS_DEFINED"
    NO_APPLICABLE_LEVEL = "NO_APPLICABLE_LEVEL"
    NO_ELIGIBLE_APPROVERS = "NO_ELIGIBLE_APPROVERS"
    DUPLICATE_APPROVAL_REQUEST = "DUPLICATE_APPROVAL_REQUEST"
    STEP_ALREADY_PROCESSED = "STEP_ALREADY_PROCESSED"
    REQUEST_ALREADY_FINALIZED = "REQUEST_ALREADY_FINALIZED"
    DELEGATION_NOT_ALLOWED = "DELEGATION_NOT_ALLOWED"
    INVALID_DELEGATION_TARGET = "INVALID_DELEGATION_TARGET"
    CHAIN_IN_USE = "CHAIN_IN_USE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    DEFAULT_CHAIN_CONFLICT = "DEFAULT_CHAIN_CONFLICT"


class ApprovalError(Exception):
    """Base class. Subclasses pin ``code`` and ``category``."""

    code: ErrorKind = ErrorKind.BAD_REQUEST
    category: ErrorCategory = ErrorCategory.BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return self.category.http_status

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


# --- NotFound ---


class NotFoundError(ApprovalError):
    code = ErrorKind.NOT_FOUND
    category = ErrorCategory.NOT_FOUND


# --- Forbidden ---


class ForbiddenError(ApprovalError):
    code = ErrorKind.FORBIDDEN
    category = ErrorCategory.FORBIDDEN


class TenantMismatchError(ForbiddenError):
    code = ErrorKind.TENANT_MISMATCH

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "Access denied",
            {"resource": resource, "resource_id": resource_id},
        )


class DelegationNotAllowedError(ForbiddenError):
    code = ErrorKind.DELEGATION_NOT_ALLOWED

    def __init__(self, level: int):
        super().__init__(
            "Delegation is not allowed at this level", {"level": level}
        )


# --- BadRequest ---


class BadRequestError(ApprovalError):
    code = ErrorKind.BAD_REQUEST
    category = ErrorCategory.BAD_REQUEST


class InvalidChainStructureError(BadRequestError):
    code = ErrorKind.INVALID_CHAIN_STRUCTURE


class NoDefaultChainError(BadRequestError):
    code = ErrorKind.NO_DEFAULT_CHAIN

    def __init__(self, entity_type: str):
        super().__init__(
            f"No default approval chain found for {entity_type}",
            {"entity_type": entity_type},
        )


class NoLevelsDefinedError(BadRequestError):
    code = ErrorKind.NO_LEVELS_DEFINED

    def __init__(self, chain_id: str):
        super().__init__(
            "Approval chain has no levels defined", {"chain_id": chain_id}
        )


class NoApplicableLevelError(BadRequestError):
    code = ErrorKind.NO_APPLICABLE_LEVEL

    def __init__(self, chain_id: str, entity_value: Any):
        super().__init__(
            "No approval level applies to this entity value",
            {"chain_id": chain_id, "entity_value": str(entity_value)},
        )


class NoEligibleApproversError(BadRequestError):
    code = ErrorKind.NO_ELIGIBLE_APPROVERS

    def __init__(self, level: int, tenant_id: str):
        super().__init__(
            f"No eligible approvers found for level {level}",
            {"level": level, "tenant_id": tenant_id},
        )


class DuplicateApprovalRequestError(BadRequestError):
    code = ErrorKind.DUPLICATE_APPROVAL_REQUEST

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            "An approval request is already pending for this entity",
            {"entity_type": entity_type, "entity_id": entity_id},
        )


class StepAlreadyProcessedError(BadRequestError):
    code = ErrorKind.STEP_ALREADY_PROCESSED

    def __init__(self, step_id: str, status: str):
        super().__init__(
            "This step has already been processed",
            {"step_id": step_id, "status": status},
        )


class RequestAlreadyFinalizedError(BadRequestError):
    code = ErrorKind.REQUEST_ALREADY_FINALIZED

    def __init__(self, request_id: str, status: str):
        super().__init__(
            "This approval request has already been finalized",
            {"request_id": request_id, "status": status},
        )


class InvalidDelegationTargetError(BadRequestError):
    code = ErrorKind.INVALID_DELEGATION_TARGET


class ChainInUseError(BadRequestError):
    code = ErrorKind.CHAIN_IN_USE

    def __init__(self, chain_id: str, active_requests: int):
        super().__init__(
            "Cannot delete chain with active approval requests",
            {"chain_id": chain_id, "active_requests": active_requests},
        )


# --- Conflict ---


class ConcurrentModificationError(ApprovalError):
    """Raised by a store when the persisted request version moved under us."""

    code = ErrorKind.CONCURRENT_MODIFICATION
    category = ErrorCategory.CONFLICT

    def __init__(self, request_id: str, expected_version: int):
        super().__init__(
            "Approval request was modified concurrently",
            {"request_id": request_id, "expected_version": expected_version},
        )


class DefaultChainConflictError(ApprovalError):
    """Another default chain for the same tenant and entity type committed first."""

    code = ErrorKind.DEFAULT_CHAIN_CONFLICT
    category = ErrorCategory.CONFLICT

    def __init__(self, tenant_id: str, entity_type: str):
        super().__init__(
            f"A default approval chain for {entity_type} was created concurrently",
            {"tenant_id": tenant_id, "entity_type": entity_type},
        )
