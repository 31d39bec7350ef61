from datetime import datetime
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field


class OperationType(str, Enum):
    CREATE_VOUCHER_BATCH = "CREATE_VOUCHER_BATCH"
    MODIFY_CRITICAL_SETTINGS = "MODIFY_CRITICAL_SETTINGS"
    DELETE_MULTIPLE_VOUCHERS = "DELETE_MULTIPLE_VOUCHERS"
    CHANGE_MERCHANT_STATUS = "CHANGE_MERCHANT_STATUS"
    BULK_TRANSFER = "BULK_TRANSFER"
    EMERGENCY_FREEZE = "EMERGENCY_FREEZE"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    SECURITY_UPDATE = "SECURITY_UPDATE"


class OperationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}

OPERATION_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.PENDING: {OperationStatus.APPROVED, OperationStatus.REJECTED, OperationStatus.EXPIRED},
    OperationStatus.APPROVED: {OperationStatus.EXECUTED, OperationStatus.FAILED, OperationStatus.EXPIRED},
    OperationStatus.REJECTED: set(),
    OperationStatus.EXECUTED: set(),
    OperationStatus.FAILED: set(),
    OperationStatus.EXPIRED: set(),
}

EXPIRABLE_OPERATION_STATUSES = {
    s for s, targets in OPERATION_TRANSITIONS.items() if OperationStatus.EXPIRED in targets
}


class Signature(BaseModel):
    signed_by: str
    signed_at: datetime
    comment: str | None = None


class ExecutionResult(BaseModel):
    success: bool
    reference: str | None = None
    outcome: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    retryable: bool | None = None


class Operation(BaseModel):
    operation_id: str
    operation_type: OperationType
    operation_data: dict[str, Any]
    initiated_by: str
    required_signatures: int
    signatures: list[Signature] = Field(default_factory=list)
    status: OperationStatus = OperationStatus.PENDING
    priority: Priority = Priority.MEDIUM
    notes: str | None = None
    created_at: datetime
    expires_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    execution_claimed_by: str | None = None
    executed_at: datetime | None = None
    executed_by: str | None = None
    execution_result: ExecutionResult | None = None
    version: int = 1

    def has_signed(self, user_id: str) -> bool:
        return any(s.signed_by == user_id for s in self.signatures)

    def can_transition(self, target: OperationStatus) -> bool:
        return target in OPERATION_TRANSITIONS[self.status]

    def is_past_deadline(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class CreateOperationRequest(BaseModel):
    operation_type: str
    operation_data: dict[str, Any]
    required_signatures: int | None = None
    expires_at: datetime | None = None
    priority: Priority = Priority.MEDIUM
    notes: str | None = None


class SignRequest(BaseModel):
    comment: str | None = None


class RejectRequest(BaseModel):
    reason: str = ""
