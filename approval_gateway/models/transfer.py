from datetime import datetime
from enum import Enum
from pydantic import BaseModel


class TransferType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class TransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


# pending -> completed is the auto-complete path for transfers that need no approval
TRANSFER_TRANSITIONS: dict[TransferStatus, set[TransferStatus]] = {
    TransferStatus.PENDING: {
        TransferStatus.APPROVED,
        TransferStatus.REJECTED,
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
    },
    TransferStatus.APPROVED: {TransferStatus.COMPLETED, TransferStatus.FAILED},
    TransferStatus.REJECTED: set(),
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
}


class Transfer(BaseModel):
    transfer_id: str
    voucher_id: str
    from_address: str
    to_address: str
    transfer_type: TransferType
    amount: float
    requires_approval: bool
    status: TransferStatus = TransferStatus.PENDING
    initiated_by: str
    reason: str | None = None
    created_at: datetime
    expires_at: datetime | None = None
    approved_by: str | None = None
    approval_comment: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None
    transaction_reference: str | None = None
    failure_reason: str | None = None
    version: int = 1

    def can_transition(self, target: TransferStatus) -> bool:
        return target in TRANSFER_TRANSITIONS[self.status]


class CreateTransferRequest(BaseModel):
    voucher_id: str
    to_address: str
    transfer_type: TransferType
    amount: float | None = None
    reason: str | None = None


class ApproveTransferRequest(BaseModel):
    comment: str | None = None


class RejectTransferRequest(BaseModel):
    reason: str = ""
