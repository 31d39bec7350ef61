from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    PARTIALLY_REDEEMED = "partially_redeemed"
    FULLY_REDEEMED = "fully_redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FROZEN = "frozen"


class MerchantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class Voucher(BaseModel):
    voucher_id: str
    merchant_id: str
    owner_address: str
    status: VoucherStatus = VoucherStatus.ACTIVE
    face_value: float
    remaining_amount: float
    allow_partial_transfer: bool = True
    max_transfers: int | None = None  # None = unlimited
    transfer_count: int = 0
    allowed_recipients: list[str] = Field(default_factory=list)
    require_transfer_approval: bool = False
    expires_at: datetime | None = None


class Merchant(BaseModel):
    merchant_id: str
    name: str
    status: MerchantStatus = MerchantStatus.ACTIVE


# Statuses a voucher may be transferred from
TRANSFERABLE_VOUCHER_STATUSES = {VoucherStatus.ACTIVE, VoucherStatus.PARTIALLY_REDEEMED}
