"""
Voucher/merchant directory.

The directory is the source of truth for who issued a voucher (used by the
transfer ownership check) and receives the off-ledger side of executed
operations: merchant status changes, voucher freezes/cancellations and
ownership moves.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional
from ...models.transfer import Transfer, TransferType
from ...models.voucher import TRANSFERABLE_VOUCHER_STATUSES, Voucher, VoucherStatus, Merchant, MerchantStatus


class VoucherDirectoryBase(ABC):

    @abstractmethod
    def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        pass

    @abstractmethod
    def add_voucher(self, voucher: Voucher) -> None:
        """Insert or replace a voucher record (seeding, sync from the ledger listener)"""
        pass

    @abstractmethod
    def voucher_ids_for_merchant(self, merchant_id: str) -> list[str]:
        pass

    @abstractmethod
    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        pass

    @abstractmethod
    def add_merchant(self, merchant: Merchant) -> None:
        pass

    @abstractmethod
    def set_merchant_status(self, merchant_id: str, status: MerchantStatus) -> bool:
        """
        Returns:
            True if the merchant exists and was updated
        """
        pass

    @abstractmethod
    def set_voucher_status(self, voucher_ids: list[str], status: VoucherStatus) -> int:
        """
        Returns:
            Number of vouchers updated (unknown ids are skipped)
        """
        pass

    @abstractmethod
    def apply_transfer(self, transfer: Transfer) -> bool:
        """
        Reserve a voucher for a transfer about to be submitted to the ledger:
        move ownership (full) or balance (partial).

        Conditional on the voucher still matching what the transfer was
        validated against: transferable status, same owner for full
        transfers, enough remaining balance for partial ones.

        Returns:
            True if applied, False if the voucher no longer qualifies
        """
        pass

    @abstractmethod
    def revert_transfer(self, transfer: Transfer) -> bool:
        """
        Undo apply_transfer after the ledger refused the transfer.

        Returns:
            True if reverted, False if the voucher has moved on since
            (e.g. the recipient already passed it on)
        """
        pass


class InMemoryVoucherDirectory(VoucherDirectoryBase):
    def __init__(self):
        self._vouchers: Dict[str, Voucher] = {}
        self._merchants: Dict[str, Merchant] = {}
        self._lock = threading.Lock()

    def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        with self._lock:
            voucher = self._vouchers.get(voucher_id)
            return voucher.model_copy(deep=True) if voucher else None

    def add_voucher(self, voucher: Voucher) -> None:
        with self._lock:
            self._vouchers[voucher.voucher_id] = voucher.model_copy(deep=True)

    def voucher_ids_for_merchant(self, merchant_id: str) -> list[str]:
        with self._lock:
            return [v.voucher_id for v in self._vouchers.values() if v.merchant_id == merchant_id]

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            return merchant.model_copy() if merchant else None

    def add_merchant(self, merchant: Merchant) -> None:
        with self._lock:
            self._merchants[merchant.merchant_id] = merchant.model_copy()

    def set_merchant_status(self, merchant_id: str, status: MerchantStatus) -> bool:
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            if merchant is None:
                return False
            self._merchants[merchant_id] = merchant.model_copy(update={"status": status})
            return True

    def set_voucher_status(self, voucher_ids: list[str], status: VoucherStatus) -> int:
        updated = 0
        with self._lock:
            for voucher_id in voucher_ids:
                voucher = self._vouchers.get(voucher_id)
                if voucher is None:
                    continue
                self._vouchers[voucher_id] = voucher.model_copy(update={"status": status})
                updated += 1
        return updated

    def apply_transfer(self, transfer: Transfer) -> bool:
        with self._lock:
            voucher = self._vouchers.get(transfer.voucher_id)
            if voucher is None or voucher.status not in TRANSFERABLE_VOUCHER_STATUSES:
                return False

            if transfer.transfer_type == TransferType.FULL:
                if voucher.owner_address != transfer.from_address:
                    return False
                changes = {"owner_address": transfer.to_address}
            else:
                if voucher.remaining_amount < transfer.amount:
                    return False
                remaining = voucher.remaining_amount - transfer.amount
                changes = {
                    "remaining_amount": remaining,
                    "status": VoucherStatus.FULLY_REDEEMED if remaining == 0 else VoucherStatus.PARTIALLY_REDEEMED,
                }

            changes["transfer_count"] = voucher.transfer_count + 1
            self._vouchers[voucher.voucher_id] = voucher.model_copy(update=changes)
            return True

    def revert_transfer(self, transfer: Transfer) -> bool:
        with self._lock:
            voucher = self._vouchers.get(transfer.voucher_id)
            if voucher is None:
                return False

            if transfer.transfer_type == TransferType.FULL:
                if voucher.owner_address != transfer.to_address:
                    return False
                changes = {"owner_address": transfer.from_address}
            else:
                remaining = voucher.remaining_amount + transfer.amount
                changes = {"remaining_amount": remaining}
                # A freeze or cancellation since the reservation stays in place
                if voucher.status in (VoucherStatus.PARTIALLY_REDEEMED, VoucherStatus.FULLY_REDEEMED):
                    changes["status"] = (
                        VoucherStatus.ACTIVE if remaining >= voucher.face_value else VoucherStatus.PARTIALLY_REDEEMED
                    )

            changes["transfer_count"] = max(voucher.transfer_count - 1, 0)
            self._vouchers[voucher.voucher_id] = voucher.model_copy(update=changes)
            return True
