"""
Voucher transfer workflow.

A transfer is a single-approver variant of the operation state machine:

    pending --approve--> approved --process--> completed | failed
    pending --reject / approval window expired--> rejected
    pending --process (no approval required)--> completed | failed

Whether a transfer needs approval is decided once, at creation. Transfers
that need none are processed straight away by the creating call; approve,
reject and expiry only ever act on transfers that need approval, so the two
paths never write the same record.
"""

import secrets
from datetime import timedelta
from typing import Optional
from loguru import logger
from pydantic import BaseModel
from ..core.clock import SystemClock
from ..core.errors import (
    ConcurrencyConflict,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    ValidationError,
)
from ..models.actor import Actor
from ..models.transfer import Transfer, TransferStatus, TransferType
from ..models.voucher import TRANSFERABLE_VOUCHER_STATUSES, Voucher, VoucherStatus
from .events.event_publisher import EventPublisher, WorkflowEvent
from .execution_dispatcher import ExecutionDispatcher
from .permissions import can_decide_transfer, can_view_transfer, ensure
from .storage.store_base import TransferStoreBase
from .storage.vouchers import VoucherDirectoryBase

EXPIRED_REASON = "Transfer approval window expired"


class TransferPolicyConfig(BaseModel):
    """When a transfer needs approval, and for how long it may wait"""
    approval_amount_threshold: float = 500.0
    approval_types: set[str] = {"partial"}
    expiry_hours: int = 72
    max_conflict_retries: int = 10


class TransferWorkflow:
    def __init__(
        self,
        store: TransferStoreBase,
        directory: VoucherDirectoryBase,
        dispatcher: ExecutionDispatcher,
        publisher: Optional[EventPublisher] = None,
        clock=None,
        config: Optional[TransferPolicyConfig] = None,
    ):
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.publisher = publisher or EventPublisher(service_bus_sender=None)
        self.clock = clock or SystemClock()
        self.config = config or TransferPolicyConfig()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_transfer(
        self,
        actor: Actor,
        voucher_id: str,
        to_address: str,
        transfer_type: str | TransferType,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Transfer:
        """
        Validate and record a transfer request from the voucher's owner.

        Transfers that need no approval are processed before returning, so
        the result is already completed (or failed).

        Raises:
            ValidationError: bad type/amount, voucher not transferable
            NotFound: unknown voucher
        """
        try:
            transfer_type = TransferType(transfer_type)
        except ValueError:
            raise ValidationError(f"Invalid transfer type: {transfer_type}")

        if transfer_type == TransferType.PARTIAL and amount is None:
            raise ValidationError("Amount required for partial transfers")
        if amount is not None and amount <= 0:
            raise ValidationError("Transfer amount must be positive")

        voucher = self.directory.get_voucher(voucher_id)
        if voucher is None:
            raise NotFound("Voucher not found")

        now = self.clock.now()
        self._check_transferable(voucher, actor, to_address, transfer_type, amount, now)

        if transfer_type == TransferType.FULL:
            amount = voucher.remaining_amount

        requires_approval = self._requires_approval(voucher, transfer_type, amount)

        transfer = Transfer(
            transfer_id=f"TRX_{secrets.token_hex(8).upper()}",
            voucher_id=voucher_id,
            from_address=voucher.owner_address,
            to_address=to_address,
            transfer_type=transfer_type,
            amount=amount,
            requires_approval=requires_approval,
            initiated_by=actor.id,
            reason=reason,
            created_at=now,
            expires_at=now + timedelta(hours=self.config.expiry_hours) if requires_approval else None,
        )
        self.store.insert(transfer)

        logger.info(
            "Transfer created",
            transfer_id=transfer.transfer_id,
            voucher_id=voucher_id,
            transfer_type=transfer_type.value,
            amount=amount,
            requires_approval=requires_approval,
        )
        self._emit("TransferCreated", transfer, actor.id)

        if not requires_approval:
            return self._process(transfer)
        return transfer

    def approve_transfer(self, transfer_id: str, actor: Actor, comment: Optional[str] = None) -> Transfer:
        """
        Approve a pending transfer and process it.

        Raises:
            NotFound, PermissionDenied, InvalidStateTransition, ConcurrencyConflict
        """
        for _ in range(self.config.max_conflict_retries + 1):
            transfer = self._get(transfer_id)
            ensure(
                can_decide_transfer(actor, self.directory.get_voucher(transfer.voucher_id)),
                "Only admin or issuing merchant can approve transfers",
                actor,
            )
            self._check_decidable(transfer, TransferStatus.APPROVED)

            now = self.clock.now()
            approved = self.store.compare_and_swap(
                transfer.version,
                transfer.model_copy(update={
                    "status": TransferStatus.APPROVED,
                    "approved_by": actor.id,
                    "approval_comment": comment,
                    "approved_at": now,
                }),
            )
            if approved is None:
                continue

            logger.info("Transfer approved", transfer_id=transfer_id, approved_by=actor.id)
            self._emit("TransferApproved", approved, actor.id, comment=comment)
            return self._process(approved)

        raise ConcurrencyConflict(f"Could not approve {transfer_id}: too many concurrent updates")

    def reject_transfer(self, transfer_id: str, actor: Actor, reason: str) -> Transfer:
        """
        Raises:
            NotFound, PermissionDenied, ValidationError (no reason),
            InvalidStateTransition, ConcurrencyConflict
        """
        for _ in range(self.config.max_conflict_retries + 1):
            transfer = self._get(transfer_id)
            ensure(
                can_decide_transfer(actor, self.directory.get_voucher(transfer.voucher_id)),
                "Only admin or issuing merchant can reject transfers",
                actor,
            )
            if not reason or not reason.strip():
                raise ValidationError("Rejection reason required")
            self._check_decidable(transfer, TransferStatus.REJECTED)

            rejected = self.store.compare_and_swap(
                transfer.version,
                transfer.model_copy(update={
                    "status": TransferStatus.REJECTED,
                    "rejected_by": actor.id,
                    "rejection_reason": reason.strip(),
                }),
            )
            if rejected is None:
                continue

            logger.info("Transfer rejected", transfer_id=transfer_id, rejected_by=actor.id, reason=reason)
            self._emit("TransferRejected", rejected, actor.id, reason=reason)
            return rejected

        raise ConcurrencyConflict(f"Could not reject {transfer_id}: too many concurrent updates")

    def expire_stale_transfers(self) -> int:
        """
        Reject pending transfers whose approval window has closed.

        Returns:
            Number of transfers actually rejected
        """
        now = self.clock.now()
        count = 0

        for transfer in self.store.find_expirable(now):
            try:
                if self._expire(transfer):
                    count += 1
            except Exception as e:
                logger.error("Failed to expire transfer", transfer_id=transfer.transfer_id, error=str(e))

        if count > 0:
            logger.info("Expired stale transfers", count=count)

        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transfer(self, transfer_id: str, actor: Actor) -> Transfer:
        transfer = self._get(transfer_id)
        ensure(can_view_transfer(actor, transfer), "Access denied", actor)
        return transfer

    def list_transfers(
        self,
        actor: Actor,
        status: Optional[str] = None,
        voucher_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Transfer]:
        """Admins see every transfer; anyone else only transfers they are a party to"""
        if status is not None and status not in {s.value for s in TransferStatus}:
            raise ValidationError(f"Invalid status filter: {status}")

        if actor.is_admin:
            return self.store.query(status=status, voucher_id=voucher_id, limit=limit)
        if actor.wallet_address is None:
            return []
        return self.store.query(
            status=status,
            voucher_id=voucher_id,
            party_address=actor.wallet_address,
            limit=limit,
        )

    def get_pending_approvals(self, actor: Actor) -> list[Transfer]:
        """Transfers awaiting a decision this actor is allowed to make"""
        if actor.is_admin:
            return self.store.query(status=TransferStatus.PENDING.value, requires_approval=True)
        if actor.merchant_id is None:
            return []
        return self.store.query(
            status=TransferStatus.PENDING.value,
            requires_approval=True,
            voucher_ids=self.directory.voucher_ids_for_merchant(actor.merchant_id),
        )

    def get_transfer_history(self, voucher_id: str) -> list[Transfer]:
        return self.store.history(voucher_id)

    def stats_summary(self) -> dict:
        by_status = self.store.count_by_status()
        return {
            **by_status,
            "total": sum(by_status.values()),
            "by_type": self.store.count_by_type(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, transfer_id: str) -> Transfer:
        transfer = self.store.get(transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        return transfer

    def _check_transferable(
        self,
        voucher: Voucher,
        actor: Actor,
        to_address: str,
        transfer_type: TransferType,
        amount: Optional[float],
        now,
    ) -> None:
        if voucher.status == VoucherStatus.FULLY_REDEEMED:
            raise ValidationError("Voucher has been fully redeemed")
        if voucher.status == VoucherStatus.EXPIRED or (voucher.expires_at and voucher.expires_at < now):
            raise ValidationError("Voucher has expired")
        if voucher.status == VoucherStatus.CANCELLED:
            raise ValidationError("Voucher has been cancelled")
        if voucher.status not in TRANSFERABLE_VOUCHER_STATUSES:
            raise ValidationError(f"Voucher is not transferable (status: {voucher.status.value})")

        if actor.wallet_address is None or voucher.owner_address != actor.wallet_address:
            raise ValidationError("Only the voucher owner can transfer")

        if voucher.max_transfers is not None and voucher.transfer_count >= voucher.max_transfers:
            raise ValidationError("Maximum transfer limit reached")

        if transfer_type == TransferType.PARTIAL:
            if not voucher.allow_partial_transfer:
                raise ValidationError("Partial transfers not allowed for this voucher")
            if amount > voucher.remaining_amount:
                raise ValidationError(f"Insufficient balance. Available: {voucher.remaining_amount}")

        if voucher.allowed_recipients and to_address not in voucher.allowed_recipients:
            raise ValidationError("Recipient is not on the allowed list")
        if to_address == voucher.owner_address:
            raise ValidationError("Cannot transfer a voucher to its current owner")

    def _requires_approval(self, voucher: Voucher, transfer_type: TransferType, amount: float) -> bool:
        return (
            voucher.require_transfer_approval
            or transfer_type.value in self.config.approval_types
            or amount > self.config.approval_amount_threshold
        )

    def _check_decidable(self, transfer: Transfer, target: TransferStatus) -> None:
        if not transfer.requires_approval:
            raise InvalidStateTransition("Transfer does not require approval")
        if not transfer.can_transition(target):
            raise InvalidStateTransition(f"Transfer is not pending (status: {transfer.status.value})")
        if transfer.expires_at is not None and transfer.expires_at < self.clock.now():
            self._expire(transfer)
            raise InvalidStateTransition(EXPIRED_REASON)

    def _process(self, transfer: Transfer) -> Transfer:
        """Submit a pending (no approval needed) or approved transfer; record completed or failed"""
        try:
            result = self.dispatcher.dispatch_transfer(transfer)
        except LedgerError as e:
            failed = self._finish(transfer, {"status": TransferStatus.FAILED, "failure_reason": e.message})
            logger.error(
                "Transfer processing failed",
                transfer_id=transfer.transfer_id,
                error=e.message,
                retryable=e.retryable,
            )
            self._emit("TransferFailed", failed, "system", error=e.message, retryable=e.retryable)
            return failed

        completed = self._finish(transfer, {
            "status": TransferStatus.COMPLETED,
            "completed_at": self.clock.now(),
            "transaction_reference": result.reference,
        })
        logger.info("Transfer completed", transfer_id=transfer.transfer_id, reference=result.reference)
        self._emit("TransferCompleted", completed, "system", reference=result.reference)
        return completed

    def _finish(self, transfer: Transfer, changes: dict) -> Transfer:
        if not transfer.can_transition(changes["status"]):
            raise InvalidStateTransition(
                f"Cannot move transfer from {transfer.status.value} to {changes['status'].value}"
            )
        # Approved and no-approval transfers have a single writer (the processing call)
        finished = self.store.compare_and_swap(transfer.version, transfer.model_copy(update=changes))
        if finished is None:
            raise ConcurrencyConflict(f"Transfer {transfer.transfer_id} was modified during processing")
        return finished

    def _expire(self, transfer: Transfer) -> bool:
        if not transfer.requires_approval or not transfer.can_transition(TransferStatus.REJECTED):
            return False

        expired = self.store.compare_and_swap(
            transfer.version,
            transfer.model_copy(update={
                "status": TransferStatus.REJECTED,
                "rejected_by": "system",
                "rejection_reason": EXPIRED_REASON,
            }),
        )
        if expired is None:
            return False

        logger.info("Transfer expired", transfer_id=transfer.transfer_id)
        self._emit("TransferRejected", expired, "system", reason=EXPIRED_REASON)
        return True

    def _emit(self, event_type: str, transfer: Transfer, actor: Optional[str], **detail) -> None:
        self.publisher.try_publish(WorkflowEvent(
            event_type=event_type,
            entity_id=transfer.transfer_id,
            status=transfer.status.value,
            actor=actor,
            detail={"voucher_id": transfer.voucher_id, "transfer_type": transfer.transfer_type.value, **detail},
        ))


def create_transfer_workflow(
    store: TransferStoreBase,
    directory: VoucherDirectoryBase,
    dispatcher: ExecutionDispatcher,
    publisher: Optional[EventPublisher] = None,
    clock=None,
) -> TransferWorkflow:
    """
    Factory function to create a workflow configured from environment variables.
    """
    from ..core.config import settings

    config = TransferPolicyConfig(
        approval_amount_threshold=settings.transfer_approval_amount_threshold,
        approval_types=settings.approval_transfer_types(),
        expiry_hours=settings.transfer_expiry_hours,
        max_conflict_retries=settings.multisig_max_conflict_retries,
    )
    return TransferWorkflow(store, directory, dispatcher, publisher=publisher, clock=clock, config=config)
