"""
Multi-signature approval engine.

Owns the operation state machine:

    pending  --sign (below threshold)--> pending
    pending  --sign (reaches threshold)--> approved
    pending  --reject--> rejected
    pending  --expire--> expired
    approved --execute (success)--> executed
    approved --execute (failure)--> failed
    approved --expire (unexecuted past deadline)--> expired

Every transition is a compare-and-swap against the version the caller read.
When a write loses the race the engine re-reads and re-validates (still
pending? already signed?) a bounded number of times; it never retries to
"win" a threshold crossing, because only the writer whose update lands the
record at the required count may flip it to approved.

Execution is claimed (execution_claimed_by) with its own conditional write
before the dispatcher is called, so concurrent execute calls and the expiry
sweep cannot both act on one approved operation.
"""

import secrets
from datetime import datetime, timedelta
from statistics import mean
from typing import Any, Optional
from loguru import logger
from pydantic import BaseModel, Field, model_validator
from ..core.clock import SystemClock, as_utc
from ..core.errors import (
    ApprovalGatewayError,
    ConcurrencyConflict,
    DuplicateSignature,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from ..models.operation import (
    ExecutionResult,
    Operation,
    OperationStatus,
    OperationType,
    Priority,
    Signature,
)
from .events.event_publisher import EventPublisher, WorkflowEvent
from .execution_dispatcher import ExecutionDispatcher
from .storage.store_base import OperationStoreBase


class MultiSigConfig(BaseModel):
    """Configuration for the approval engine (loaded from environment)"""
    min_signatures: int = Field(2, ge=2, le=10)
    max_signatures: int = Field(10, ge=2, le=10)
    default_expiry_hours: int = 24
    type_signatures: dict[str, int] = {}
    allow_initiator_signature: bool = False
    auto_execute: bool = False
    max_conflict_retries: int = 10

    @model_validator(mode="after")
    def check_signature_range(self):
        if self.min_signatures > self.max_signatures:
            raise ValueError("min_signatures cannot exceed max_signatures")
        return self


class ApprovalEngine:
    """
    Create, sign, reject, execute and expire multi-signature operations.

    One instance per process, built with an injected store; holds no
    per-operation state of its own.
    """

    def __init__(
        self,
        store: OperationStoreBase,
        dispatcher: ExecutionDispatcher,
        publisher: Optional[EventPublisher] = None,
        clock=None,
        config: Optional[MultiSigConfig] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.publisher = publisher or EventPublisher(service_bus_sender=None)
        self.clock = clock or SystemClock()
        self.config = config or MultiSigConfig()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_operation(
        self,
        operation_type: str | OperationType,
        operation_data: dict[str, Any],
        initiated_by: str,
        required_signatures: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        priority: str | Priority = Priority.MEDIUM,
        notes: Optional[str] = None,
    ) -> Operation:
        """
        Create a pending operation with an empty signature list.

        Raises:
            ValidationError: unknown type, missing data, signatures outside
                [min, max], deadline not in the future, unknown priority
        """
        try:
            op_type = OperationType(operation_type)
        except ValueError:
            raise ValidationError(f"Invalid operation type: {operation_type}")

        if not isinstance(operation_data, dict):
            raise ValidationError("Operation data required")

        if required_signatures is None:
            required_signatures = self.config.type_signatures.get(op_type.value, self.config.min_signatures)
        if isinstance(required_signatures, bool) or not isinstance(required_signatures, int):
            raise ValidationError("requiredSignatures must be an integer")
        if not self.config.min_signatures <= required_signatures <= self.config.max_signatures:
            raise ValidationError(
                f"requiredSignatures must be between {self.config.min_signatures} "
                f"and {self.config.max_signatures}, got {required_signatures}"
            )

        try:
            priority = Priority(priority)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}")

        now = self.clock.now()
        if expires_at is None:
            expires_at = now + timedelta(hours=self.config.default_expiry_hours)
        else:
            expires_at = as_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("expiresAt must be in the future")

        operation = Operation(
            operation_id=f"MSIG_{secrets.token_hex(8).upper()}",
            operation_type=op_type,
            operation_data=operation_data,
            initiated_by=initiated_by,
            required_signatures=required_signatures,
            priority=priority,
            notes=notes,
            created_at=now,
            expires_at=expires_at,
        )
        self.store.insert(operation)

        logger.info(
            "Created multi-sig operation",
            operation_id=operation.operation_id,
            operation_type=op_type.value,
            required_signatures=required_signatures,
            initiated_by=initiated_by,
        )
        self._emit("OperationCreated", operation, initiated_by)
        return operation

    def add_signature(self, operation_id: str, signer_id: str, comment: Optional[str] = None) -> Operation:
        """
        Record signer_id's signature; flip to approved when it is the last one required.

        Raises:
            NotFound, InvalidStateTransition (not pending / expired),
            DuplicateSignature, PermissionDenied (initiator signing own operation),
            ConcurrencyConflict (re-checks exhausted)
        """
        for attempt in range(self.config.max_conflict_retries + 1):
            operation = self.get_operation(operation_id)
            now = self.clock.now()

            # Only a pending operation still collects signatures
            if not operation.can_transition(OperationStatus.APPROVED):
                raise InvalidStateTransition(
                    f"Operation is no longer pending (status: {operation.status.value})"
                )
            if operation.has_signed(signer_id):
                raise DuplicateSignature(f"{signer_id} has already signed operation {operation_id}")
            if not self.config.allow_initiator_signature and operation.initiated_by == signer_id:
                raise PermissionDenied("Cannot sign your own operation")
            if operation.is_past_deadline(now):
                self._expire(operation, now)
                raise InvalidStateTransition("Operation has expired")

            signatures = operation.signatures + [Signature(signed_by=signer_id, signed_at=now, comment=comment)]
            crossed = len(signatures) == operation.required_signatures

            changes: dict[str, Any] = {"signatures": signatures}
            if crossed:
                changes["status"] = OperationStatus.APPROVED
                changes["approved_at"] = now

            stored = self.store.compare_and_swap(operation.version, operation.model_copy(update=changes))
            if stored is None:
                logger.debug(
                    "Signature write lost a race, re-checking",
                    operation_id=operation_id,
                    signer_id=signer_id,
                    attempt=attempt + 1,
                )
                continue

            logger.info(
                "Operation signed",
                operation_id=operation_id,
                signer_id=signer_id,
                signatures=len(stored.signatures),
                required=stored.required_signatures,
            )
            self._emit("OperationSigned", stored, signer_id, comment=comment)

            if crossed:
                logger.info("Operation approved and ready for execution", operation_id=operation_id)
                self._emit("OperationApproved", stored, signer_id)
                if self.config.auto_execute:
                    return self._auto_execute(stored)

            return stored

        raise ConcurrencyConflict(f"Could not record signature on {operation_id}: too many concurrent updates")

    def reject_operation(self, operation_id: str, user_id: str, reason: str) -> Operation:
        """
        Reject a pending operation (terminal).

        Raises:
            ValidationError (no reason), NotFound, InvalidStateTransition,
            ConcurrencyConflict
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason required")

        for _ in range(self.config.max_conflict_retries + 1):
            operation = self.get_operation(operation_id)
            if not operation.can_transition(OperationStatus.REJECTED):
                raise InvalidStateTransition(
                    f"Operation is no longer pending (status: {operation.status.value})"
                )

            stored = self.store.compare_and_swap(
                operation.version,
                operation.model_copy(update={
                    "status": OperationStatus.REJECTED,
                    "rejected_by": user_id,
                    "rejection_reason": reason.strip(),
                }),
            )
            if stored is None:
                continue

            logger.info("Operation rejected", operation_id=operation_id, rejected_by=user_id, reason=reason)
            self._emit("OperationRejected", stored, user_id, reason=reason)
            return stored

        raise ConcurrencyConflict(f"Could not reject {operation_id}: too many concurrent updates")

    def execute_operation(self, operation_id: str, executed_by: Optional[str] = None) -> ExecutionResult:
        """
        Execute an approved operation exactly once.

        Raises:
            NotFound
            InvalidStateTransition: not approved (including already executed),
                execution already claimed by another caller, or past its deadline
            LedgerError: dispatcher failure; the operation is recorded as failed
            ConcurrencyConflict
        """
        claimant = executed_by or "system"
        claimed = self._claim_execution(operation_id, claimant)

        try:
            result = self.dispatcher.dispatch(claimed)
        except LedgerError as e:
            failure = ExecutionResult(success=False, error=e.message, retryable=e.retryable)
            failed = self._finish_execution(claimed, OperationStatus.FAILED, failure, claimant)
            logger.error(
                "Operation execution failed",
                operation_id=operation_id,
                error=e.message,
                retryable=e.retryable,
            )
            self._emit("OperationFailed", failed, claimant, error=e.message, retryable=e.retryable)
            raise

        executed = self._finish_execution(claimed, OperationStatus.EXECUTED, result, claimant)
        logger.info(
            "Operation executed",
            operation_id=operation_id,
            executed_by=claimant,
            reference=result.reference,
        )
        self._emit("OperationExecuted", executed, claimant, reference=result.reference)
        return result

    def expire_old_operations(self) -> int:
        """
        Expire pending/approved operations past their deadline.

        Each record is moved with its own conditional write; one that changed
        since it was read (signed, claimed, rejected...) is skipped, and a
        failure on one record does not stop the batch.

        Returns:
            Number of operations actually transitioned to expired
        """
        now = self.clock.now()
        count = 0

        for operation in self.store.find_expirable(now):
            try:
                if self._expire(operation, now):
                    count += 1
            except Exception as e:
                logger.error(
                    "Failed to expire operation",
                    operation_id=operation.operation_id,
                    error=str(e),
                )

        if count > 0:
            logger.info("Expired old multi-sig operations", count=count)

        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_operation(self, operation_id: str) -> Operation:
        operation = self.store.get(operation_id)
        if operation is None:
            raise NotFound("Operation not found")
        return operation

    def get_pending_operations(self) -> list[Operation]:
        """Pending operations still inside their window, highest priority first, then oldest first"""
        return self.store.find_pending(self.clock.now())

    def list_operations(
        self,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[Operation]:
        """
        Raises:
            ValidationError: unknown status or operation type filter
        """
        if status is not None and status not in {s.value for s in OperationStatus}:
            raise ValidationError(f"Invalid status filter: {status}")
        if operation_type is not None and operation_type not in {t.value for t in OperationType}:
            raise ValidationError(f"Invalid operationType filter: {operation_type}")
        return self.store.query(status=status, operation_type=operation_type, limit=limit)

    def get_signature_history(self, user_id: str, limit: int = 50) -> list[Operation]:
        return self.store.find_signed_by(user_id, limit=limit)

    def stats_summary(self) -> dict:
        counts = self.store.count_by_status()
        durations = self.store.approval_durations()
        avg_seconds = mean(durations) if durations else 0.0

        return {
            **counts,
            "total": sum(counts.values()),
            "avg_approval_seconds": round(avg_seconds, 3),
            "avg_approval_time_minutes": round(avg_seconds / 60),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _claim_execution(self, operation_id: str, claimant: str) -> Operation:
        for _ in range(self.config.max_conflict_retries + 1):
            operation = self.get_operation(operation_id)
            now = self.clock.now()

            if not operation.can_transition(OperationStatus.EXECUTED):
                raise InvalidStateTransition(
                    f"Operation must be approved before execution (status: {operation.status.value})"
                )
            if operation.execution_claimed_by is not None:
                raise InvalidStateTransition(
                    f"Operation execution already claimed by {operation.execution_claimed_by}"
                )
            if operation.is_past_deadline(now):
                self._expire(operation, now)
                raise InvalidStateTransition("Operation has expired")

            claimed = self.store.compare_and_swap(
                operation.version,
                operation.model_copy(update={"execution_claimed_by": claimant}),
            )
            if claimed is not None:
                return claimed

        raise ConcurrencyConflict(f"Could not claim {operation_id} for execution: too many concurrent updates")

    def _finish_execution(
        self,
        claimed: Operation,
        status: OperationStatus,
        result: ExecutionResult,
        claimant: str,
    ) -> Operation:
        """
        Record the outcome of a claimed execution.

        If this write does not land the operation stays approved and claimed:
        neither execute nor the expiry sweep will touch it again, so it is
        logged as critical for an operator to reconcile against the ledger.
        """
        if not claimed.can_transition(status):
            raise InvalidStateTransition(
                f"Cannot record {status.value} for operation in status {claimed.status.value}"
            )

        # Nothing else may write a claimed operation, so this lands first time
        try:
            finished = self.store.compare_and_swap(
                claimed.version,
                claimed.model_copy(update={
                    "status": status,
                    "execution_result": result,
                    "executed_at": self.clock.now(),
                    "executed_by": claimant,
                }),
            )
        except Exception as e:
            logger.critical(
                "Execution outcome not recorded, operation left claimed and needs operator reconciliation",
                operation_id=claimed.operation_id,
                intended_status=status.value,
                reference=result.reference,
                error=str(e),
            )
            raise

        if finished is None:
            logger.critical(
                "Claimed operation changed underneath its executor, needs operator reconciliation",
                operation_id=claimed.operation_id,
                intended_status=status.value,
                reference=result.reference,
            )
            raise ConcurrencyConflict(f"Operation {claimed.operation_id} was modified during execution")
        return finished

    def _expire(self, operation: Operation, now: datetime) -> bool:
        if (
            not operation.can_transition(OperationStatus.EXPIRED)
            or operation.execution_claimed_by is not None
            or not operation.is_past_deadline(now)
        ):
            return False

        expired = self.store.compare_and_swap(
            operation.version,
            operation.model_copy(update={"status": OperationStatus.EXPIRED}),
        )
        if expired is None:
            return False

        logger.info(
            "Operation expired",
            operation_id=operation.operation_id,
            previous_status=operation.status.value,
        )
        self._emit("OperationExpired", expired, "system", previous_status=operation.status.value)
        return True

    def _auto_execute(self, approved: Operation) -> Operation:
        try:
            self.execute_operation(approved.operation_id, executed_by="system-auto")
        except ApprovalGatewayError as e:
            # Failure is already recorded on the operation (failed) or another caller got there first
            logger.warning("Automatic execution did not complete", operation_id=approved.operation_id, error=e.message)
        return self.get_operation(approved.operation_id)

    def _emit(self, event_type: str, operation: Operation, actor: Optional[str], **detail) -> None:
        self.publisher.try_publish(WorkflowEvent(
            event_type=event_type,
            entity_id=operation.operation_id,
            status=operation.status.value,
            actor=actor,
            detail={
                "operation_type": operation.operation_type.value,
                "signatures": len(operation.signatures),
                "required_signatures": operation.required_signatures,
                **detail,
            },
        ))


def create_approval_engine(
    store: OperationStoreBase,
    dispatcher: ExecutionDispatcher,
    publisher: Optional[EventPublisher] = None,
    clock=None,
) -> ApprovalEngine:
    """
    Factory function to create an engine configured from environment variables.
    """
    from ..core.config import settings

    config = MultiSigConfig(
        min_signatures=settings.multisig_min_signatures,
        max_signatures=settings.multisig_max_signatures,
        default_expiry_hours=settings.multisig_default_expiry_hours,
        type_signatures=settings.type_signature_overrides(),
        allow_initiator_signature=settings.multisig_allow_initiator_signature,
        auto_execute=settings.multisig_auto_execute,
        max_conflict_retries=settings.multisig_max_conflict_retries,
    )
    return ApprovalEngine(store, dispatcher, publisher=publisher, clock=clock, config=config)
