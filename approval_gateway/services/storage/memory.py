"""
In-memory stores (for tests and demo deployments).
In production, use the SQLite stores or a database with the same conditional UPDATE.
"""
import threading
from datetime import datetime
from typing import Dict, Optional
from .store_base import OperationStoreBase, TransferStoreBase
from ...core.errors import ValidationError
from ...models.operation import (
    Operation,
    OperationStatus,
    EXPIRABLE_OPERATION_STATUSES,
    PRIORITY_RANK,
)
from ...models.transfer import Transfer, TransferStatus


class InMemoryOperationStore(OperationStoreBase):
    def __init__(self):
        self._operations: Dict[str, Operation] = {}
        # Guards the version check + replace; held only for the dict access
        self._lock = threading.Lock()

    def insert(self, operation: Operation) -> None:
        with self._lock:
            if operation.operation_id in self._operations:
                raise ValidationError(f"Operation {operation.operation_id} already exists")
            self._operations[operation.operation_id] = operation.model_copy(update={"version": 1}, deep=True)

    def get(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation.model_copy(deep=True) if operation else None

    def compare_and_swap(self, expected_version: int, updated: Operation) -> Optional[Operation]:
        with self._lock:
            current = self._operations.get(updated.operation_id)
            if current is None or current.version != expected_version:
                return None
            stored = updated.model_copy(update={"version": expected_version + 1}, deep=True)
            self._operations[updated.operation_id] = stored
            return stored.model_copy(deep=True)

    def _snapshot(self) -> list[Operation]:
        with self._lock:
            return [op.model_copy(deep=True) for op in self._operations.values()]

    def query(self, status=None, operation_type=None, limit=100) -> list[Operation]:
        operations = [
            op for op in self._snapshot()
            if (status is None or op.status.value == status)
            and (operation_type is None or op.operation_type.value == operation_type)
        ]
        operations.sort(key=lambda op: op.created_at, reverse=True)
        return operations[:limit]

    def find_pending(self, now: datetime) -> list[Operation]:
        pending = [
            op for op in self._snapshot()
            if op.status == OperationStatus.PENDING and not op.is_past_deadline(now)
        ]
        pending.sort(key=lambda op: (-PRIORITY_RANK[op.priority], op.created_at))
        return pending

    def find_expirable(self, now: datetime) -> list[Operation]:
        return [
            op for op in self._snapshot()
            if op.status in EXPIRABLE_OPERATION_STATUSES
            and op.execution_claimed_by is None
            and op.is_past_deadline(now)
        ]

    def find_signed_by(self, user_id: str, limit: int = 50) -> list[Operation]:
        operations = [op for op in self._snapshot() if op.has_signed(user_id)]
        operations.sort(key=lambda op: op.created_at, reverse=True)
        return operations[:limit]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in OperationStatus}
        for op in self._snapshot():
            counts[op.status.value] += 1
        return counts

    def approval_durations(self) -> list[float]:
        return [
            (op.approved_at - op.created_at).total_seconds()
            for op in self._snapshot()
            if op.status in (OperationStatus.APPROVED, OperationStatus.EXECUTED) and op.approved_at
        ]


class InMemoryTransferStore(TransferStoreBase):
    def __init__(self):
        self._transfers: Dict[str, Transfer] = {}
        self._lock = threading.Lock()

    def insert(self, transfer: Transfer) -> None:
        with self._lock:
            if transfer.transfer_id in self._transfers:
                raise ValidationError(f"Transfer {transfer.transfer_id} already exists")
            self._transfers[transfer.transfer_id] = transfer.model_copy(update={"version": 1}, deep=True)

    def get(self, transfer_id: str) -> Optional[Transfer]:
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            return transfer.model_copy(deep=True) if transfer else None

    def compare_and_swap(self, expected_version: int, updated: Transfer) -> Optional[Transfer]:
        with self._lock:
            current = self._transfers.get(updated.transfer_id)
            if current is None or current.version != expected_version:
                return None
            stored = updated.model_copy(update={"version": expected_version + 1}, deep=True)
            self._transfers[updated.transfer_id] = stored
            return stored.model_copy(deep=True)

    def _snapshot(self) -> list[Transfer]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._transfers.values()]

    def query(
        self,
        status=None,
        voucher_id=None,
        from_address=None,
        to_address=None,
        party_address=None,
        voucher_ids=None,
        requires_approval=None,
        limit=100,
    ) -> list[Transfer]:
        transfers = [
            t for t in self._snapshot()
            if (status is None or t.status.value == status)
            and (voucher_id is None or t.voucher_id == voucher_id)
            and (from_address is None or t.from_address == from_address)
            and (to_address is None or t.to_address == to_address)
            and (party_address is None or party_address in (t.from_address, t.to_address))
            and (voucher_ids is None or t.voucher_id in voucher_ids)
            and (requires_approval is None or t.requires_approval == requires_approval)
        ]
        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers[:limit]

    def history(self, voucher_id: str) -> list[Transfer]:
        transfers = [t for t in self._snapshot() if t.voucher_id == voucher_id]
        transfers.sort(key=lambda t: t.created_at)
        return transfers

    def find_expirable(self, now: datetime) -> list[Transfer]:
        return [
            t for t in self._snapshot()
            if t.status == TransferStatus.PENDING
            and t.requires_approval
            and t.expires_at is not None
            and t.expires_at < now
        ]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TransferStatus}
        for t in self._snapshot():
            counts[t.status.value] += 1
        return counts

    def count_by_type(self) -> dict[str, int]:
        counts = {"full": 0, "partial": 0}
        for t in self._snapshot():
            counts[t.transfer_type.value] += 1
        return counts
