"""
Abstract base classes for workflow record storage.

Defines the interface that all stores must implement, enabling dependency
injection and easy swapping of storage backends.

Every record carries a ``version`` stamp. Mutations go through
``compare_and_swap``, which only lands when the stored version still equals
the version the caller read. That conditional write is the only
serialisation point between concurrent callers; there is no cross-record lock.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from ...models.operation import Operation
from ...models.transfer import Transfer


class OperationStoreBase(ABC):
    """
    Durable repository of multi-signature operations keyed by operation_id.

    Implementations can use:
    - In-memory storage (for testing/demo)
    - SQLite (for single-instance deployments)
    - PostgreSQL (for production, same conditional UPDATE)
    """

    @abstractmethod
    def insert(self, operation: Operation) -> None:
        """
        Persist a newly created operation.

        Args:
            operation: Operation with version 1
        """
        pass

    @abstractmethod
    def get(self, operation_id: str) -> Optional[Operation]:
        """
        Get an operation by ID.

        Returns:
            A detached copy of the stored operation, or None if not found.
        """
        pass

    @abstractmethod
    def compare_and_swap(self, expected_version: int, updated: Operation) -> Optional[Operation]:
        """
        Replace the stored operation only if its version is still expected_version.

        Args:
            expected_version: Version the caller based its change on
            updated: New state of the operation (its version field is ignored)

        Returns:
            The stored operation with version expected_version + 1,
            or None if another writer got there first (or the record is gone).
        """
        pass

    @abstractmethod
    def query(
        self,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[Operation]:
        """
        List operations, newest first, optionally filtered.
        """
        pass

    @abstractmethod
    def find_pending(self, now: datetime) -> list[Operation]:
        """
        Every pending operation whose expires_at is not before now,
        highest priority first, then oldest first.
        """
        pass

    @abstractmethod
    def find_expirable(self, now: datetime) -> list[Operation]:
        """
        Operations still pending/approved, not claimed for execution,
        whose expires_at is before now.
        """
        pass

    @abstractmethod
    def find_signed_by(self, user_id: str, limit: int = 50) -> list[Operation]:
        """Operations carrying a signature from user_id, newest first"""
        pass

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        pass

    @abstractmethod
    def approval_durations(self) -> list[float]:
        """
        Seconds between created_at and approved_at for every operation
        that is approved or executed and has an approved_at.
        """
        pass


class TransferStoreBase(ABC):
    """
    Durable repository of voucher transfers keyed by transfer_id.
    """

    @abstractmethod
    def insert(self, transfer: Transfer) -> None:
        pass

    @abstractmethod
    def get(self, transfer_id: str) -> Optional[Transfer]:
        pass

    @abstractmethod
    def compare_and_swap(self, expected_version: int, updated: Transfer) -> Optional[Transfer]:
        """Same contract as OperationStoreBase.compare_and_swap"""
        pass

    @abstractmethod
    def query(
        self,
        status: Optional[str] = None,
        voucher_id: Optional[str] = None,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
        party_address: Optional[str] = None,
        voucher_ids: Optional[list[str]] = None,
        requires_approval: Optional[bool] = None,
        limit: int = 100,
    ) -> list[Transfer]:
        """
        List transfers, newest first.

        Args:
            party_address: Only transfers where this address is sender or recipient
            voucher_ids: Only transfers for one of these vouchers
        """
        pass

    @abstractmethod
    def history(self, voucher_id: str) -> list[Transfer]:
        """All transfers referencing voucher_id, oldest first"""
        pass

    @abstractmethod
    def find_expirable(self, now: datetime) -> list[Transfer]:
        """Pending transfers that require approval and whose expires_at is before now"""
        pass

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        pass

    @abstractmethod
    def count_by_type(self) -> dict[str, int]:
        pass
