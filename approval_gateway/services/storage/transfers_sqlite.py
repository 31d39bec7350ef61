"""
SQLite-based voucher transfer storage.
"""

import sqlite3
from datetime import datetime
from typing import Optional
from .store_base import TransferStoreBase
from ...core.clock import to_iso, from_iso
from ...core.errors import ValidationError
from ...models.transfer import Transfer, TransferStatus

_COLUMNS = """
    transfer_id, voucher_id, from_address, to_address, transfer_type, amount,
    requires_approval, status, initiated_by, reason, created_at, expires_at,
    approved_by, approval_comment, approved_at, rejected_by, rejection_reason,
    completed_at, transaction_reference, failure_reason, version
"""


class SQLiteTransferStore(TransferStoreBase):
    """
    SQLite-backed transfer store.

    Same conditional-write discipline as SQLiteOperationStore: every state
    change is UPDATE ... WHERE version = ?.
    """

    def __init__(self, db_path: str = "approval_gateway.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _init_database(self):
        """Create transfers table if it doesn't exist"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        cursor = conn.cursor()

        cursor.execute("PRAGMA journal_mode=WAL")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transfers (
                transfer_id TEXT PRIMARY KEY,
                voucher_id TEXT NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                transfer_type TEXT NOT NULL,
                amount REAL NOT NULL,
                requires_approval INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                initiated_by TEXT NOT NULL,
                reason TEXT,
                created_at TEXT NOT NULL,
                expires_at TEXT,
                approved_by TEXT,
                approval_comment TEXT,
                approved_at TEXT,
                rejected_by TEXT,
                rejection_reason TEXT,
                completed_at TEXT,
                transaction_reference TEXT,
                failure_reason TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                CHECK (status IN ('pending', 'approved', 'rejected', 'completed', 'failed')),
                CHECK (transfer_type IN ('full', 'partial'))
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_transfers_status
            ON transfers(status)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_transfers_created_at
            ON transfers(created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_transfers_voucher
            ON transfers(voucher_id, status)
        """)

        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _to_params(transfer: Transfer) -> dict:
        return {
            "transfer_id": transfer.transfer_id,
            "voucher_id": transfer.voucher_id,
            "from_address": transfer.from_address,
            "to_address": transfer.to_address,
            "transfer_type": transfer.transfer_type.value,
            "amount": transfer.amount,
            "requires_approval": int(transfer.requires_approval),
            "status": transfer.status.value,
            "initiated_by": transfer.initiated_by,
            "reason": transfer.reason,
            "created_at": to_iso(transfer.created_at),
            "expires_at": to_iso(transfer.expires_at),
            "approved_by": transfer.approved_by,
            "approval_comment": transfer.approval_comment,
            "approved_at": to_iso(transfer.approved_at),
            "rejected_by": transfer.rejected_by,
            "rejection_reason": transfer.rejection_reason,
            "completed_at": to_iso(transfer.completed_at),
            "transaction_reference": transfer.transaction_reference,
            "failure_reason": transfer.failure_reason,
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Transfer:
        return Transfer(
            transfer_id=row["transfer_id"],
            voucher_id=row["voucher_id"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            transfer_type=row["transfer_type"],
            amount=row["amount"],
            requires_approval=bool(row["requires_approval"]),
            status=row["status"],
            initiated_by=row["initiated_by"],
            reason=row["reason"],
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            approved_by=row["approved_by"],
            approval_comment=row["approval_comment"],
            approved_at=from_iso(row["approved_at"]),
            rejected_by=row["rejected_by"],
            rejection_reason=row["rejection_reason"],
            completed_at=from_iso(row["completed_at"]),
            transaction_reference=row["transaction_reference"],
            failure_reason=row["failure_reason"],
            version=row["version"],
        )

    def insert(self, transfer: Transfer) -> None:
        params = self._to_params(transfer)

        conn = self._get_connection()
        try:
            conn.execute(f"""
                INSERT INTO transfers ({_COLUMNS})
                VALUES (
                    :transfer_id, :voucher_id, :from_address, :to_address,
                    :transfer_type, :amount, :requires_approval, :status,
                    :initiated_by, :reason, :created_at, :expires_at,
                    :approved_by, :approval_comment, :approved_at, :rejected_by,
                    :rejection_reason, :completed_at, :transaction_reference,
                    :failure_reason, 1
                )
            """, params)
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Transfer {transfer.transfer_id} could not be stored: {e}") from e
        finally:
            conn.close()

    def get(self, transfer_id: str) -> Optional[Transfer]:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(f"""
            SELECT {_COLUMNS}
            FROM transfers
            WHERE transfer_id = ?
        """, (transfer_id,))

        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return self._from_row(row)

    def compare_and_swap(self, expected_version: int, updated: Transfer) -> Optional[Transfer]:
        params = self._to_params(updated)
        params["expected_version"] = expected_version

        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE transfers
                SET status = :status,
                    amount = :amount,
                    approved_by = :approved_by,
                    approval_comment = :approval_comment,
                    approved_at = :approved_at,
                    rejected_by = :rejected_by,
                    rejection_reason = :rejection_reason,
                    completed_at = :completed_at,
                    transaction_reference = :transaction_reference,
                    failure_reason = :failure_reason,
                    version = version + 1
                WHERE transfer_id = :transfer_id
                  AND version = :expected_version
            """, params)
            rows_affected = cursor.rowcount
            conn.commit()
        finally:
            conn.close()

        if rows_affected == 0:
            return None

        return updated.model_copy(update={"version": expected_version + 1}, deep=True)

    def _fetch(self, sql: str, params: tuple = ()) -> list[Transfer]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(sql, params)
        rows = cursor.fetchall()
        conn.close()
        return [self._from_row(row) for row in rows]

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
        clauses = []
        params = []
        for column, value in (
            ("status", status),
            ("voucher_id", voucher_id),
            ("from_address", from_address),
            ("to_address", to_address),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if party_address is not None:
            clauses.append("(from_address = ? OR to_address = ?)")
            params.extend([party_address, party_address])
        if voucher_ids is not None:
            if not voucher_ids:
                return []
            clauses.append(f"voucher_id IN ({', '.join('?' for _ in voucher_ids)})")
            params.extend(voucher_ids)
        if requires_approval is not None:
            clauses.append("requires_approval = ?")
            params.append(int(requires_approval))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM transfers
            {where}
            ORDER BY created_at DESC
            LIMIT ?
        """, tuple(params))

    def history(self, voucher_id: str) -> list[Transfer]:
        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM transfers
            WHERE voucher_id = ?
            ORDER BY created_at ASC
        """, (voucher_id,))

    def find_expirable(self, now: datetime) -> list[Transfer]:
        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM transfers
            WHERE status = 'pending'
              AND requires_approval = 1
              AND expires_at IS NOT NULL
              AND expires_at < ?
        """, (to_iso(now),))

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TransferStatus}
        counts.update(self._count("status"))
        return counts

    def count_by_type(self) -> dict[str, int]:
        counts = {"full": 0, "partial": 0}
        counts.update(self._count("transfer_type"))
        return counts

    def _count(self, column: str) -> dict[str, int]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(f"SELECT {column} AS k, COUNT(*) AS n FROM transfers GROUP BY {column}")
        rows = cursor.fetchall()
        conn.close()
        return {row["k"]: row["n"] for row in rows}
