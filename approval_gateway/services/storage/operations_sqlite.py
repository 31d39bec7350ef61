"""
SQLite-based multi-signature operation storage.

Provides persistent storage of operations with SQL query capabilities and a
version-stamped conditional UPDATE for lost-update-free state changes.
"""

import sqlite3
import json
from datetime import datetime
from typing import Optional
from .store_base import OperationStoreBase
from ...core.clock import to_iso, from_iso
from ...core.errors import ValidationError
from ...models.operation import Operation, OperationStatus, ExecutionResult, Signature

_COLUMNS = """
    operation_id, operation_type, operation_data, initiated_by, required_signatures,
    signatures, status, priority, notes, created_at, expires_at, approved_at,
    rejected_by, rejection_reason, execution_claimed_by, executed_at, executed_by,
    execution_result, version
"""


class SQLiteOperationStore(OperationStoreBase):
    """
    SQLite-backed operation store with persistent storage.

    Features:
    - Persistent storage across application restarts
    - Status and created_at indexes for pending-list and stats queries
    - Conditional writes (WHERE version = ?) so concurrent signers,
      executors and the expiry sweep can never overwrite each other
    """

    def __init__(self, db_path: str = "approval_gateway.db", timeout: float = 30.0):
        """
        Initialize store with database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _init_database(self):
        """Create operations table if it doesn't exist"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        cursor = conn.cursor()

        cursor.execute("PRAGMA journal_mode=WAL")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS operations (
                operation_id TEXT PRIMARY KEY,
                operation_type TEXT NOT NULL,
                operation_data TEXT NOT NULL,
                initiated_by TEXT NOT NULL,
                required_signatures INTEGER NOT NULL,
                signatures TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'pending',
                priority TEXT NOT NULL DEFAULT 'medium',
                notes TEXT,
                created_at TEXT NOT NULL,
                expires_at TEXT,
                approved_at TEXT,
                rejected_by TEXT,
                rejection_reason TEXT,
                execution_claimed_by TEXT,
                executed_at TEXT,
                executed_by TEXT,
                execution_result TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                CHECK (status IN ('pending', 'approved', 'rejected', 'executed', 'failed', 'expired')),
                CHECK (required_signatures >= 2)
            )
        """)

        # Create indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operations_status
            ON operations(status)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operations_created_at
            ON operations(created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_operations_status_expires
            ON operations(status, expires_at)
        """)

        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _to_params(operation: Operation) -> dict:
        return {
            "operation_id": operation.operation_id,
            "operation_type": operation.operation_type.value,
            "operation_data": json.dumps(operation.operation_data),
            "initiated_by": operation.initiated_by,
            "required_signatures": operation.required_signatures,
            "signatures": json.dumps([s.model_dump(mode="json") for s in operation.signatures]),
            "status": operation.status.value,
            "priority": operation.priority.value,
            "notes": operation.notes,
            "created_at": to_iso(operation.created_at),
            "expires_at": to_iso(operation.expires_at),
            "approved_at": to_iso(operation.approved_at),
            "rejected_by": operation.rejected_by,
            "rejection_reason": operation.rejection_reason,
            "execution_claimed_by": operation.execution_claimed_by,
            "executed_at": to_iso(operation.executed_at),
            "executed_by": operation.executed_by,
            "execution_result": (
                operation.execution_result.model_dump_json() if operation.execution_result else None
            ),
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Operation:
        return Operation(
            operation_id=row["operation_id"],
            operation_type=row["operation_type"],
            operation_data=json.loads(row["operation_data"]),
            initiated_by=row["initiated_by"],
            required_signatures=row["required_signatures"],
            signatures=[Signature(**s) for s in json.loads(row["signatures"])],
            status=row["status"],
            priority=row["priority"],
            notes=row["notes"],
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            approved_at=from_iso(row["approved_at"]),
            rejected_by=row["rejected_by"],
            rejection_reason=row["rejection_reason"],
            execution_claimed_by=row["execution_claimed_by"],
            executed_at=from_iso(row["executed_at"]),
            executed_by=row["executed_by"],
            execution_result=(
                ExecutionResult.model_validate_json(row["execution_result"])
                if row["execution_result"] else None
            ),
            version=row["version"],
        )

    def insert(self, operation: Operation) -> None:
        """
        Persist a new operation at version 1.

        Raises:
            ValidationError: if the operation_id already exists
        """
        params = self._to_params(operation)

        conn = self._get_connection()
        try:
            conn.execute(f"""
                INSERT INTO operations ({_COLUMNS})
                VALUES (
                    :operation_id, :operation_type, :operation_data, :initiated_by,
                    :required_signatures, :signatures, :status, :priority, :notes,
                    :created_at, :expires_at, :approved_at, :rejected_by,
                    :rejection_reason, :execution_claimed_by, :executed_at,
                    :executed_by, :execution_result, 1
                )
            """, params)
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Operation {operation.operation_id} could not be stored: {e}") from e
        finally:
            conn.close()

    def get(self, operation_id: str) -> Optional[Operation]:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(f"""
            SELECT {_COLUMNS}
            FROM operations
            WHERE operation_id = ?
        """, (operation_id,))

        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return self._from_row(row)

    def compare_and_swap(self, expected_version: int, updated: Operation) -> Optional[Operation]:
        """
        Write the new state only if nobody else has written since expected_version.

        The single UPDATE is atomic in SQLite, so exactly one of several
        writers that read the same version can land.
        """
        params = self._to_params(updated)
        params["expected_version"] = expected_version

        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE operations
                SET signatures = :signatures,
                    status = :status,
                    priority = :priority,
                    notes = :notes,
                    expires_at = :expires_at,
                    approved_at = :approved_at,
                    rejected_by = :rejected_by,
                    rejection_reason = :rejection_reason,
                    execution_claimed_by = :execution_claimed_by,
                    executed_at = :executed_at,
                    executed_by = :executed_by,
                    execution_result = :execution_result,
                    version = version + 1
                WHERE operation_id = :operation_id
                  AND version = :expected_version
            """, params)
            rows_affected = cursor.rowcount
            conn.commit()
        finally:
            conn.close()

        if rows_affected == 0:
            return None

        return updated.model_copy(update={"version": expected_version + 1}, deep=True)

    def _fetch(self, sql: str, params: tuple = ()) -> list[Operation]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(sql, params)
        rows = cursor.fetchall()
        conn.close()
        return [self._from_row(row) for row in rows]

    def query(self, status=None, operation_type=None, limit=100) -> list[Operation]:
        clauses = []
        params = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if operation_type is not None:
            clauses.append("operation_type = ?")
            params.append(operation_type)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM operations
            {where}
            ORDER BY created_at DESC
            LIMIT ?
        """, tuple(params))

    def find_pending(self, now: datetime) -> list[Operation]:
        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM operations
            WHERE status = 'pending'
              AND (expires_at IS NULL OR expires_at >= ?)
            ORDER BY CASE priority
                         WHEN 'critical' THEN 3
                         WHEN 'high' THEN 2
                         WHEN 'medium' THEN 1
                         ELSE 0 END DESC,
                     created_at ASC
        """, (to_iso(now),))

    def find_expirable(self, now: datetime) -> list[Operation]:
        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM operations
            WHERE status IN ('pending', 'approved')
              AND execution_claimed_by IS NULL
              AND expires_at IS NOT NULL
              AND expires_at < ?
            ORDER BY expires_at ASC
        """, (to_iso(now),))

    def find_signed_by(self, user_id: str, limit: int = 50) -> list[Operation]:
        # signatures is JSON text; json_each keeps the match exact on signed_by
        return self._fetch(f"""
            SELECT {_COLUMNS}
            FROM operations
            WHERE EXISTS (
                SELECT 1 FROM json_each(operations.signatures)
                WHERE json_extract(json_each.value, '$.signed_by') = ?
            )
            ORDER BY created_at DESC
            LIMIT ?
        """, (user_id, limit))

    def count_by_status(self) -> dict[str, int]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT status, COUNT(*) AS n
            FROM operations
            GROUP BY status
        """)
        rows = cursor.fetchall()
        conn.close()

        counts = {status.value: 0 for status in OperationStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def approval_durations(self) -> list[float]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT created_at, approved_at
            FROM operations
            WHERE status IN ('approved', 'executed')
              AND approved_at IS NOT NULL
        """)
        rows = cursor.fetchall()
        conn.close()

        return [
            (from_iso(row["approved_at"]) - from_iso(row["created_at"])).total_seconds()
            for row in rows
        ]
