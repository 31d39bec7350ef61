"""
SQLite-backed voucher/merchant directory.
"""

import sqlite3
import json
from typing import Optional
from .vouchers import VoucherDirectoryBase
from ...core.clock import to_iso, from_iso
from ...models.transfer import Transfer, TransferType
from ...models.voucher import Voucher, VoucherStatus, Merchant, MerchantStatus


class SQLiteVoucherDirectory(VoucherDirectoryBase):

    def __init__(self, db_path: str = "approval_gateway.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _init_database(self):
        """Create vouchers and merchants tables if they don't exist"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        cursor = conn.cursor()

        cursor.execute("PRAGMA journal_mode=WAL")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS merchants (
                merchant_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                CHECK (status IN ('active', 'suspended', 'revoked'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vouchers (
                voucher_id TEXT PRIMARY KEY,
                merchant_id TEXT NOT NULL,
                owner_address TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                face_value REAL NOT NULL,
                remaining_amount REAL NOT NULL,
                allow_partial_transfer INTEGER NOT NULL DEFAULT 1,
                max_transfers INTEGER,
                transfer_count INTEGER NOT NULL DEFAULT 0,
                allowed_recipients TEXT NOT NULL DEFAULT '[]',
                require_transfer_approval INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_vouchers_merchant
            ON vouchers(merchant_id)
        """)

        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            rows_affected = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        return rows_affected

    def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM vouchers WHERE voucher_id = ?", (voucher_id,))
        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return Voucher(
            voucher_id=row["voucher_id"],
            merchant_id=row["merchant_id"],
            owner_address=row["owner_address"],
            status=row["status"],
            face_value=row["face_value"],
            remaining_amount=row["remaining_amount"],
            allow_partial_transfer=bool(row["allow_partial_transfer"]),
            max_transfers=row["max_transfers"],
            transfer_count=row["transfer_count"],
            allowed_recipients=json.loads(row["allowed_recipients"]),
            require_transfer_approval=bool(row["require_transfer_approval"]),
            expires_at=from_iso(row["expires_at"]),
        )

    def add_voucher(self, voucher: Voucher) -> None:
        self._execute("""
            INSERT OR REPLACE INTO vouchers (
                voucher_id, merchant_id, owner_address, status, face_value,
                remaining_amount, allow_partial_transfer, max_transfers,
                transfer_count, allowed_recipients, require_transfer_approval, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            voucher.voucher_id,
            voucher.merchant_id,
            voucher.owner_address,
            voucher.status.value,
            voucher.face_value,
            voucher.remaining_amount,
            int(voucher.allow_partial_transfer),
            voucher.max_transfers,
            voucher.transfer_count,
            json.dumps(voucher.allowed_recipients),
            int(voucher.require_transfer_approval),
            to_iso(voucher.expires_at),
        ))

    def voucher_ids_for_merchant(self, merchant_id: str) -> list[str]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT voucher_id FROM vouchers WHERE merchant_id = ?", (merchant_id,))
        rows = cursor.fetchall()
        conn.close()
        return [row["voucher_id"] for row in rows]

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM merchants WHERE merchant_id = ?", (merchant_id,))
        row = cursor.fetchone()
        conn.close()

        if row is None:
            return None

        return Merchant(merchant_id=row["merchant_id"], name=row["name"], status=row["status"])

    def add_merchant(self, merchant: Merchant) -> None:
        self._execute("""
            INSERT OR REPLACE INTO merchants (merchant_id, name, status)
            VALUES (?, ?, ?)
        """, (merchant.merchant_id, merchant.name, merchant.status.value))

    def set_merchant_status(self, merchant_id: str, status: MerchantStatus) -> bool:
        return self._execute(
            "UPDATE merchants SET status = ? WHERE merchant_id = ?",
            (status.value, merchant_id),
        ) > 0

    def set_voucher_status(self, voucher_ids: list[str], status: VoucherStatus) -> int:
        if not voucher_ids:
            return 0
        placeholders = ", ".join("?" for _ in voucher_ids)
        return self._execute(
            f"UPDATE vouchers SET status = ? WHERE voucher_id IN ({placeholders})",
            (status.value, *voucher_ids),
        )

    def apply_transfer(self, transfer: Transfer) -> bool:
        if transfer.transfer_type == TransferType.FULL:
            return self._execute("""
                UPDATE vouchers
                SET owner_address = ?,
                    transfer_count = transfer_count + 1
                WHERE voucher_id = ?
                  AND owner_address = ?
                  AND status IN ('active', 'partially_redeemed')
            """, (transfer.to_address, transfer.voucher_id, transfer.from_address)) > 0

        return self._execute("""
            UPDATE vouchers
            SET remaining_amount = remaining_amount - ?,
                status = CASE WHEN remaining_amount - ? = 0
                              THEN 'fully_redeemed' ELSE 'partially_redeemed' END,
                transfer_count = transfer_count + 1
            WHERE voucher_id = ?
              AND remaining_amount >= ?
              AND status IN ('active', 'partially_redeemed')
        """, (transfer.amount, transfer.amount, transfer.voucher_id, transfer.amount)) > 0

    def revert_transfer(self, transfer: Transfer) -> bool:
        if transfer.transfer_type == TransferType.FULL:
            return self._execute("""
                UPDATE vouchers
                SET owner_address = ?,
                    transfer_count = MAX(transfer_count - 1, 0)
                WHERE voucher_id = ?
                  AND owner_address = ?
            """, (transfer.from_address, transfer.voucher_id, transfer.to_address)) > 0

        # A freeze or cancellation since the reservation keeps its status
        return self._execute("""
            UPDATE vouchers
            SET remaining_amount = remaining_amount + ?,
                status = CASE
                    WHEN status NOT IN ('partially_redeemed', 'fully_redeemed') THEN status
                    WHEN remaining_amount + ? >= face_value THEN 'active'
                    ELSE 'partially_redeemed' END,
                transfer_count = MAX(transfer_count - 1, 0)
            WHERE voucher_id = ?
        """, (transfer.amount, transfer.amount, transfer.voucher_id)) > 0
