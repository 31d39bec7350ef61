"""
Tests for SQLite-based persistence.

This test suite verifies that the SQLite stores:
- Persist records across instances
- Apply a write only when the caller's version is still current
- Support the queries the engine, workflow and sweeper rely on
"""

import sqlite3
from datetime import timedelta
import pytest
from approval_gateway.core.errors import ValidationError
from approval_gateway.models.operation import Operation, OperationStatus, OperationType, Signature
from approval_gateway.models.transfer import Transfer, TransferStatus, TransferType
from approval_gateway.models.voucher import Merchant, MerchantStatus, Voucher, VoucherStatus
from approval_gateway.services.storage import (
    SQLiteOperationStore,
    SQLiteTransferStore,
    SQLiteVoucherDirectory,
)
from conftest import START


@pytest.fixture
def store(db_path):
    """Create a fresh SQLiteOperationStore for each test"""
    return SQLiteOperationStore(db_path)


def make_operation(operation_id="MSIG_0000000000000001", created_at=START, **kwargs):
    fields = {
        "operation_id": operation_id,
        "operation_type": OperationType.SYSTEM_MAINTENANCE,
        "operation_data": {"action": "reindex", "window_minutes": 30},
        "initiated_by": "admin-0",
        "required_signatures": 2,
        "created_at": created_at,
        "expires_at": created_at + timedelta(hours=24),
    }
    fields.update(kwargs)
    return Operation(**fields)


def make_transfer(transfer_id="TRX_0000000000000001", created_at=START, **kwargs):
    fields = {
        "transfer_id": transfer_id,
        "voucher_id": "V-1",
        "from_address": "0xalice",
        "to_address": "0xcarol",
        "transfer_type": TransferType.PARTIAL,
        "amount": 25.0,
        "requires_approval": True,
        "initiated_by": "alice",
        "created_at": created_at,
        "expires_at": created_at + timedelta(hours=72),
    }
    fields.update(kwargs)
    return Transfer(**fields)


# Operations

def test_insert_persists_to_db(store, db_path):
    """Test that inserting an operation writes to SQLite database"""
    store.insert(make_operation())

    # Verify it's in the database by querying directly
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT operation_id, status, operation_data, version FROM operations")
    row = cursor.fetchone()
    conn.close()

    assert row[0] == "MSIG_0000000000000001"
    assert row[1] == "pending"
    assert "reindex" in row[2]
    assert row[3] == 1


def test_operation_survives_new_instance(db_path):
    """Test that operations persist across store instances (simulates restart)"""
    SQLiteOperationStore(db_path).insert(make_operation(notes="Quarterly maintenance"))

    operation = SQLiteOperationStore(db_path).get("MSIG_0000000000000001")

    assert operation is not None
    assert operation.notes == "Quarterly maintenance"
    assert operation.operation_data == {"action": "reindex", "window_minutes": 30}
    assert operation.created_at == START


def test_duplicate_insert_rejected(store):
    store.insert(make_operation())
    with pytest.raises(ValidationError):
        store.insert(make_operation())


def test_get_unknown_returns_none(store):
    assert store.get("MSIG_FFFFFFFFFFFFFFFF") is None


def test_compare_and_swap_applies_on_current_version(store):
    store.insert(make_operation())
    current = store.get("MSIG_0000000000000001")

    signed = current.model_copy(update={
        "signatures": [Signature(signed_by="userA", signed_at=START, comment="ok")],
    })
    stored = store.compare_and_swap(current.version, signed)

    assert stored.version == 2
    reloaded = store.get("MSIG_0000000000000001")
    assert reloaded.version == 2
    assert reloaded.signatures[0].signed_by == "userA"
    assert reloaded.signatures[0].comment == "ok"


def test_compare_and_swap_rejects_stale_version(store):
    store.insert(make_operation())
    current = store.get("MSIG_0000000000000001")
    store.compare_and_swap(current.version, current.model_copy(update={"status": OperationStatus.REJECTED}))

    # Second writer still holds version 1
    result = store.compare_and_swap(current.version, current.model_copy(update={"status": OperationStatus.APPROVED}))

    assert result is None
    assert store.get("MSIG_0000000000000001").status == OperationStatus.REJECTED


def test_query_filters_and_orders_newest_first(store):
    store.insert(make_operation("MSIG_A", created_at=START))
    store.insert(make_operation("MSIG_B", created_at=START + timedelta(minutes=1)))
    store.insert(make_operation(
        "MSIG_C",
        created_at=START + timedelta(minutes=2),
        operation_type=OperationType.SECURITY_UPDATE,
        status=OperationStatus.APPROVED,
    ))

    assert [op.operation_id for op in store.query()] == ["MSIG_C", "MSIG_B", "MSIG_A"]
    assert [op.operation_id for op in store.query(status="pending")] == ["MSIG_B", "MSIG_A"]
    assert [op.operation_id for op in store.query(operation_type="SECURITY_UPDATE")] == ["MSIG_C"]
    assert len(store.query(limit=1)) == 1


def test_find_expirable_excludes_terminal_and_claimed(store):
    past = START - timedelta(hours=1)
    store.insert(make_operation("MSIG_PENDING", expires_at=past))
    store.insert(make_operation("MSIG_APPROVED", expires_at=past, status=OperationStatus.APPROVED))
    store.insert(make_operation(
        "MSIG_CLAIMED", expires_at=past, status=OperationStatus.APPROVED, execution_claimed_by="userA",
    ))
    store.insert(make_operation("MSIG_EXECUTED", expires_at=past, status=OperationStatus.EXECUTED))
    store.insert(make_operation("MSIG_FUTURE"))

    expirable = {op.operation_id for op in store.find_expirable(START)}

    assert expirable == {"MSIG_PENDING", "MSIG_APPROVED"}


def test_find_signed_by_matches_exact_signer(store):
    store.insert(make_operation("MSIG_A", signatures=[Signature(signed_by="userA", signed_at=START)]))
    store.insert(make_operation("MSIG_B", signatures=[Signature(signed_by="userAB", signed_at=START)]))

    assert [op.operation_id for op in store.find_signed_by("userA")] == ["MSIG_A"]


def test_count_by_status_and_durations(store):
    store.insert(make_operation("MSIG_A"))
    store.insert(make_operation(
        "MSIG_B", status=OperationStatus.EXECUTED, approved_at=START + timedelta(minutes=30),
    ))
    store.insert(make_operation("MSIG_C", status=OperationStatus.EXPIRED))

    counts = store.count_by_status()
    assert counts["pending"] == 1
    assert counts["executed"] == 1
    assert counts["expired"] == 1
    assert counts["rejected"] == 0
    assert store.approval_durations() == [1800.0]


# Transfers

def test_transfer_round_trip_and_cas(db_path):
    store = SQLiteTransferStore(db_path)
    store.insert(make_transfer(reason="Birthday gift"))

    transfer = store.get("TRX_0000000000000001")
    assert transfer.reason == "Birthday gift"
    assert transfer.requires_approval is True

    failed = store.compare_and_swap(transfer.version, transfer.model_copy(update={
        "status": TransferStatus.FAILED,
        "failure_reason": "Ledger rejected request (HTTP 400)",
    }))
    assert failed.version == 2
    assert store.compare_and_swap(transfer.version, transfer) is None

    reloaded = SQLiteTransferStore(db_path).get("TRX_0000000000000001")
    assert reloaded.status == TransferStatus.FAILED
    assert reloaded.failure_reason == "Ledger rejected request (HTTP 400)"


def test_transfer_queries(db_path):
    store = SQLiteTransferStore(db_path)
    store.insert(make_transfer("TRX_1", created_at=START))
    store.insert(make_transfer(
        "TRX_2", created_at=START + timedelta(minutes=1), voucher_id="V-2",
        from_address="0xbob", to_address="0xalice", transfer_type=TransferType.FULL,
        requires_approval=False, status=TransferStatus.COMPLETED,
    ))
    store.insert(make_transfer("TRX_3", created_at=START + timedelta(minutes=2), to_address="0xdave"))

    assert [t.transfer_id for t in store.query(party_address="0xalice")] == ["TRX_3", "TRX_2", "TRX_1"]
    assert [t.transfer_id for t in store.query(to_address="0xdave")] == ["TRX_3"]
    assert [t.transfer_id for t in store.query(voucher_ids=["V-2"])] == ["TRX_2"]
    assert store.query(voucher_ids=[]) == []
    assert [t.transfer_id for t in store.query(requires_approval=True, status="pending")] == ["TRX_3", "TRX_1"]
    assert [t.transfer_id for t in store.history("V-1")] == ["TRX_1", "TRX_3"]

    assert store.count_by_status()["completed"] == 1
    assert store.count_by_type() == {"full": 1, "partial": 2}


def test_transfer_find_expirable_needs_approval(db_path):
    store = SQLiteTransferStore(db_path)
    past = START - timedelta(minutes=1)
    store.insert(make_transfer("TRX_1", expires_at=past))
    store.insert(make_transfer("TRX_2", expires_at=past, requires_approval=False))
    store.insert(make_transfer("TRX_3"))

    assert [t.transfer_id for t in store.find_expirable(START)] == ["TRX_1"]


# Voucher directory

def test_voucher_directory_apply_transfer(db_path):
    directory = SQLiteVoucherDirectory(db_path)
    directory.add_merchant(Merchant(merchant_id="M-1", name="Harbour Cafe"))
    directory.add_voucher(Voucher(
        voucher_id="V-1", merchant_id="M-1", owner_address="0xalice",
        face_value=100.0, remaining_amount=100.0, allowed_recipients=["0xcarol"],
    ))

    assert directory.apply_transfer(make_transfer(amount=40.0)) is True
    voucher = directory.get_voucher("V-1")
    assert voucher.remaining_amount == 60.0
    assert voucher.status == VoucherStatus.PARTIALLY_REDEEMED
    assert voucher.transfer_count == 1
    assert voucher.allowed_recipients == ["0xcarol"]

    # Not enough balance left
    assert directory.apply_transfer(make_transfer(amount=80.0)) is False

    full = make_transfer(transfer_type=TransferType.FULL, amount=60.0)
    assert directory.apply_transfer(full) is True
    assert directory.get_voucher("V-1").owner_address == "0xcarol"

    # Owner has changed, a second full transfer from 0xalice no longer applies
    assert directory.apply_transfer(full) is False


def test_voucher_directory_status_updates(db_path):
    directory = SQLiteVoucherDirectory(db_path)
    directory.add_merchant(Merchant(merchant_id="M-1", name="Harbour Cafe"))
    for voucher_id in ("V-1", "V-2"):
        directory.add_voucher(Voucher(
            voucher_id=voucher_id, merchant_id="M-1", owner_address="0xalice",
            face_value=10.0, remaining_amount=10.0,
        ))

    assert sorted(directory.voucher_ids_for_merchant("M-1")) == ["V-1", "V-2"]
    assert directory.set_voucher_status(["V-1", "V-404"], VoucherStatus.FROZEN) == 1
    assert directory.get_voucher("V-1").status == VoucherStatus.FROZEN
    assert directory.set_merchant_status("M-1", MerchantStatus.SUSPENDED) is True
    assert directory.get_merchant("M-1").status == MerchantStatus.SUSPENDED
    assert directory.set_merchant_status("M-404", MerchantStatus.SUSPENDED) is False


def test_voucher_directory_revert_transfer(db_path):
    directory = SQLiteVoucherDirectory(db_path)
    directory.add_voucher(Voucher(
        voucher_id="V-1", merchant_id="M-1", owner_address="0xalice",
        face_value=100.0, remaining_amount=100.0,
    ))

    drain = make_transfer(amount=100.0)
    assert directory.apply_transfer(drain) is True
    assert directory.get_voucher("V-1").status == VoucherStatus.FULLY_REDEEMED

    assert directory.revert_transfer(drain) is True
    voucher = directory.get_voucher("V-1")
    assert voucher.remaining_amount == 100.0
    assert voucher.status == VoucherStatus.ACTIVE
    assert voucher.transfer_count == 0

    full = make_transfer(transfer_type=TransferType.FULL, amount=100.0)
    assert directory.apply_transfer(full) is True
    assert directory.revert_transfer(full) is True
    assert directory.get_voucher("V-1").owner_address == "0xalice"
    # Already back with the sender
    assert directory.revert_transfer(full) is False


def test_voucher_directory_frozen_voucher_cannot_be_reserved(db_path):
    directory = SQLiteVoucherDirectory(db_path)
    directory.add_voucher(Voucher(
        voucher_id="V-1", merchant_id="M-1", owner_address="0xalice",
        face_value=100.0, remaining_amount=100.0, status=VoucherStatus.FROZEN,
    ))

    assert directory.apply_transfer(make_transfer(amount=10.0)) is False
    assert directory.apply_transfer(make_transfer(transfer_type=TransferType.FULL, amount=100.0)) is False
    assert directory.get_voucher("V-1").remaining_amount == 100.0


def test_find_pending_orders_every_pending_operation(store):
    for i in range(5):
        store.insert(make_operation(
            operation_id=f"MSIG_LOW{i:012d}",
            created_at=START + timedelta(minutes=i),
            priority="low",
        ))
    store.insert(make_operation(
        operation_id="MSIG_CRIT000000000001",
        created_at=START + timedelta(minutes=10),
        priority="critical",
    ))
    store.insert(make_operation(
        operation_id="MSIG_HIGH000000000001",
        created_at=START + timedelta(minutes=20),
        priority="high",
        expires_at=START + timedelta(minutes=30),
    ))
    store.insert(make_operation(operation_id="MSIG_DONE000000000001", status=OperationStatus.REJECTED))

    pending = store.find_pending(START + timedelta(hours=1))

    assert [op.operation_id for op in pending] == [
        "MSIG_CRIT000000000001",
        *[f"MSIG_LOW{i:012d}" for i in range(5)],
    ]
