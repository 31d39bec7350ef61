"""
Race tests against the SQLite store.

Threads hit one database file through separate connections, the same way
concurrent API requests do.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch
import pytest
from approval_gateway.core.errors import ApprovalGatewayError, InvalidStateTransition
from approval_gateway.models.actor import Actor, Role
from approval_gateway.models.operation import OperationStatus
from approval_gateway.models.transfer import TransferStatus
from approval_gateway.services.approval_engine import ApprovalEngine, MultiSigConfig
from approval_gateway.services.storage import SQLiteOperationStore, SQLiteTransferStore
from approval_gateway.services.transfer_workflow import EXPIRED_REASON, TransferPolicyConfig, TransferWorkflow

FREEZE_DATA = {"reason": "Incident 42", "voucher_ids": ["V-1"]}

ALICE = Actor(id="alice", role=Role.USER, wallet_address="0xalice")
ADMIN = Actor(id="ops-admin", role=Role.ADMIN)
ISSUER = Actor(id="cafe-owner", role=Role.MERCHANT, merchant_id="M-1")


@pytest.fixture
def publisher():
    return Mock()


@pytest.fixture
def sqlite_engine(db_path, dispatcher, clock, publisher):
    return ApprovalEngine(
        SQLiteOperationStore(db_path),
        dispatcher,
        publisher=publisher,
        clock=clock,
        config=MultiSigConfig(max_conflict_retries=25),
    )


@pytest.fixture
def sqlite_workflow(db_path, directory, dispatcher, clock, publisher):
    return TransferWorkflow(
        SQLiteTransferStore(db_path),
        directory,
        dispatcher,
        publisher=publisher,
        clock=clock,
        config=TransferPolicyConfig(max_conflict_retries=25),
    )


def run_concurrently(fn, args_list):
    """Start every call at the same moment; return (results, errors)"""
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        try:
            return fn(*args), None
        except ApprovalGatewayError as e:
            return None, e

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        outcomes = list(pool.map(call, args_list))

    results = [r for r, e in outcomes if e is None]
    errors = [e for r, e in outcomes if e is not None]
    return results, errors


def published(publisher, event_type):
    return [c.args[0] for c in publisher.try_publish.call_args_list if c.args[0].event_type == event_type]


def test_concurrent_signers_cross_threshold_once(sqlite_engine, publisher):
    op = sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=5)
    signers = [(op.operation_id, f"signer-{i}") for i in range(5)]

    results, errors = run_concurrently(sqlite_engine.add_signature, signers)

    assert errors == []
    assert sum(1 for r in results if r.status == OperationStatus.APPROVED) == 1
    assert len(published(publisher, "OperationApproved")) == 1

    stored = sqlite_engine.get_operation(op.operation_id)
    assert stored.status == OperationStatus.APPROVED
    assert sorted(s.signed_by for s in stored.signatures) == sorted(s for _, s in signers)


def test_surplus_signers_are_turned_away(sqlite_engine, publisher):
    op = sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=3)
    signers = [(op.operation_id, f"signer-{i}") for i in range(8)]

    results, errors = run_concurrently(sqlite_engine.add_signature, signers)

    assert len(results) == 3
    assert len(errors) == 5
    assert all(isinstance(e, InvalidStateTransition) for e in errors)
    assert len(sqlite_engine.get_operation(op.operation_id).signatures) == 3
    assert len(published(publisher, "OperationApproved")) == 1


def test_same_signer_racing_itself_signs_once(sqlite_engine):
    op = sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=3)

    results, errors = run_concurrently(sqlite_engine.add_signature, [(op.operation_id, "userA")] * 6)

    assert len(results) == 1
    assert len(errors) == 5
    assert len(sqlite_engine.get_operation(op.operation_id).signatures) == 1


def test_concurrent_execute_dispatches_once(sqlite_engine, dispatcher):
    op = sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=2)
    sqlite_engine.add_signature(op.operation_id, "userA")
    sqlite_engine.add_signature(op.operation_id, "userB")

    with patch.object(dispatcher, "dispatch", wraps=dispatcher.dispatch) as dispatch:
        results, errors = run_concurrently(
            sqlite_engine.execute_operation,
            [(op.operation_id, f"executor-{i}") for i in range(8)],
        )

    assert len(results) == 1
    assert len(errors) == 7
    assert all(isinstance(e, InvalidStateTransition) for e in errors)
    assert dispatch.call_count == 1
    assert sqlite_engine.get_operation(op.operation_id).status == OperationStatus.EXECUTED


def test_execute_racing_sweeper_past_deadline_never_dispatches(sqlite_engine, dispatcher, clock):
    op = sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=2)
    sqlite_engine.add_signature(op.operation_id, "userA")
    sqlite_engine.add_signature(op.operation_id, "userB")
    clock.advance(hours=25)

    def execute_or_sweep(kind):
        if kind == "execute":
            return sqlite_engine.execute_operation(op.operation_id)
        return sqlite_engine.expire_old_operations()

    with patch.object(dispatcher, "dispatch", wraps=dispatcher.dispatch) as dispatch:
        results, errors = run_concurrently(execute_or_sweep, [("execute",), ("sweep",)] * 4)

    assert dispatch.call_count == 0
    assert all(isinstance(e, InvalidStateTransition) for e in errors)
    # Exactly one of the sweeps or execute calls moved it
    assert sum(r for r in results if isinstance(r, int)) <= 1
    assert sqlite_engine.get_operation(op.operation_id).status == OperationStatus.EXPIRED


def test_concurrent_sweeps_expire_each_record_once(sqlite_engine, clock, publisher):
    for _ in range(10):
        sqlite_engine.create_operation("EMERGENCY_FREEZE", FREEZE_DATA, "admin-0", required_signatures=2)
    clock.advance(hours=25)

    results, errors = run_concurrently(sqlite_engine.expire_old_operations, [()] * 4)

    assert errors == []
    assert sum(results) == 10
    assert len(published(publisher, "OperationExpired")) == 10


# Transfers

def test_approve_and_reject_race_decides_once(sqlite_workflow, dispatcher, publisher, directory):
    transfer = sqlite_workflow.create_transfer(ALICE, "V-1", "0xcarol", "partial", amount=40.0)

    def decide(kind, i):
        if kind == "approve":
            return sqlite_workflow.approve_transfer(transfer.transfer_id, ADMIN)
        return sqlite_workflow.reject_transfer(transfer.transfer_id, ISSUER, f"Reviewer {i} declined")

    with patch.object(dispatcher, "dispatch_transfer", wraps=dispatcher.dispatch_transfer) as dispatch:
        results, errors = run_concurrently(
            decide,
            [("approve", i) for i in range(4)] + [("reject", i) for i in range(4)],
        )

    assert len(results) == 1
    assert len(errors) == 7
    assert all(isinstance(e, InvalidStateTransition) for e in errors)
    assert len(published(publisher, "TransferApproved") + published(publisher, "TransferRejected")) == 1

    stored = sqlite_workflow.store.get(transfer.transfer_id)
    if stored.status == TransferStatus.COMPLETED:
        assert dispatch.call_count == 1
        assert directory.get_voucher("V-1").remaining_amount == 60.0
    else:
        assert stored.status == TransferStatus.REJECTED
        assert dispatch.call_count == 0
        assert directory.get_voucher("V-1").remaining_amount == 100.0


def test_decisions_racing_expiry_sweep_after_window(sqlite_workflow, dispatcher, publisher, clock):
    transfer = sqlite_workflow.create_transfer(ALICE, "V-1", "0xcarol", "partial", amount=40.0)
    clock.advance(hours=73)

    def decide(kind):
        if kind == "approve":
            return sqlite_workflow.approve_transfer(transfer.transfer_id, ADMIN)
        if kind == "reject":
            return sqlite_workflow.reject_transfer(transfer.transfer_id, ISSUER, "Too late")
        return sqlite_workflow.expire_stale_transfers()

    with patch.object(dispatcher, "dispatch_transfer", wraps=dispatcher.dispatch_transfer) as dispatch:
        results, errors = run_concurrently(decide, [("approve",), ("reject",), ("expire",)] * 3)

    assert dispatch.call_count == 0
    assert len(errors) == 6
    assert all(isinstance(e, InvalidStateTransition) for e in errors)
    assert sum(results) <= 1
    assert len(published(publisher, "TransferRejected")) == 1

    stored = sqlite_workflow.store.get(transfer.transfer_id)
    assert stored.status == TransferStatus.REJECTED
    assert stored.rejected_by == "system"
    assert stored.rejection_reason == EXPIRED_REASON


def test_competing_approved_transfers_submit_once(sqlite_workflow, dispatcher, directory):
    first = sqlite_workflow.create_transfer(ALICE, "V-1", "0xcarol", "partial", amount=100.0)
    second = sqlite_workflow.create_transfer(ALICE, "V-1", "0xdave", "partial", amount=100.0)

    with patch.object(dispatcher.ledger, "submit", wraps=dispatcher.ledger.submit) as submit:
        results, errors = run_concurrently(
            sqlite_workflow.approve_transfer,
            [(first.transfer_id, ADMIN), (second.transfer_id, ISSUER)],
        )

    assert errors == []
    assert submit.call_count == 1
    assert sorted(r.status.value for r in results) == ["completed", "failed"]
    assert directory.get_voucher("V-1").remaining_amount == 0
