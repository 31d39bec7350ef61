"""
Pytest configuration and shared fixtures.

This file registers custom pytest markers and command-line options, and
builds the engine/workflow against in-memory stores, a frozen clock and a
ledger client in disabled (simulated) mode.
"""

import os
import tempfile
from datetime import datetime, UTC
import pytest
from approval_gateway.core.clock import FrozenClock
from approval_gateway.models.voucher import Merchant, Voucher
from approval_gateway.services.approval_engine import ApprovalEngine, MultiSigConfig
from approval_gateway.services.execution_dispatcher import ExecutionDispatcher
from approval_gateway.services.ledger import HttpLedgerClient
from approval_gateway.services.storage import (
    InMemoryOperationStore,
    InMemoryTransferStore,
    InMemoryVoucherDirectory,
)
from approval_gateway.services.transfer_workflow import TransferWorkflow


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real Azure resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real Azure resources"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


START = datetime(2026, 1, 15, 9, 0, tzinfo=UTC)


@pytest.fixture
def db_path():
    """Create a temporary database file for testing"""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    # Cleanup (WAL mode leaves -wal/-shm side files)
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.remove(path + suffix)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def directory():
    """Two merchants; M-1 issued V-1 (owned by 0xalice) and V-2 (owned by 0xbob)"""
    directory = InMemoryVoucherDirectory()
    directory.add_merchant(Merchant(merchant_id="M-1", name="Harbour Cafe"))
    directory.add_merchant(Merchant(merchant_id="M-2", name="Corner Books"))
    directory.add_voucher(Voucher(
        voucher_id="V-1",
        merchant_id="M-1",
        owner_address="0xalice",
        face_value=100.0,
        remaining_amount=100.0,
    ))
    directory.add_voucher(Voucher(
        voucher_id="V-2",
        merchant_id="M-1",
        owner_address="0xbob",
        face_value=40.0,
        remaining_amount=40.0,
    ))
    return directory


@pytest.fixture
def ledger():
    """Ledger client with no URL configured: submissions are simulated"""
    return HttpLedgerClient(base_url=None)


@pytest.fixture
def dispatcher(ledger, directory):
    return ExecutionDispatcher(ledger, directory)


@pytest.fixture
def operation_store():
    return InMemoryOperationStore()


@pytest.fixture
def engine(operation_store, dispatcher, clock):
    return ApprovalEngine(operation_store, dispatcher, clock=clock, config=MultiSigConfig())


@pytest.fixture
def transfer_store():
    return InMemoryTransferStore()


@pytest.fixture
def workflow(transfer_store, directory, dispatcher, clock):
    return TransferWorkflow(transfer_store, directory, dispatcher, clock=clock)
