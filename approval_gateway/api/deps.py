import threading
from dataclasses import dataclass
from fastapi import Depends, Header, HTTPException, Request
from ..core.config import settings
from ..models.actor import Actor, Role
from ..services.approval_engine import ApprovalEngine, create_approval_engine
from ..services.events.event_publisher import EventPublisher, create_event_publisher
from ..services.execution_dispatcher import ExecutionDispatcher
from ..services.expiry_sweeper import ExpirySweeper
from ..services.ledger import HttpLedgerClient, create_ledger_client
from ..services.permissions import can_manage_operations, ensure
from ..services.storage import (
    InMemoryOperationStore,
    InMemoryTransferStore,
    InMemoryVoucherDirectory,
    SQLiteOperationStore,
    SQLiteTransferStore,
    SQLiteVoucherDirectory,
    VoucherDirectoryBase,
)
from ..services.transfer_workflow import TransferWorkflow, create_transfer_workflow


@dataclass
class ServiceContainer:
    """Everything the routes need, built once per process"""
    engine: ApprovalEngine
    transfers: TransferWorkflow
    sweeper: ExpirySweeper
    directory: VoucherDirectoryBase
    publisher: EventPublisher


def build_services(
    database_path: str | None = None,
    in_memory: bool = False,
    clock=None,
    ledger: HttpLedgerClient | None = None,
    publisher: EventPublisher | None = None,
) -> ServiceContainer:
    """
    Wire stores, collaborators and services together.

    in_memory=True uses the in-memory stores (tests, demos); otherwise all
    three SQLite stores share database_path (default DATABASE_PATH).
    """
    if in_memory:
        operation_store = InMemoryOperationStore()
        transfer_store = InMemoryTransferStore()
        directory = InMemoryVoucherDirectory()
    else:
        path = database_path or settings.database_path
        operation_store = SQLiteOperationStore(path)
        transfer_store = SQLiteTransferStore(path)
        directory = SQLiteVoucherDirectory(path)

    ledger = ledger or create_ledger_client()
    publisher = publisher or create_event_publisher(
        settings.service_bus_connection_string, settings.service_bus_queue
    )
    dispatcher = ExecutionDispatcher(ledger, directory)

    engine = create_approval_engine(operation_store, dispatcher, publisher=publisher, clock=clock)
    transfers = create_transfer_workflow(transfer_store, directory, dispatcher, publisher=publisher, clock=clock)
    sweeper = ExpirySweeper(engine, transfers, interval_seconds=settings.expiry_sweep_interval_seconds)

    return ServiceContainer(
        engine=engine,
        transfers=transfers,
        sweeper=sweeper,
        directory=directory,
        publisher=publisher,
    )


_build_lock = threading.Lock()


def get_services(request: Request) -> ServiceContainer:
    state = request.app.state
    if state.services is None:
        with _build_lock:
            if state.services is None:
                state.services = build_services()
    return state.services


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_merchant_id: str | None = Header(default=None),
    x_wallet_address: str | None = Header(default=None),
) -> Actor:
    """
    Resolve the acting identity from the headers set by the upstream
    identity provider. Missing or unknown identity is a 401.
    """
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")

    try:
        role = Role((x_actor_role or Role.USER.value).lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_actor_role}")

    return Actor(
        id=x_actor_id,
        role=role,
        merchant_id=x_merchant_id,
        wallet_address=x_wallet_address,
    )


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    ensure(can_manage_operations(actor), "Admin role required", actor)
    return actor
