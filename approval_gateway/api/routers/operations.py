"""
Multi-signature operation endpoints (admin only).

Routes are plain `def` so FastAPI runs them in its threadpool: the engine
does blocking SQLite I/O and ledger calls.
"""

from fastapi import APIRouter, Depends, Query, status
from ..deps import ServiceContainer, get_services, require_admin
from ...models.actor import Actor
from ...models.operation import CreateOperationRequest, RejectRequest, SignRequest

router = APIRouter(prefix="/operations", tags=["operations"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_operation(
    req: CreateOperationRequest,
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """
    Create a pending operation awaiting signatures.

    Example request:
    {
        "operation_type": "CHANGE_MERCHANT_STATUS",
        "operation_data": {"merchant_id": "M-1", "status": "suspended"},
        "required_signatures": 3,
        "priority": "high"
    }
    """
    return services.engine.create_operation(
        req.operation_type,
        req.operation_data,
        initiated_by=actor.id,
        required_signatures=req.required_signatures,
        expires_at=req.expires_at,
        priority=req.priority,
        notes=req.notes,
    )


@router.get("/pending")
def list_pending_operations(
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Pending operations still open for signing, highest priority first"""
    operations = services.engine.get_pending_operations()
    return {"operations": operations, "count": len(operations)}


@router.get("")
def list_operations(
    status: str | None = None,
    operation_type: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    operations = services.engine.list_operations(status=status, operation_type=operation_type, limit=limit)
    return {"operations": operations, "count": len(operations)}


@router.get("/user/{user_id}/history")
def signature_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Operations the user has signed, newest first"""
    operations = services.engine.get_signature_history(user_id, limit=limit)
    return {"user_id": user_id, "operations": operations, "count": len(operations)}


@router.get("/{operation_id}")
def get_operation(
    operation_id: str,
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return services.engine.get_operation(operation_id)


@router.post("/{operation_id}/sign")
def sign_operation(
    operation_id: str,
    req: SignRequest | None = None,
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return services.engine.add_signature(operation_id, actor.id, comment=req.comment if req else None)


@router.post("/{operation_id}/reject")
def reject_operation(
    operation_id: str,
    req: RejectRequest,
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return services.engine.reject_operation(operation_id, actor.id, req.reason)


@router.post("/{operation_id}/execute")
def execute_operation(
    operation_id: str,
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """
    Execute an approved operation. A ledger failure marks the operation
    failed and is returned as 502 with `retryable` set.
    """
    result = services.engine.execute_operation(operation_id, executed_by=actor.id)
    return {"operation_id": operation_id, "result": result}
