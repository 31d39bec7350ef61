from fastapi import APIRouter, Depends, Query, status
from ..deps import ServiceContainer, get_actor, get_services, require_admin
from ...models.actor import Actor
from ...models.transfer import ApproveTransferRequest, CreateTransferRequest, RejectTransferRequest

router = APIRouter(prefix="/transfers", tags=["transfers"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transfer(
    req: CreateTransferRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    """
    Request a voucher transfer from the caller's wallet.

    The response is `pending` when approval is required, otherwise the
    transfer has already been processed (`completed` or `failed`).
    """
    return services.transfers.create_transfer(
        actor,
        req.voucher_id,
        req.to_address,
        req.transfer_type,
        amount=req.amount,
        reason=req.reason,
    )


@router.get("")
def list_transfers(
    status: str | None = None,
    voucher_id: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    transfers = services.transfers.list_transfers(actor, status=status, voucher_id=voucher_id, limit=limit)
    return {"transfers": transfers, "count": len(transfers)}


@router.get("/pending/approvals")
def pending_approvals(
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    """Transfers waiting on a decision the caller may make"""
    transfers = services.transfers.get_pending_approvals(actor)
    return {"transfers": transfers, "count": len(transfers)}


@router.get("/analytics/stats")
def transfer_stats(
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return services.transfers.stats_summary()


@router.get("/voucher/{voucher_id}/history")
def transfer_history(
    voucher_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    transfers = services.transfers.get_transfer_history(voucher_id)
    return {"voucher_id": voucher_id, "transfers": transfers, "count": len(transfers)}


@router.get("/{transfer_id}")
def get_transfer(
    transfer_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    return services.transfers.get_transfer(transfer_id, actor)


@router.post("/{transfer_id}/approve")
def approve_transfer(
    transfer_id: str,
    req: ApproveTransferRequest | None = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    return services.transfers.approve_transfer(transfer_id, actor, comment=req.comment if req else None)


@router.post("/{transfer_id}/reject")
def reject_transfer(
    transfer_id: str,
    req: RejectTransferRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_services),
):
    return services.transfers.reject_transfer(transfer_id, actor, req.reason)
