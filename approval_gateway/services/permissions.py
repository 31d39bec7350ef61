"""
Authorization rules for state-changing workflow calls.

Pure predicates over (actor, resource): no storage access, no side effects.
Callers look up whatever resource the rule needs (e.g. the voucher behind a
transfer) and pass it in, then call ``ensure`` to turn a deny into
PermissionDenied.
"""

from typing import Optional
from loguru import logger
from ..core.errors import PermissionDenied
from ..models.actor import Actor
from ..models.transfer import Transfer
from ..models.voucher import Voucher


def can_manage_operations(actor: Actor) -> bool:
    """Create/sign/reject/execute multi-signature operations: admins only"""
    return actor.is_admin


def can_decide_transfer(actor: Actor, voucher: Optional[Voucher]) -> bool:
    """
    Approve/reject a transfer: admins always; otherwise only the merchant
    that issued the voucher. An unknown voucher denies non-admins.
    """
    if actor.is_admin:
        return True
    if voucher is None or actor.merchant_id is None:
        return False
    return voucher.merchant_id == actor.merchant_id


def can_view_transfer(actor: Actor, transfer: Transfer) -> bool:
    """Admins, or either party to the transfer"""
    if actor.is_admin:
        return True
    return actor.wallet_address is not None and actor.wallet_address in (
        transfer.from_address,
        transfer.to_address,
    )


def ensure(allowed: bool, message: str, actor: Actor | None = None) -> None:
    """Raise PermissionDenied when a predicate denied the call"""
    if allowed:
        return
    logger.warning("Permission denied", actor_id=actor.id if actor else None, reason=message)
    raise PermissionDenied(message)
