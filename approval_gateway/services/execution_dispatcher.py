"""
Translates an approved operation (or transfer) into its concrete effect.

Every OperationType has exactly one handler; the mapping is checked for
completeness when the dispatcher is built, so adding an enum member without
a handler fails at startup rather than at execution time.

Handlers validate their payload shape and check the directory first (a
malformed payload or an unknown target is a fatal LedgerError raised before
anything reaches the ledger), submit to the ledger, then apply the
off-ledger side to the voucher/merchant directory.
"""

from typing import Any, Callable, Optional
from loguru import logger
from pydantic import BaseModel, Field, ValidationError as PayloadValidationError
from ..core.errors import LedgerError
from ..models.operation import Operation, OperationType, ExecutionResult
from ..models.transfer import Transfer
from ..models.voucher import MerchantStatus, VoucherStatus
from .ledger import HttpLedgerClient
from .storage.vouchers import VoucherDirectoryBase


class CreateVoucherBatchPayload(BaseModel):
    merchant_id: str
    count: int = Field(gt=0, le=10000)
    face_value: float = Field(gt=0)
    recipients: list[str] = []


class ModifyCriticalSettingsPayload(BaseModel):
    settings: dict[str, Any] = Field(min_length=1)


class DeleteMultipleVouchersPayload(BaseModel):
    voucher_ids: list[str] = Field(min_length=1)
    reason: Optional[str] = None


class ChangeMerchantStatusPayload(BaseModel):
    merchant_id: str
    status: MerchantStatus


class BulkTransferItem(BaseModel):
    voucher_id: str
    to_address: str


class BulkTransferPayload(BaseModel):
    transfers: list[BulkTransferItem] = Field(min_length=1)


class EmergencyFreezePayload(BaseModel):
    reason: str
    voucher_ids: list[str] = []
    merchant_id: Optional[str] = None  # freeze every voucher the merchant issued


class SystemMaintenancePayload(BaseModel):
    action: str
    window_minutes: Optional[int] = Field(default=None, gt=0)


class SecurityUpdatePayload(BaseModel):
    description: str
    patch_reference: Optional[str] = None


class ExecutionDispatcher:
    """
    Stateless executor: holds only its collaborators.
    """

    def __init__(self, ledger: HttpLedgerClient, directory: VoucherDirectoryBase):
        self.ledger = ledger
        self.directory = directory

        self._handlers: dict[OperationType, Callable[[Operation], ExecutionResult]] = {
            OperationType.CREATE_VOUCHER_BATCH: self._create_voucher_batch,
            OperationType.MODIFY_CRITICAL_SETTINGS: self._modify_critical_settings,
            OperationType.DELETE_MULTIPLE_VOUCHERS: self._delete_multiple_vouchers,
            OperationType.CHANGE_MERCHANT_STATUS: self._change_merchant_status,
            OperationType.BULK_TRANSFER: self._bulk_transfer,
            OperationType.EMERGENCY_FREEZE: self._emergency_freeze,
            OperationType.SYSTEM_MAINTENANCE: self._system_maintenance,
            OperationType.SECURITY_UPDATE: self._security_update,
        }

        missing = set(OperationType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No execution handler for operation types: {sorted(m.value for m in missing)}")

    def dispatch(self, operation: Operation) -> ExecutionResult:
        """
        Perform the effect of an approved operation.

        Raises:
            LedgerError: on any failure; unexpected errors are wrapped as fatal
        """
        handler = self._handlers[operation.operation_type]
        logger.info(
            "Dispatching operation",
            operation_id=operation.operation_id,
            operation_type=operation.operation_type.value,
        )
        try:
            return handler(operation)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"Execution of {operation.operation_type.value} failed: {e}", retryable=False) from e

    def dispatch_transfer(self, transfer: Transfer) -> ExecutionResult:
        """
        Reserve the voucher in the directory, then submit the transfer to the ledger.

        The reservation is a conditional write (owner unchanged for full
        transfers, enough balance for partial ones), so of two transfers
        competing for the same balance only one ever reaches the ledger. A
        failed submission releases the reservation.

        Raises:
            LedgerError: voucher no longer qualifies (nothing submitted), or
                the submission failed; unexpected errors are wrapped as fatal
        """
        logger.info("Dispatching transfer", transfer_id=transfer.transfer_id, voucher_id=transfer.voucher_id)
        try:
            reserved = self.directory.apply_transfer(transfer)
        except Exception as e:
            raise LedgerError(f"Directory update failed for transfer {transfer.transfer_id}: {e}") from e
        if not reserved:
            raise LedgerError(
                f"Voucher {transfer.voucher_id} no longer matches transfer {transfer.transfer_id} "
                "(owner changed, insufficient balance or not transferable)",
                retryable=False,
            )

        try:
            receipt = self.ledger.submit({
                "action": "transfer_voucher",
                "reference_id": transfer.transfer_id,
                "data": {
                    "voucher_id": transfer.voucher_id,
                    "from_address": transfer.from_address,
                    "to_address": transfer.to_address,
                    "transfer_type": transfer.transfer_type.value,
                    "amount": transfer.amount,
                },
            })
        except LedgerError:
            self._release(transfer)
            raise
        except Exception as e:
            self._release(transfer)
            raise LedgerError(f"Submission of transfer {transfer.transfer_id} failed: {e}", retryable=False) from e

        return ExecutionResult(success=True, reference=receipt["reference"], outcome=receipt["outcome"])

    def _release(self, transfer: Transfer) -> None:
        # The submission error is what the caller needs; a failed release only gets logged
        try:
            released = self.directory.revert_transfer(transfer)
        except Exception as e:
            logger.critical(
                "Could not release voucher reservation, directory needs manual correction",
                transfer_id=transfer.transfer_id,
                voucher_id=transfer.voucher_id,
                error=str(e),
            )
            return
        if not released:
            logger.critical(
                "Voucher changed while reserved, directory needs manual correction",
                transfer_id=transfer.transfer_id,
                voucher_id=transfer.voucher_id,
            )

    @staticmethod
    def _parse(model: type[BaseModel], operation: Operation):
        try:
            return model.model_validate(operation.operation_data)
        except PayloadValidationError as e:
            raise LedgerError(
                f"Malformed {operation.operation_type.value} payload: {e.errors(include_url=False)}",
                retryable=False,
            ) from e

    def _submit(self, action: str, operation: Operation, payload: BaseModel) -> dict:
        return self.ledger.submit({
            "action": action,
            "reference_id": operation.operation_id,
            "data": payload.model_dump(mode="json"),
        })

    @staticmethod
    def _result(receipt: dict, **data) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            reference=receipt["reference"],
            outcome=receipt["outcome"],
            data=data,
        )

    # Handlers

    def _create_voucher_batch(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(CreateVoucherBatchPayload, operation)
        if self.directory.get_merchant(payload.merchant_id) is None:
            raise LedgerError(f"Unknown merchant {payload.merchant_id}", retryable=False)
        receipt = self._submit("mint_voucher_batch", operation, payload)
        return self._result(receipt, merchant_id=payload.merchant_id, count=payload.count)

    def _modify_critical_settings(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(ModifyCriticalSettingsPayload, operation)
        receipt = self._submit("update_system_config", operation, payload)
        return self._result(receipt, keys=sorted(payload.settings))

    def _delete_multiple_vouchers(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(DeleteMultipleVouchersPayload, operation)
        # Only vouchers the directory knows are sent to the ledger
        known = [vid for vid in payload.voucher_ids if self.directory.get_voucher(vid) is not None]
        if not known:
            raise LedgerError(f"None of the vouchers {payload.voucher_ids} exist", retryable=False)
        payload = payload.model_copy(update={"voucher_ids": known})

        receipt = self._submit("cancel_vouchers", operation, payload)
        # Vouchers are cancelled, never physically removed
        cancelled = self.directory.set_voucher_status(known, VoucherStatus.CANCELLED)
        return self._result(receipt, cancelled=cancelled)

    def _change_merchant_status(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(ChangeMerchantStatusPayload, operation)
        if self.directory.get_merchant(payload.merchant_id) is None:
            raise LedgerError(f"Unknown merchant {payload.merchant_id}", retryable=False)
        receipt = self._submit("set_merchant_status", operation, payload)
        self.directory.set_merchant_status(payload.merchant_id, payload.status)
        return self._result(receipt, merchant_id=payload.merchant_id, status=payload.status.value)

    def _bulk_transfer(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(BulkTransferPayload, operation)
        receipt = self._submit("bulk_transfer", operation, payload)
        return self._result(receipt, transfers=len(payload.transfers))

    def _emergency_freeze(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(EmergencyFreezePayload, operation)
        voucher_ids = list(payload.voucher_ids)
        if payload.merchant_id:
            voucher_ids.extend(self.directory.voucher_ids_for_merchant(payload.merchant_id))
        receipt = self._submit("emergency_freeze", operation, payload)
        frozen = self.directory.set_voucher_status(sorted(set(voucher_ids)), VoucherStatus.FROZEN)
        scope = "targeted" if voucher_ids else "global"
        return self._result(receipt, frozen=frozen, scope=scope)

    def _system_maintenance(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(SystemMaintenancePayload, operation)
        receipt = self._submit("system_maintenance", operation, payload)
        return self._result(receipt, action=payload.action)

    def _security_update(self, operation: Operation) -> ExecutionResult:
        payload = self._parse(SecurityUpdatePayload, operation)
        receipt = self._submit("security_update", operation, payload)
        return self._result(receipt, patch_reference=payload.patch_reference)
