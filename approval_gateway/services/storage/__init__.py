from .store_base import OperationStoreBase, TransferStoreBase
from .memory import InMemoryOperationStore, InMemoryTransferStore
from .operations_sqlite import SQLiteOperationStore
from .transfers_sqlite import SQLiteTransferStore
from .vouchers import VoucherDirectoryBase, InMemoryVoucherDirectory
from .vouchers_sqlite import SQLiteVoucherDirectory

__all__ = [
    "OperationStoreBase",
    "TransferStoreBase",
    "InMemoryOperationStore",
    "InMemoryTransferStore",
    "SQLiteOperationStore",
    "SQLiteTransferStore",
    "VoucherDirectoryBase",
    "InMemoryVoucherDirectory",
    "SQLiteVoucherDirectory",
]
