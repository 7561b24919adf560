from doccms.persistence.adapter import DocumentAdapter, Savepoint, Transaction
from doccms.persistence.config import DatabaseConfig, create_adapter
from doccms.persistence.memory import MemoryAdapter

__all__ = [
    "DatabaseConfig",
    "DocumentAdapter",
    "MemoryAdapter",
    "Savepoint",
    "Transaction",
    "create_adapter",
]
