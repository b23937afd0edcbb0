"""トランザクション管理モジュール"""

from pg_deprecation_manager.transactions.manager import (
    TransactionContext,
    TransactionError,
    TransactionManager,
    TransactionRollbackError,
    TransactionState,
)

__all__ = [
    "TransactionContext",
    "TransactionError",
    "TransactionManager",
    "TransactionRollbackError",
    "TransactionState",
]
