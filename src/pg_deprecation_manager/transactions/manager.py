"""トランザクション管理の実装"""

import asyncio
import itertools
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pg_deprecation_manager.exceptions import DeprecationManagerError, OperationTimeoutError

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """トランザクションの状態"""
    PENDING = "pending"
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class TransactionError(DeprecationManagerError):
    """トランザクション関連のエラー"""


class TransactionRollbackError(TransactionError):
    """ロールバック時のエラー"""


class TransactionContext:
    """単一のPostgreSQLトランザクションのコンテキスト

    DDLはすべてこのコンテキスト経由で実行され、コミットされるまで
    外部からは観測できない。
    """

    def __init__(
        self,
        manager: "TransactionManager",
        transaction_id: str,
        timeout: float | None = None
    ):
        self.manager = manager
        self.transaction_id = transaction_id
        self.timeout = timeout
        self.state = TransactionState.PENDING
        self._tx = None
        self._start_time: datetime | None = None
        self._end_time: datetime | None = None
        self._operations: list[dict[str, Any]] = []
        self._savepoints = itertools.count(1)

    @property
    def operations(self) -> list[dict[str, Any]]:
        """実行済み操作のログ"""
        return list(self._operations)

    @property
    def statements(self) -> list[str]:
        """このトランザクションで実行したSQL文"""
        return [op["details"]["query"] for op in self._operations if op["action"] == "execute"]

    async def begin(self) -> None:
        """トランザクションを開始"""
        if self.state != TransactionState.PENDING:
            raise TransactionError(f"Cannot begin transaction in state {self.state}")

        self._tx = await self.manager.connection.begin_transaction()
        self._start_time = datetime.now(UTC)
        self.state = TransactionState.ACTIVE
        self._log_operation("begin", {})

    async def commit(self) -> None:
        """トランザクションをコミット"""
        if self.state != TransactionState.ACTIVE:
            raise TransactionError(f"Cannot commit transaction in state {self.state}")

        self.state = TransactionState.COMMITTING
        try:
            await self.manager.connection.commit_transaction(self._tx)
        except Exception as e:
            self.state = TransactionState.FAILED
            self._log_operation("commit_failed", {"error": str(e)})
            raise TransactionError(f"Failed to commit transaction: {e}") from e

        self.state = TransactionState.COMMITTED
        self._end_time = datetime.now(UTC)
        self._log_operation("commit", {"duration": self._get_duration()})

    async def rollback(self) -> None:
        """トランザクションをロールバック"""
        if self.state not in (TransactionState.ACTIVE, TransactionState.COMMITTING):
            raise TransactionError(f"Cannot rollback transaction in state {self.state}")

        self.state = TransactionState.ROLLING_BACK
        try:
            await self.manager.connection.rollback_transaction(self._tx)
        except Exception as e:
            self.state = TransactionState.FAILED
            self._log_operation("rollback_failed", {"error": str(e)})
            raise TransactionRollbackError(f"Rollback error: {e}") from e

        self.state = TransactionState.ROLLED_BACK
        self._end_time = datetime.now(UTC)
        self._log_operation("rollback", {"duration": self._get_duration()})

    async def execute(
        self, query: str, parameters: tuple | list | dict | None = None
    ) -> list[dict[str, Any]]:
        """トランザクション内でSQLを実行"""
        if self.state != TransactionState.ACTIVE:
            raise TransactionError(f"Cannot execute query in transaction state {self.state}")

        logger.debug("[%s] %s", self.transaction_id, query)
        self._log_operation("execute", {"query": query, "parameters": parameters})
        return await self.manager.connection.execute(query, parameters, transaction=self._tx)

    async def fetch_one(
        self, query: str, parameters: tuple | list | dict | None = None
    ) -> dict[str, Any] | None:
        """トランザクション内で1行を取得"""
        rows = await self.execute(query, parameters)
        return rows[0] if rows else None

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[str]:
        """セーブポイント

        ブロック内で例外が発生するとセーブポイントまで戻し、例外を再送出する。
        外側のトランザクションは継続可能な状態に保たれる。
        """
        name = f"sp_{next(self._savepoints)}"
        await self.execute(f"SAVEPOINT {name}")
        try:
            yield name
        except Exception:
            await self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        else:
            await self.execute(f"RELEASE SAVEPOINT {name}")

    def _log_operation(self, action: str, details: dict[str, Any]) -> None:
        """操作をログに記録"""
        operation = {
            "timestamp": datetime.now(UTC).isoformat(),
            "transaction_id": self.transaction_id,
            "action": action,
            "details": details
        }
        self._operations.append(operation)
        self.manager._record(operation)

    def _get_duration(self) -> float:
        """トランザクションの実行時間を取得"""
        if self._start_time and self._end_time:
            return (self._end_time - self._start_time).total_seconds()
        return 0.0


class TransactionManager:
    """トランザクションマネージャー"""

    def __init__(
        self,
        connection,
        default_timeout: float | None = None,
        log_limit: int = 1000,
    ):
        self.connection = connection
        self.default_timeout = default_timeout
        self._log_limit = log_limit
        self._active_transactions: dict[str, TransactionContext] = {}
        self._transaction_logs: list[dict[str, Any]] = []

    @property
    def active_count(self) -> int:
        return len(self._active_transactions)

    @asynccontextmanager
    async def transaction(self, timeout: float | None = None) -> AsyncIterator[TransactionContext]:
        """トランザクションコンテキストマネージャー

        正常終了でコミット、例外でロールバックする。タイムアウトを超えると
        ロールバックした上で ``OperationTimeoutError`` を送出する。
        """
        transaction_id = str(uuid.uuid4())
        ctx = TransactionContext(
            manager=self,
            transaction_id=transaction_id,
            timeout=timeout or self.default_timeout
        )
        self._active_transactions[transaction_id] = ctx

        try:
            await ctx.begin()

            if ctx.timeout:
                try:
                    async with asyncio.timeout(ctx.timeout):
                        yield ctx
                except TimeoutError as e:
                    raise OperationTimeoutError(
                        f"Transaction {transaction_id} exceeded {ctx.timeout}s"
                    ) from e
            else:
                yield ctx

            # 正常終了時、まだコミットされていなければコミット
            if ctx.state == TransactionState.ACTIVE:
                await ctx.commit()

        except (Exception, asyncio.CancelledError) as original_error:
            # エラー発生時、まだロールバックされていなければロールバック
            if ctx.state in (TransactionState.ACTIVE, TransactionState.COMMITTING):
                try:
                    await ctx.rollback()
                except TransactionRollbackError:
                    logger.error("Failed to rollback transaction %s", transaction_id)
                    raise
            elif ctx.state == TransactionState.FAILED:
                logger.error(
                    "Transaction %s failed: %s", transaction_id, original_error
                )
            raise
        finally:
            del self._active_transactions[transaction_id]

    def get_transaction_logs(self, transaction_id: str | None = None) -> list[dict[str, Any]]:
        """トランザクションログを取得"""
        if transaction_id:
            return [
                log for log in self._transaction_logs
                if log["transaction_id"] == transaction_id
            ]
        return self._transaction_logs.copy()

    def _record(self, log_entry: dict[str, Any]) -> None:
        self._transaction_logs.append(log_entry)
        if len(self._transaction_logs) > self._log_limit:
            del self._transaction_logs[: len(self._transaction_logs) - self._log_limit]
