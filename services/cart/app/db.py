"""
Cart Service - ストレージゲートウェイ

パラメータ付き SQL の実行とトランザクション境界をひとつにまとめる。
Cart Store・注文リーダー・注文確定ワークフローはこのゲートウェイを
引数で受け取り、コネクションプールをグローバルに参照しない。

transaction() はスコープ付きリソース:
  - 例外 (タスクのキャンセルを含む) で抜けたら必ずロールバック
  - どの経路で抜けてもセッション (コネクション) を必ず返却
"""

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Result, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.sql import Executable

from .errors import StorageFault

logger = logging.getLogger(__name__)

Params = Mapping[str, Any] | Sequence[Mapping[str, Any]] | None


class Transaction:
    """1 リクエストが専有するトランザクションハンドル。"""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def query(self, stmt: Executable, params: Params = None) -> list[Row]:
        """行を返す文 (SELECT / RETURNING 付き INSERT) を実行する。"""
        result = await self._run(stmt, params)
        return list(result.fetchall())

    async def execute(self, stmt: Executable, params: Params = None) -> int:
        """INSERT / UPDATE / DELETE を実行し、影響行数を返す。

        params に dict のリストを渡すと executemany でまとめて実行する。
        """
        result = await self._run(stmt, params)
        return result.rowcount

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            logger.error("Commit failed: %s", type(exc).__name__, exc_info=exc)
            raise StorageFault() from exc

    async def rollback(self) -> None:
        try:
            await self._session.rollback()
        except SQLAlchemyError as exc:
            logger.error("Rollback failed: %s", type(exc).__name__, exc_info=exc)
            raise StorageFault() from exc

    async def _run(self, stmt: Executable, params: Params) -> Result:
        try:
            return await self._session.execute(stmt, params)
        except SQLAlchemyError as exc:
            logger.error("Statement failed: %s", type(exc).__name__, exc_info=exc)
            raise StorageFault() from exc


class StorageGateway:
    """AsyncEngine の上に載るゲートウェイ。"""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        トランザクションを開き、ブロックを抜けるときに確定する。

        ブロック内で例外が出た場合はロールバックして再送出する。
        asyncio.CancelledError も同じ扱い (BaseException で受ける)。
        """
        async with self._session_factory() as session:
            tx = Transaction(session)
            try:
                yield tx
                if session.in_transaction():
                    await tx.commit()
            except BaseException:
                try:
                    await tx.rollback()
                except StorageFault:
                    # ロールバック失敗はログ済み。元の例外 (キャンセル含む) を優先して送出する
                    pass
                raise

    async def query(self, stmt: Executable, params: Params = None) -> list[Row]:
        async with self.transaction() as tx:
            return await tx.query(stmt, params)

    async def execute(self, stmt: Executable, params: Params = None) -> int:
        async with self.transaction() as tx:
            return await tx.execute(stmt, params)

    async def ping(self) -> None:
        """DB への疎通確認 (起動時に使う)。"""
        await self.query(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()
