"""
Order Service: SQL 注文ストア

1 つのテーブルにすべての注文を JSON ドキュメントとして保持する。
キーは (pk = "ORDER", sk = 注文 id)。ユーザー別検索のため ``owner_id`` に
インデックスを張り、条件付き更新のため ``status`` を列にも複製する:

    UPDATE orders SET ... WHERE pk = :pk AND sk = :sk AND status = :read_status

読んでから書くまでに別の呼び出しが注文を変えていれば、UPDATE は
どの行にも当たらず ``ConcurrentUpdateError`` になる。
"""

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..errors import ConcurrentUpdateError, NotFoundError, StorageWriteError
from ..models import Order, OrderStatus
from .base import ENTITY_TYPE, OrderStore, decode_record, decode_records


class SqlOrderStore(OrderStore):
    backend_errors = (SQLAlchemyError,)

    def __init__(self, engine: AsyncEngine, timeout: float = 5.0, table: str = "orders") -> None:
        super().__init__(timeout)
        if not table.isidentifier():
            raise ValueError(f"invalid table name: {table!r}")
        self.engine = engine
        self.table = table
        self.async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, timeout: float = 5.0) -> "SqlOrderStore":
        return cls(create_async_engine(database_url, echo=False), timeout)

    async def setup(self) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        pk       VARCHAR(16)  NOT NULL,
                        sk       VARCHAR(64)  NOT NULL,
                        owner_id VARCHAR(255) NOT NULL,
                        status   VARCHAR(32),
                        payload  TEXT         NOT NULL,
                        PRIMARY KEY (pk, sk)
                    )
                """)
            )
            await conn.execute(
                text(f"CREATE INDEX IF NOT EXISTS ix_{self.table}_owner ON {self.table} (pk, owner_id)")
            )

    async def close(self) -> None:
        await self.engine.dispose()

    async def _create(self, order: Order) -> Order:
        async with self.async_session() as session:
            try:
                await session.execute(
                    text(f"""
                        INSERT INTO {self.table} (pk, sk, owner_id, status, payload)
                        VALUES (:pk, :sk, :owner_id, :status, :payload)
                    """),
                    {
                        "pk": ENTITY_TYPE,
                        "sk": order.order_id,
                        "owner_id": order.user_id,
                        "status": order.status.value,
                        "payload": order.to_json(),
                    },
                )
                await session.commit()
            except IntegrityError as e:
                raise StorageWriteError(f"order {order.order_id} already exists") from e
        return order

    async def _get(self, order_id: str) -> Order:
        async with self.async_session() as session:
            return await self._read(session, order_id)

    async def _read(self, session: AsyncSession, order_id: str) -> Order:
        result = await session.execute(
            text(f"SELECT payload FROM {self.table} WHERE pk = :pk AND sk = :sk"),
            {"pk": ENTITY_TYPE, "sk": order_id},
        )
        row = result.fetchone()
        if not row:
            raise NotFoundError(f"order {order_id} not found")
        return decode_record(order_id, row.payload)

    async def _get_all(self) -> list[Order]:
        async with self.async_session() as session:
            result = await session.execute(
                text(f"SELECT payload FROM {self.table} WHERE pk = :pk ORDER BY sk"),
                {"pk": ENTITY_TYPE},
            )
            return decode_records(row.payload for row in result.fetchall())

    async def _get_by_user(self, user_id: str) -> list[Order]:
        async with self.async_session() as session:
            result = await session.execute(
                text(f"""
                    SELECT payload FROM {self.table}
                    WHERE pk = :pk AND owner_id = :owner_id
                    ORDER BY sk
                """),
                {"pk": ENTITY_TYPE, "owner_id": user_id},
            )
            return decode_records(row.payload for row in result.fetchall())

    async def _update_status(
        self,
        order_number: str,
        new_status: OrderStatus,
        expected_status: OrderStatus | None,
        message: str | None,
    ) -> Order:
        async with self.async_session() as session:
            current = await self._read(session, order_number)
            self._check_expected(current, expected_status)
            updated = self._with_status(current, new_status, message)

            result = await session.execute(
                text(f"""
                    UPDATE {self.table}
                    SET status = :status, payload = :payload
                    WHERE pk = :pk AND sk = :sk AND status = :read_status
                """),
                {
                    "status": updated.status.value,
                    "payload": updated.to_json(),
                    "pk": ENTITY_TYPE,
                    "sk": order_number,
                    "read_status": current.status.value,
                },
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrentUpdateError(
                    f"order {order_number} changed while updating to {new_status.value}"
                )
            await session.commit()
        return updated

    # ── テスト・投入用 ───────────────────────────

    async def put_raw(self, order_id: str, owner_id: str, payload: str) -> None:
        """検証を通さずに行を書き込む（旧データや壊れたデータの再現用）。"""
        async with self.async_session() as session:
            await session.execute(
                text(f"""
                    INSERT INTO {self.table} (pk, sk, owner_id, status, payload)
                    VALUES (:pk, :sk, :owner_id, NULL, :payload)
                """),
                {"pk": ENTITY_TYPE, "sk": order_id, "owner_id": owner_id, "payload": payload},
            )
            await session.commit()
