import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from services.cart.app import schema
from services.cart.app.db import StorageGateway

# users: 1 = alice, 2 = bob
# products: commune 1 -> 101, 103 / commune 2 -> 102
PRODUCTS = [
    {"product_id": 101, "product_name": "Honey", "price": 10, "commune_id": 1},
    {"product_id": 102, "product_name": "Bread", "price": 5, "commune_id": 2},
    {"product_id": 103, "product_name": "Cheese", "price": 7.5, "commune_id": 1},
]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cart.db'}")
    await schema.create_all(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def gateway(engine):
    gateway = StorageGateway(engine)
    await gateway.execute(
        text("INSERT INTO users (user_id, username) VALUES (:user_id, :username)"),
        [{"user_id": 1, "username": "alice"}, {"user_id": 2, "username": "bob"}],
    )
    await gateway.execute(
        text("""
            INSERT INTO products
                (product_id, product_name, description, price, product_image, commune_id)
            VALUES
                (:product_id, :product_name, 'local goods', :price, '/img.png', :commune_id)
        """),
        PRODUCTS,
    )
    return gateway


class FakeRedis:
    """publish() の呼び出しを記録するだけの Redis 代替"""

    def __init__(self, error: Exception | None = None):
        self.published: list[tuple[str, str]] = []
        self.error = error

    async def publish(self, channel: str, message: str) -> int:
        if self.error is not None:
            raise self.error
        self.published.append((channel, message))
        return 1


class UntouchableGateway:
    """どのメソッドに触れてもテストを失敗させるゲートウェイ"""

    def __getattr__(self, name):
        raise AssertionError(f"storage was accessed: {name}")


@pytest.fixture
def fake_redis():
    return FakeRedis()


async def count_rows(gateway: StorageGateway, table: str, **where) -> int:
    clause = " AND ".join(f"{col} = :{col}" for col in where) or "1 = 1"
    rows = await gateway.query(
        text(f"SELECT COUNT(*) AS n FROM {table} WHERE {clause}"), where
    )
    return rows[0].n
