"""
Cart Service - FastAPI エントリーポイント

カート操作 (Command) とカート・注文履歴の参照 (Query) のエンドポイントを公開する。
ストレージゲートウェイは create_app() に渡し、各ハンドラはそれを通して DB に触れる。
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import create_async_engine

from . import commands, queries, schema
from .db import StorageGateway
from .errors import (
    CartServiceError,
    InvalidInput,
    InvalidReference,
    NotFound,
)
from .models import CartLine

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
CREATE_SCHEMA = os.environ.get("CREATE_SCHEMA", "false").lower() in ("1", "true", "yes")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────

class AddToCartRequest(BaseModel):
    user_id: int
    product_id: int
    quantity: int = Field(ge=1)


class UpdateQuantityRequest(BaseModel):
    user_id: int
    product_id: int
    quantity: int = Field(ge=1)


class PlaceOrderRequest(BaseModel):
    user_id: int
    cart: list[CartLine] = Field(min_length=1)


class ErrorResponse(BaseModel):
    type: str
    message: str
    details: list[dict[str, Any]] | None = None


def _map_error_to_http(err: CartServiceError) -> tuple[int, ErrorResponse]:
    body = ErrorResponse(type=type(err).__name__, message=err.message)
    if isinstance(err, (InvalidInput, InvalidReference)):
        return 400, body
    if isinstance(err, NotFound):
        return 404, body
    # OrderPlacementFailed / StorageFault
    return 500, body


def create_app(
    gateway: StorageGateway,
    redis: aioredis.Redis | None = None,
    redis_url: str | None = None,
    create_schema: bool = False,
    owns_gateway: bool = False,
) -> FastAPI:
    """
    アプリを組み立てる。

    owns_gateway=True のときだけ、終了時にゲートウェイのエンジンを破棄する。
    呼び出し側が用意したゲートウェイは呼び出し側で後始末する。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await gateway.ping()
        except CartServiceError:
            logger.error("Database connection failed")
            raise
        logger.info("Database connected successfully")

        if create_schema:
            await schema.create_all(gateway.engine)

        own_redis = None
        if app.state.redis is None and redis_url:
            own_redis = aioredis.from_url(redis_url, decode_responses=True)
            app.state.redis = own_redis
        yield
        if own_redis is not None:
            await own_redis.aclose()
        if owns_gateway:
            await gateway.dispose()

    app = FastAPI(title="Cart Service", lifespan=lifespan)
    app.state.redis = redis

    # ── Exception Handlers ───────────────────────

    @app.exception_handler(CartServiceError)
    async def handle_cart_error(_: Request, exc: CartServiceError) -> JSONResponse:
        status, body = _map_error_to_http(exc)
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        _: Request, exc: RequestValidationError
    ) -> JSONResponse:
        body = ErrorResponse(
            type="InvalidInput",
            message="Invalid input data.",
            details=[{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()],
        )
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.exception_handler(Exception)
    async def handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error")
        body = ErrorResponse(type="InternalError", message="internal server error")
        return JSONResponse(status_code=500, content=body.model_dump())

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/api/cart/add")
    async def cmd_add_to_cart(req: AddToCartRequest):
        """カートに商品を追加 (既にあれば数量を加算)"""
        await commands.add_to_cart(gateway, req.user_id, req.product_id, req.quantity)
        return {"message": "Product added to cart successfully"}

    @app.put("/api/cart/update")
    async def cmd_update_quantity(req: UpdateQuantityRequest):
        """カート内の数量を上書き"""
        result = await commands.update_quantity(
            gateway, req.user_id, req.product_id, req.quantity
        )
        if not result["success"]:
            raise NotFound(result["reason"])
        return {"message": "Cart quantity updated."}

    @app.delete("/api/cart/remove/{user_id}/{product_id}")
    async def cmd_remove_product(user_id: int, product_id: int):
        result = await commands.remove_by_user_and_product(gateway, user_id, product_id)
        if not result["success"]:
            raise NotFound(result["reason"])
        return {"message": "Product removed from cart."}

    @app.delete("/api/cart/{cart_id}")
    async def cmd_remove_cart_item(cart_id: int):
        result = await commands.remove_cart_item(gateway, cart_id)
        if not result["success"]:
            raise NotFound(result["reason"])
        return {"message": "Cart item removed successfully"}

    @app.post("/api/cart/orders/create", status_code=201)
    async def cmd_place_order(req: PlaceOrderRequest):
        """チェックアウト (注文作成 + 明細作成 + カートクリアを 1 トランザクションで)"""
        result = await commands.place_order(
            gateway, req.user_id, req.cart, redis=app.state.redis
        )
        return {
            "message": "Order placed successfully!",
            "order_id": result["order_id"],
            "total_amount": float(result["total_amount"]),
        }

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/api/cart/orders/{user_id}/{commune_id}")
    async def query_orders(user_id: int, commune_id: int):
        """コミューンで絞り込んだ注文履歴"""
        return {"orders": await queries.get_orders(gateway, user_id, commune_id)}

    @app.get("/api/cart/{user_id}")
    async def query_cart(user_id: int, commune_id: int | None = None):
        return {"cart": await queries.get_cart(gateway, user_id, commune_id)}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "cart-service"}

    return app


engine = create_async_engine(DATABASE_URL, echo=False)
app = create_app(
    StorageGateway(engine),
    redis_url=REDIS_URL,
    create_schema=CREATE_SCHEMA,
    owns_gateway=True,
)
