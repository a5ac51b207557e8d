import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from loyalty.accrual import AccrualClient, AccrualSource
from loyalty.config import Settings, settings as default_settings
from loyalty.db import Database
from loyalty.errors import (
    DuplicateWithdrawal, InsufficientFunds, InvalidAmount, InvalidOrderNumber,
    OrderConflict, StorageError,
)
from loyalty.metrics import metrics_asgi_app
from loyalty.models import AdmissionResult
from loyalty.schemas import AdmissionOut, BalanceOut, OrderOut, WithdrawalOut, WithdrawIn
from loyalty.services.balance import BalanceService
from loyalty.services.orders import OrderService
from loyalty.services.poller import IntervalTrigger, ReconciliationPoller
from loyalty.store import LedgerStore

logger = logging.getLogger("loyalty")


def create_app(
    settings: Optional[Settings] = None,
    accrual_source: Optional[AccrualSource] = None,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # runs once at startup
        database = Database(settings.database_url, pool_size=settings.db_pool_size)
        database.create_schema()
        store = LedgerStore(database, currency=settings.currency)

        app.state.database = database
        app.state.orders = OrderService(store)
        app.state.balance = BalanceService(store)
        app.state.poller = None

        source = accrual_source
        client = None
        if source is None and settings.accrual_system_address:
            client = AccrualClient(settings.accrual_system_address, timeout_s=settings.accrual_timeout_seconds)
            source = client

        if settings.poller_enabled and source is not None:
            poller = ReconciliationPoller(
                store, source,
                batch_size=settings.poller_batch_size,
                trigger=IntervalTrigger(settings.poll_interval_seconds),
            )
            poller.start()
            app.state.poller = poller
        elif settings.poller_enabled:
            logger.warning("ACCRUAL_SYSTEM_ADDRESS is not set; accrual polling is disabled")

        yield

        # runs once at shutdown
        if app.state.poller is not None:
            app.state.poller.stop()
        if client is not None:
            client.close()
        database.dispose()

    app = FastAPI(title="Loyalty Ledger", lifespan=lifespan)
    app.mount("/metrics", metrics_asgi_app)

    @app.exception_handler(StorageError)
    def storage_error_handler(request: Request, exc: StorageError):
        logger.error("storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Internal storage error"})

    def current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> UUID:
        # Set by the auth gateway in front of this service; trusted as-is.
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing user identity")
        try:
            return UUID(x_user_id)
        except ValueError:
            raise HTTPException(status_code=401, detail="Malformed user identity")

    async def raw_body(request: Request) -> bytes:
        return await request.body()

    def order_service(request: Request) -> OrderService:
        return request.app.state.orders

    def balance_service(request: Request) -> BalanceService:
        return request.app.state.balance

    @app.get("/")
    def root():
        return {"service": "loyalty", "docs": "/docs"}

    @app.get("/healthz")
    def healthz(request: Request):
        try:
            request.app.state.database.ping()
            return {"ok": True, "db": "up"}
        except Exception:
            return {"ok": False, "db": "down"}

    @app.post("/api/user/orders", response_model=AdmissionOut, status_code=202, tags=["orders"])
    def upload_order(
        body: bytes = Depends(raw_body),
        user_id: UUID = Depends(current_user_id),
        orders: OrderService = Depends(order_service),
    ):
        number = body.decode("utf-8", errors="replace").strip()
        if not number:
            raise HTTPException(status_code=400, detail="Order number is required")
        try:
            result = orders.admit(user_id, number)
        except InvalidOrderNumber as e:
            raise HTTPException(status_code=422, detail=str(e))
        except OrderConflict as e:
            raise HTTPException(status_code=409, detail=str(e))

        status_code = 202 if result is AdmissionResult.ACCEPTED else 200
        out = AdmissionOut(number=number, result=result)
        return JSONResponse(status_code=status_code, content=out.model_dump(mode="json"))

    @app.get("/api/user/orders", response_model=List[OrderOut], response_model_exclude_none=True, tags=["orders"])
    def list_orders(
        user_id: UUID = Depends(current_user_id),
        orders: OrderService = Depends(order_service),
    ):
        rows = orders.list_orders(user_id)
        if not rows:
            return Response(status_code=204)
        return [
            OrderOut(
                number=o.number,
                status=o.state,
                accrual=float(o.accrual) if o.accrual is not None else None,
                uploaded_at=o.created_at,
            )
            for o in rows
        ]

    @app.get("/api/user/balance", response_model=BalanceOut, tags=["balance"])
    def get_balance(
        user_id: UUID = Depends(current_user_id),
        balance: BalanceService = Depends(balance_service),
    ):
        b = balance.get_balance(user_id)
        return {"current": float(b.current), "withdrawn": float(b.withdrawn)}

    @app.post("/api/user/balance/withdraw", tags=["balance"])
    def withdraw(
        payload: WithdrawIn,
        user_id: UUID = Depends(current_user_id),
        balance: BalanceService = Depends(balance_service),
    ):
        try:
            op = balance.withdraw(user_id, payload.order, payload.sum)
        except (InvalidOrderNumber, InvalidAmount) as e:
            raise HTTPException(status_code=422, detail=str(e))
        except InsufficientFunds as e:
            raise HTTPException(status_code=402, detail=str(e))
        except DuplicateWithdrawal as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"order": op.order_number, "sum": float(op.amount)}

    @app.get("/api/user/withdrawals", response_model=List[WithdrawalOut], tags=["balance"])
    def list_withdrawals(
        user_id: UUID = Depends(current_user_id),
        balance: BalanceService = Depends(balance_service),
    ):
        ops = balance.get_withdrawals(user_id)
        if not ops:
            return Response(status_code=204)
        return [WithdrawalOut(order=op.order_number, sum=float(op.amount), processed_at=op.created_at) for op in ops]

    return app


app = create_app()
