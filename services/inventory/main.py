"""Inventory service API built with FastAPI.

This module exposes the stock ledger to the checkout gateway: product
lookup, atomic multi-item reservations, and the commit/release lifecycle
that follows a payment outcome. Validation is performed with Pydantic
models, while persistence and locking are delegated to the
SQLAlchemy-backed repository in ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from repo import (
    InsufficientStock,
    InventoryRepo,
    ReservationConflict,
    ReservationNotFound,
    ReservationState,
    engine,
    init_db,
)

app = FastAPI(title="Inventory Service")

Sku = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class Item(BaseModel):
    """An item to be reserved from inventory.

    Attributes:
        sku: Product SKU matching the allowed pattern.
        quantity: Positive integer quantity to reserve.
    """
    sku: Sku
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint.

    Attributes:
        reference: Caller's id for the reservation (the order id). A repeated
            reference returns the reservation already held for it.
        items: SKUs and quantities to hold; duplicates are summed.
    """
    reference: constr(min_length=1, max_length=64)
    items: List[Item] = Field(min_length=1)


class ProductIn(BaseModel):
    name: str = ""
    price_cents: int = Field(ge=0)
    quantity: int = Field(ge=0)
    image_ref: Optional[str] = None


class ProductOut(BaseModel):
    sku: str
    name: str
    price_cents: int
    image_ref: Optional[str] = None
    quantity: int


class ReservationOut(BaseModel):
    id: str
    reference: str
    state: ReservationState
    items: List[Item]
    created_at: datetime


def _product_out(p) -> ProductOut:
    return ProductOut(sku=p.sku, name=p.name, price_cents=p.price_cents, image_ref=p.image_ref, quantity=p.quantity)


def _reservation_out(r) -> ReservationOut:
    return ReservationOut(
        id=r.id,
        reference=r.reference,
        state=r.state,
        items=[Item(sku=line.sku, quantity=line.quantity) for line in r.lines],
        created_at=r.created_at,
    )


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.get("/products", response_model=List[ProductOut])
def list_products(ids: List[str] = Query(default=[])):
    """Return catalog entries for the given SKUs (all products when empty).

    Unknown SKUs are simply absent from the result.
    """
    return [_product_out(p) for p in InventoryRepo().get_products(ids)]


@app.put("/products/{sku}", response_model=ProductOut)
def put_product(sku: Sku, body: ProductIn):
    p = InventoryRepo().upsert_product(sku, body.name, body.price_cents, body.quantity, body.image_ref)
    return _product_out(p)


@app.post("/reservations", response_model=ReservationOut, status_code=201)
def reserve(req: ReserveRequest, request: Request):
    """Hold stock for a batch of items, all or nothing.

    ``InventoryRepo.reserve`` locks the product rows in SKU order so two
    concurrent requests for the last unit cannot both succeed.

    Raises:
        HTTPException: 422 with one shortage per short SKU.
    """
    items = [(it.sku, it.quantity) for it in req.items]
    try:
        res = InventoryRepo().reserve(req.reference, items)
    except InsufficientStock as e:
        logger.info(
            "reservation rejected",
            extra={"request_id": request.state.request_id, "reference": req.reference, "shortages": e.shortages},
        )
        raise HTTPException(
            status_code=422,
            detail={
                "detail": "INSUFFICIENT_STOCK",
                "shortages": [
                    {"sku": sku, "available": available, "requested": requested}
                    for sku, available, requested in e.shortages
                ],
            },
        )
    return _reservation_out(res)


@app.get("/reservations", response_model=List[ReservationOut])
def list_reservations(
    state: Optional[ReservationState] = None,
    older_than_seconds: Optional[int] = Query(default=None, ge=0),
):
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    return [_reservation_out(r) for r in InventoryRepo().list_reservations(state, older_than)]


@app.get("/reservations/{reservation_id}", response_model=ReservationOut)
def get_reservation(reservation_id: str):
    try:
        return _reservation_out(InventoryRepo().get_reservation(reservation_id))
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="NOT_FOUND")


@app.post("/reservations/{reservation_id}/commit", response_model=ReservationOut)
def commit(reservation_id: str, request: Request):
    try:
        res = InventoryRepo().commit(reservation_id)
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    except ReservationConflict:
        logger.warning(
            "commit of released reservation",
            extra={"request_id": request.state.request_id, "reservation_id": reservation_id},
        )
        raise HTTPException(status_code=409, detail="RESERVATION_RELEASED")
    return _reservation_out(res)


@app.post("/reservations/{reservation_id}/release", response_model=ReservationOut)
def release(reservation_id: str):
    try:
        return _reservation_out(InventoryRepo().release(reservation_id))
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="NOT_FOUND")


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
