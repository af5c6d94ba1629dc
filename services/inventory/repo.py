"""SQLAlchemy repository for the stock ledger.

This module owns the authoritative product catalog and the reservation
ledger. A reservation holds stock for one order (its ``reference``) until
it is committed on payment or released on failure, cancellation or by the
recovery sweep.

Schema:
- ``products``: sku, display name, unit price in cents, image ref, free quantity
- ``reservations``: one row per order reference, state HELD/COMMITTED/RELEASED
- ``reservation_lines``: sku and quantity held by a reservation

Database connection parameters come from ``DATABASE_URL`` or the DB_* env vars.
"""

import enum
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, selectinload

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ReservationState(str, enum.Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"


class Product(Base):
    """A sellable product and its free (unreserved) quantity."""

    __tablename__ = "products"
    sku: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Reservation(Base):
    __tablename__ = "reservations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    state: Mapped[ReservationState] = mapped_column(
        Enum(ReservationState, native_enum=False, length=16), nullable=False, default=ReservationState.HELD
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    lines: Mapped[list["ReservationLine"]] = relationship(
        back_populates="reservation", cascade="all, delete-orphan", order_by="ReservationLine.id"
    )


class ReservationLine(Base):
    __tablename__ = "reservation_lines"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(ForeignKey("reservations.id"), nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation: Mapped[Reservation] = relationship(back_populates="lines")


class ReservationNotFound(Exception):
    pass


class ReservationConflict(Exception):
    """Raised when committing a reservation that was already released."""


class InsufficientStock(Exception):
    """Raised by ``reserve`` when any SKU cannot cover the requested quantity.

    ``shortages`` holds ``(sku, available, requested)`` tuples, one per short SKU.
    """

    def __init__(self, shortages: list[tuple[str, int, int]]):
        super().__init__("INSUFFICIENT_STOCK")
        self.shortages = shortages


def init_db() -> None:
    """Create tables if they do not exist."""
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Context manager that yields a SQLAlchemy session.

    The session is automatically closed when exiting the context.
    """
    with Session(engine, expire_on_commit=False) as s:
        yield s


def _merge(items: list[tuple[str, int]]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for sku, qty in items:
        merged[sku] = merged.get(sku, 0) + qty
    return merged


def _in_order(items: list[tuple[str, int]], merged: dict[str, int]) -> list[tuple[str, int]]:
    """Merged quantities in first-seen SKU order."""
    seen: list[str] = []
    for sku, _ in items:
        if sku not in seen:
            seen.append(sku)
    return [(sku, merged[sku]) for sku in seen]


class InventoryRepo:
    """Repository class for catalog and reservation operations.

    Every mutating method runs in its own transaction. Rows are locked with
    ``SELECT ... FOR UPDATE`` in sorted SKU order so two concurrent
    reservations touching the same products cannot deadlock or oversell.
    """

    def get_products(self, skus: list[str]) -> list[Product]:
        with get_session() as s:
            stmt = select(Product).order_by(Product.sku)
            if skus:
                stmt = stmt.where(Product.sku.in_(skus))
            return list(s.scalars(stmt))

    def upsert_product(self, sku: str, name: str, price_cents: int, quantity: int,
                       image_ref: str | None = None) -> Product:
        with get_session() as s:
            obj = s.get(Product, sku, with_for_update=True) or Product(sku=sku)
            obj.name = name
            obj.price_cents = price_cents
            obj.quantity = quantity
            obj.image_ref = image_ref
            s.add(obj)
            s.commit()
            return obj

    def get_reservation(self, reservation_id: str) -> Reservation:
        with get_session() as s:
            res = s.get(Reservation, reservation_id, options=[selectinload(Reservation.lines)])
            if res is None:
                raise ReservationNotFound(reservation_id)
            return res

    def _by_reference(self, s: Session, reference: str) -> Reservation | None:
        stmt = select(Reservation).options(selectinload(Reservation.lines)).where(Reservation.reference == reference)
        return s.scalars(stmt).first()

    def reserve(self, reference: str, items: list[tuple[str, int]]) -> Reservation:
        """Atomically hold quantities for multiple SKUs under ``reference``.

        Either every item is held or nothing changes. Repeated calls with the
        same reference return the existing reservation without touching stock.

        Raises:
            InsufficientStock: when any SKU (unknown SKUs count as 0) is short.
        """
        wanted = _merge(items)
        with get_session() as s:
            existing = self._by_reference(s, reference)
            if existing is not None:
                return existing

            rows = s.scalars(
                select(Product).where(Product.sku.in_(sorted(wanted))).order_by(Product.sku).with_for_update()
            ).all()
            current = {r.sku: r for r in rows}
            shortages = [
                (sku, current[sku].quantity if sku in current else 0, qty)
                for sku, qty in sorted(wanted.items())
                if sku not in current or current[sku].quantity < qty
            ]
            if shortages:
                s.rollback()
                raise InsufficientStock(shortages)

            for sku, qty in wanted.items():
                current[sku].quantity -= qty
            lines = [ReservationLine(sku=sku, quantity=qty) for sku, qty in _in_order(items, wanted)]
            res = Reservation(reference=reference, lines=lines)
            s.add(res)
            try:
                s.commit()
            except IntegrityError:
                # a concurrent request for the same reference won the insert
                s.rollback()
                existing = self._by_reference(s, reference)
                if existing is None:
                    raise
                return existing
            return res

    def release(self, reservation_id: str) -> Reservation:
        """Return held stock to the free pool.

        Releasing twice is a no-op, and a committed reservation is left as is.
        """
        with get_session() as s:
            res = self._locked(s, reservation_id)
            if res.state != ReservationState.HELD:
                return res
            skus = sorted({line.sku for line in res.lines})
            products = {
                p.sku: p
                for p in s.scalars(
                    select(Product).where(Product.sku.in_(skus)).order_by(Product.sku).with_for_update()
                )
            }
            for line in res.lines:
                if line.sku in products:
                    products[line.sku].quantity += line.quantity
            res.state = ReservationState.RELEASED
            res.updated_at = _now()
            s.commit()
            return res

    def commit(self, reservation_id: str) -> Reservation:
        """Make a held reservation permanent. Idempotent for committed ones.

        Raises:
            ReservationConflict: when the reservation was already released.
        """
        with get_session() as s:
            res = self._locked(s, reservation_id)
            if res.state == ReservationState.RELEASED:
                s.rollback()
                raise ReservationConflict(reservation_id)
            if res.state == ReservationState.HELD:
                res.state = ReservationState.COMMITTED
                res.updated_at = _now()
                s.commit()
            return res

    def list_reservations(self, state: ReservationState | None = None,
                          older_than: timedelta | None = None) -> list[Reservation]:
        with get_session() as s:
            stmt = select(Reservation).options(selectinload(Reservation.lines)).order_by(Reservation.created_at)
            if state is not None:
                stmt = stmt.where(Reservation.state == state)
            if older_than is not None:
                stmt = stmt.where(Reservation.created_at <= _now() - older_than)
            return list(s.scalars(stmt))

    def _locked(self, s: Session, reservation_id: str) -> Reservation:
        stmt = (
            select(Reservation)
            .options(selectinload(Reservation.lines))
            .where(Reservation.id == reservation_id)
            .with_for_update()
        )
        res = s.scalars(stmt).first()
        if res is None:
            raise ReservationNotFound(reservation_id)
        return res
