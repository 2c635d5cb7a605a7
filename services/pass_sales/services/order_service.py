"""Servicio de órdenes: creación sobre una reserva y liberación de stock"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.cache.redis_client import cache_get, cache_set
from shared.database.models import Order, OrderLine, OrderLog
from shared.utils.exceptions import NotFoundError, UnrecoverableWriteFailure
from services.pass_sales.services.inventory_service import InventoryLedger, PoolRef, ReservationLine
from services.pass_sales.services.order_state_machine import (
    CHANNEL_BY_PAYMENT_METHOD,
    SOURCE_BY_CHANNEL,
    OrderStateMachine,
    PaymentMethod,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_CACHE_TTL = 24 * 3600


@dataclass
class CustomerInfo:
    name: str
    phone: str
    email: Optional[str]
    city: Optional[str] = None
    district: Optional[str] = None


@dataclass
class ResolvedLine:
    """Línea ya resuelta contra el pool: nombre y precio vienen del servidor"""
    pool: PoolRef
    pass_id: uuid.UUID
    pass_name: str
    unit_price: Decimal
    quantity: int


@dataclass
class OrderDraft:
    payment_method: PaymentMethod
    customer: CustomerInfo
    lines: List[ResolvedLine]
    event_id: Optional[uuid.UUID] = None
    user_id: Optional[str] = None
    ambassador_id: Optional[uuid.UUID] = None
    outlet_id: Optional[uuid.UUID] = None
    pos_user_id: Optional[uuid.UUID] = None
    idempotency_key: Optional[str] = None
    created_by: Optional[str] = None
    created_by_type: str = "customer"

    @property
    def total_price(self) -> Decimal:
        return sum((line.unit_price * line.quantity for line in self.lines), Decimal("0"))

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines)


@dataclass
class OrderCreation:
    order: Order
    is_duplicate: bool = False
    warnings: List[str] = field(default_factory=list)


def idempotency_cache_key(key: str) -> str:
    return f"orders:idempotency:{key}"


class OrderService:
    """Crea órdenes sobre una reserva del ledger y libera su stock"""

    def __init__(self, ledger: Optional[InventoryLedger] = None, state_machine: Optional[OrderStateMachine] = None):
        self.ledger = ledger or InventoryLedger()
        self.state_machine = state_machine or OrderStateMachine()

    async def get_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        """Leer la orden con sus líneas, siempre desde la base"""
        order = (await db.execute(
            select(Order)
            .options(selectinload(Order.lines))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Orden {order_id} no encontrada")
        return order

    async def find_by_idempotency_key(self, db: AsyncSession, key: str) -> Optional[Order]:
        """Buscar una orden previa por idempotency key (Redis primero, luego DB)"""
        try:
            cached_id = await cache_get(idempotency_cache_key(key))
        except Exception as e:
            logger.warning(f"Error leyendo cache de idempotencia: {e}")
            cached_id = None

        if cached_id:
            try:
                return await self.get_order(db, uuid.UUID(str(cached_id)))
            except (NotFoundError, ValueError):
                logger.warning(f"Idempotency key {key} en cache apunta a una orden inexistente")

        order_id = (await db.execute(
            select(Order.id).where(Order.idempotency_key == key)
        )).scalar_one_or_none()
        if order_id is None:
            return None
        return await self.get_order(db, order_id)

    async def create_order(self, db: AsyncSession, draft: OrderDraft) -> OrderCreation:
        """
        Reservar stock y persistir la orden

        Raises:
            StockConflict: Stock insuficiente o carrera perdida (nada queda reservado)
            UnrecoverableWriteFailure: La orden no se pudo guardar (la reserva se liberó)
        """
        if draft.idempotency_key:
            existing = await self.find_by_idempotency_key(db, draft.idempotency_key)
            if existing is not None:
                logger.info(f"Orden duplicada por idempotency key {draft.idempotency_key}: {existing.id}")
                return OrderCreation(order=existing, is_duplicate=True)

        reservation = await self.ledger.reserve_all(
            db,
            [ReservationLine(pool=line.pool, quantity=line.quantity) for line in draft.lines],
        )

        channel = CHANNEL_BY_PAYMENT_METHOD[draft.payment_method]
        order_id = uuid.uuid4()

        try:
            db.add(Order(
                id=order_id,
                channel=channel.value,
                source=SOURCE_BY_CHANNEL[channel],
                status=self.state_machine.initial_status(draft.payment_method).value,
                payment_method=draft.payment_method.value,
                event_id=draft.event_id,
                user_id=draft.user_id,
                ambassador_id=draft.ambassador_id,
                outlet_id=draft.outlet_id,
                pos_user_id=draft.pos_user_id,
                customer_name=draft.customer.name,
                customer_phone=draft.customer.phone,
                customer_email=draft.customer.email,
                city=draft.customer.city,
                district=draft.customer.district,
                total_price=draft.total_price,
                quantity=draft.quantity,
                reservation_id=reservation.id,
                stock_released=False,
                idempotency_key=draft.idempotency_key,
            ))
            for position, line in enumerate(draft.lines):
                db.add(OrderLine(
                    id=uuid.uuid4(),
                    order_id=order_id,
                    position=position,
                    pass_id=line.pass_id,
                    pool_kind=line.pool.kind.value,
                    pool_id=line.pool.id,
                    pass_name_snapshot=line.pass_name,
                    quantity=line.quantity,
                    unit_price_snapshot=line.unit_price,
                ))
            db.add(OrderLog(
                id=uuid.uuid4(),
                order_id=order_id,
                action="order_created",
                performed_by=draft.created_by,
                performed_by_type=draft.created_by_type,
                details={
                    "channel": channel.value,
                    "payment_method": draft.payment_method.value,
                    "quantity": draft.quantity,
                    "total_price": str(draft.total_price),
                    "reservation_id": str(reservation.id),
                },
            ))
            await self.ledger.attach_order(db, reservation, order_id)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Error guardando orden tras reservar stock: {e}", exc_info=True)
            await self.ledger.release(db, reservation, reason="order_write_failed")

            if isinstance(e, IntegrityError) and draft.idempotency_key:
                existing = await self.find_by_idempotency_key(db, draft.idempotency_key)
                if existing is not None:
                    return OrderCreation(order=existing, is_duplicate=True)

            raise UnrecoverableWriteFailure(
                "No se pudo guardar la orden, el stock reservado fue liberado",
                {"reservation_id": str(reservation.id)},
            )

        if draft.idempotency_key:
            try:
                await cache_set(idempotency_cache_key(draft.idempotency_key), str(order_id), expire=IDEMPOTENCY_CACHE_TTL)
            except Exception as e:
                logger.warning(f"No se pudo cachear idempotency key: {e}")

        logger.info(
            f"Orden {order_id} creada ({channel.value}, {draft.payment_method.value}): "
            f"{draft.quantity} pase(s), total {draft.total_price}"
        )
        return OrderCreation(order=await self.get_order(db, order_id))

    async def release_order_stock(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        reason: str,
        performed_by: Optional[str] = None,
        performed_by_type: str = "system"
    ) -> bool:
        """
        Liberar el stock de una orden una sola vez

        El flag stock_released se toma con un UPDATE condicional; solo quien
        lo cambia devuelve las unidades al pool.

        Returns:
            True si esta llamada liberó el stock
        """
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.stock_released.is_(False))
            .values(stock_released=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.commit()
            logger.info(f"Stock de orden {order_id} ya liberado")
            return False

        reservation_id = (await db.execute(
            select(Order.reservation_id).where(Order.id == order_id)
        )).scalar_one_or_none()

        db.add(OrderLog(
            id=uuid.uuid4(),
            order_id=order_id,
            action="stock_released",
            performed_by=performed_by,
            performed_by_type=performed_by_type,
            details={"reason": reason, "reservation_id": str(reservation_id) if reservation_id else None},
        ))

        if reservation_id is not None:
            reservation = await self.ledger.load_reservation(db, reservation_id)
            await self.ledger.release(db, reservation, reason=reason)
        await db.commit()

        logger.info(f"Stock de orden {order_id} liberado ({reason})")
        return True
