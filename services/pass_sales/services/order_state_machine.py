"""Máquina de estados de órdenes con transiciones condicionales (CAS sobre status)"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Order, OrderLog
from shared.utils.exceptions import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING_ONLINE = "PENDING_ONLINE"
    PENDING_CASH = "PENDING_CASH"
    PENDING_ADMIN_APPROVAL = "PENDING_ADMIN_APPROVAL"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    EXTERNAL_APP = "external_app"
    AMBASSADOR_CASH = "ambassador_cash"
    POS = "pos"


class Channel(str, Enum):
    ONLINE = "online"
    AMBASSADOR = "ambassador"
    POS = "pos"


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING_ONLINE: {OrderStatus.PAID, OrderStatus.FAILED},
    OrderStatus.PENDING_CASH: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PENDING_ADMIN_APPROVAL: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.REFUNDED},
}

CHANNEL_BY_PAYMENT_METHOD = {
    PaymentMethod.ONLINE: Channel.ONLINE,
    PaymentMethod.EXTERNAL_APP: Channel.ONLINE,
    PaymentMethod.AMBASSADOR_CASH: Channel.AMBASSADOR,
    PaymentMethod.POS: Channel.POS,
}

INITIAL_STATUS_BY_CHANNEL = {
    Channel.ONLINE: OrderStatus.PENDING_ONLINE,
    Channel.AMBASSADOR: OrderStatus.PENDING_CASH,
    Channel.POS: OrderStatus.PENDING_ADMIN_APPROVAL,
}

SOURCE_BY_CHANNEL = {
    Channel.ONLINE: "platform_online",
    Channel.AMBASSADOR: "platform_cod",
    Channel.POS: "point_de_vente",
}


class TransitionOutcome(str, Enum):
    PERFORMED = "performed"
    ALREADY_IN_TARGET = "already_in_target"


@dataclass
class TransitionResult:
    order_id: uuid.UUID
    from_status: OrderStatus
    to_status: OrderStatus
    outcome: TransitionOutcome

    @property
    def performed(self) -> bool:
        return self.outcome == TransitionOutcome.PERFORMED

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == TransitionOutcome.ALREADY_IN_TARGET


def _as_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Estado de orden desconocido: {value}")


class OrderStateMachine:
    """Único punto que cambia Order.status"""

    @staticmethod
    def initial_status(payment_method: PaymentMethod) -> OrderStatus:
        return INITIAL_STATUS_BY_CHANNEL[CHANNEL_BY_PAYMENT_METHOD[PaymentMethod(payment_method)]]

    @staticmethod
    def can_transition(from_status, to_status) -> bool:
        return _as_status(to_status) in ALLOWED_TRANSITIONS.get(_as_status(from_status), set())

    def validate(self, from_status, to_status):
        if not self.can_transition(from_status, to_status):
            raise InvalidTransition(
                f"Transición no permitida: {OrderStatus(from_status).value} -> {OrderStatus(to_status).value}",
                requested_from=OrderStatus(from_status).value,
                requested_to=OrderStatus(to_status).value,
            )

    async def current_status(self, db: AsyncSession, order_id: uuid.UUID) -> OrderStatus:
        status = (await db.execute(
            select(Order.status).where(Order.id == order_id)
        )).scalar_one_or_none()
        if status is None:
            raise NotFoundError(f"Orden {order_id} no encontrada")
        return OrderStatus(status)

    async def transition(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        from_status: OrderStatus,
        to_status: OrderStatus,
        performed_by: Optional[str] = None,
        performed_by_type: str = "system",
        extra_values: Optional[Dict] = None,
        details: Optional[Dict] = None,
    ) -> TransitionResult:
        """
        UPDATE orders SET status=to WHERE id=? AND status=from

        Las filas afectadas deciden el resultado:
        - 1: esta llamada hizo la transición
        - 0 y la orden ya está en `to`: replay idempotente
        - 0 y otro estado: InvalidTransition con el estado actual

        Raises:
            InvalidTransition: Transición ilegal o la orden está en otro estado
            NotFoundError: La orden no existe
        """
        from_status = _as_status(from_status)
        to_status = _as_status(to_status)
        self.validate(from_status, to_status)

        now = datetime.now(timezone.utc)
        values = {"status": to_status.value, "updated_at": now}
        if to_status == OrderStatus.PAID:
            values["paid_at"] = now
        elif to_status == OrderStatus.CANCELLED:
            values["cancelled_at"] = now
        if extra_values:
            values.update(extra_values)

        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            db.add(OrderLog(
                id=uuid.uuid4(),
                order_id=order_id,
                action="status_transition",
                performed_by=performed_by,
                performed_by_type=performed_by_type,
                details={
                    "old_status": from_status.value,
                    "new_status": to_status.value,
                    **(details or {}),
                },
            ))
            await db.commit()
            logger.info(f"Orden {order_id}: {from_status.value} -> {to_status.value} ({performed_by_type}:{performed_by})")
            return TransitionResult(order_id, from_status, to_status, TransitionOutcome.PERFORMED)

        current = await self.current_status(db, order_id)
        if current == to_status:
            logger.info(f"Orden {order_id} ya estaba en {to_status.value}, transición idempotente")
            return TransitionResult(order_id, from_status, to_status, TransitionOutcome.ALREADY_IN_TARGET)

        logger.warning(
            f"Conflicto de estado en orden {order_id}: esperado {from_status.value}, actual {current.value}"
        )
        raise InvalidTransition(
            f"La orden está en estado {current.value}",
            current_status=current.value,
            requested_from=from_status.value,
            requested_to=to_status.value,
        )
