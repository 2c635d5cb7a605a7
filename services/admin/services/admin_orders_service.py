"""Servicio de administración de órdenes: aprobación y acciones compensatorias"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.cache.redis_client import cache_delete
from shared.database.models import Order, OrderLine, OrderLog, Ticket
from shared.utils.exceptions import InvalidTransition, NotFoundError
from services.fulfillment.services.fulfillment_service import FulfillmentOrchestrator, FulfillmentResult
from services.pass_sales.services.order_service import OrderService, idempotency_cache_key
from services.pass_sales.services.order_state_machine import OrderStateMachine, OrderStatus

logger = logging.getLogger(__name__)

APPROVABLE_STATUSES = (OrderStatus.PENDING_ADMIN_APPROVAL, OrderStatus.PENDING_CASH)


@dataclass
class ApprovalResult:
    order_id: uuid.UUID
    fulfillment: FulfillmentResult
    already_approved: bool = False


@dataclass
class CompensationResult:
    order_id: uuid.UUID
    status: str
    stock_released: bool
    already_processed: bool = False


class AdminOrdersService:
    """Operaciones de administrador sobre órdenes"""

    def __init__(
        self,
        fulfillment: Optional[FulfillmentOrchestrator] = None,
        order_service: Optional[OrderService] = None,
        state_machine: Optional[OrderStateMachine] = None
    ):
        self.fulfillment = fulfillment or FulfillmentOrchestrator()
        self.order_service = order_service or OrderService()
        self.state_machine = state_machine or OrderStateMachine()

    async def approve_order(self, db: AsyncSession, order_id: uuid.UUID, admin: Dict) -> ApprovalResult:
        """
        Aprobar una orden pendiente (POS o efectivo) y emitir sus tickets

        Idempotente: si la orden ya está PAID devuelve el resultado existente
        con already_approved=True.

        Raises:
            InvalidTransition: La orden está en un estado no aprobable
            NotFoundError: La orden no existe
        """
        admin_id = admin.get("user_id")
        current = await self.state_machine.current_status(db, order_id)

        if current == OrderStatus.PAID:
            fulfillment = await self.fulfillment.fulfill(
                db, order_id, triggered_by=admin_id, triggered_by_type="admin",
                previous_status=OrderStatus.PAID.value,
            )
            await self._log(db, order_id, "admin_approve_duplicate", admin_id, {
                "status": current.value,
                "tickets_exist": fulfillment.tickets_generated,
                "tickets_count": fulfillment.tickets_count,
            })
            return ApprovalResult(order_id, fulfillment, already_approved=True)

        if current not in APPROVABLE_STATUSES:
            logger.warning(f"Admin {admin_id} intentó aprobar orden {order_id} en estado {current.value}")
            raise InvalidTransition(
                f"La orden no se puede aprobar en estado {current.value}",
                current_status=current.value,
                requested_to=OrderStatus.PAID.value,
            )

        transition = await self.state_machine.transition(
            db, order_id, current, OrderStatus.PAID,
            performed_by=admin_id, performed_by_type="admin",
            extra_values={"approved_at": datetime.now(timezone.utc)},
        )

        fulfillment = await self.fulfillment.fulfill(
            db, order_id, triggered_by=admin_id, triggered_by_type="admin",
            previous_status=current.value,
        )

        await self._log(
            db, order_id,
            "admin_approve" if transition.performed else "admin_approve_duplicate",
            admin_id,
            {
                "old_status": current.value,
                "new_status": OrderStatus.PAID.value,
                "tickets_generated": fulfillment.tickets_generated,
                "tickets_count": fulfillment.tickets_count,
                "email_sent": fulfillment.email_sent,
                "sms_sent": fulfillment.sms_sent,
            },
        )
        return ApprovalResult(order_id, fulfillment, already_approved=transition.is_duplicate)

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        admin: Dict,
        reason: Optional[str] = None
    ) -> CompensationResult:
        """Cancelar una orden en efectivo pendiente y devolver su stock"""
        admin_id = admin.get("user_id")
        transition = await self.state_machine.transition(
            db, order_id, OrderStatus.PENDING_CASH, OrderStatus.CANCELLED,
            performed_by=admin_id, performed_by_type="admin",
            extra_values={"cancellation_reason": reason},
            details={"reason": reason},
        )
        released = await self.order_service.release_order_stock(
            db, order_id, reason="order_cancelled",
            performed_by=admin_id, performed_by_type="admin",
        )
        return CompensationResult(order_id, OrderStatus.CANCELLED.value, released, transition.is_duplicate)

    async def refund_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        admin: Dict,
        reason: Optional[str] = None
    ) -> CompensationResult:
        """Reembolsar una orden pagada: revoca tickets y devuelve stock"""
        admin_id = admin.get("user_id")
        transition = await self.state_machine.transition(
            db, order_id, OrderStatus.PAID, OrderStatus.REFUNDED,
            performed_by=admin_id, performed_by_type="admin",
            details={"reason": reason},
        )

        revoked = await db.execute(
            update(Ticket)
            .where(Ticket.order_id == order_id, Ticket.status != "REVOKED")
            .values(status="REVOKED")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if revoked.rowcount:
            logger.info(f"Orden {order_id}: {revoked.rowcount} tickets revocados por reembolso")

        released = await self.order_service.release_order_stock(
            db, order_id, reason="order_refunded",
            performed_by=admin_id, performed_by_type="admin",
        )
        return CompensationResult(order_id, OrderStatus.REFUNDED.value, released, transition.is_duplicate)

    async def remove_order(self, db: AsyncSession, order_id: uuid.UUID, admin: Dict) -> CompensationResult:
        """
        Eliminar una orden no pagada devolviendo su stock

        El DELETE es condicional sobre el estado leído: si la orden cambió
        (por ejemplo, fue aprobada en paralelo) no se elimina nada.
        """
        admin_id = admin.get("user_id")
        row = (await db.execute(
            select(Order.status, Order.reservation_id, Order.stock_released, Order.idempotency_key)
            .where(Order.id == order_id)
        )).one_or_none()
        if row is None:
            raise NotFoundError(f"Orden {order_id} no encontrada")

        status, reservation_id, stock_released, idempotency_key = row
        if status in (OrderStatus.PAID.value, OrderStatus.REFUNDED.value):
            raise InvalidTransition(
                f"No se puede eliminar una orden en estado {status}",
                current_status=status,
            )

        await db.execute(delete(OrderLine).where(OrderLine.order_id == order_id))
        deleted = await db.execute(
            delete(Order).where(Order.id == order_id, Order.status == status)
        )
        if deleted.rowcount != 1:
            await db.rollback()
            current = await self.state_machine.current_status(db, order_id)
            raise InvalidTransition(
                f"La orden cambió a {current.value} durante la eliminación",
                current_status=current.value,
            )

        db.add(OrderLog(
            id=uuid.uuid4(),
            order_id=order_id,
            action="admin_remove",
            performed_by=admin_id,
            performed_by_type="admin",
            details={"old_status": status, "stock_released": not stock_released},
        ))

        released = False
        if not stock_released and reservation_id is not None:
            reservation = await self.order_service.ledger.load_reservation(db, reservation_id)
            released = await self.order_service.ledger.release(db, reservation, reason="order_removed")
        await db.commit()

        if idempotency_key:
            try:
                await cache_delete(idempotency_cache_key(idempotency_key))
            except Exception as e:
                logger.warning(f"No se pudo limpiar cache de idempotencia: {e}")

        logger.info(f"Orden {order_id} eliminada por admin {admin_id} (stock liberado: {released})")
        return CompensationResult(order_id, "REMOVED", released)

    async def expire_pending_cash_orders(
        self,
        db: AsyncSession,
        older_than_hours: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[uuid.UUID]:
        """Cancelar órdenes en efectivo sin confirmar más antiguas que el límite"""
        hours = older_than_hours if older_than_hours is not None else settings.PENDING_CASH_EXPIRATION_HOURS
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)

        candidates = (await db.execute(
            select(Order.id).where(
                Order.status == OrderStatus.PENDING_CASH.value,
                Order.created_at < cutoff,
            )
        )).scalars().all()

        expired = []
        for order_id in candidates:
            try:
                transition = await self.state_machine.transition(
                    db, order_id, OrderStatus.PENDING_CASH, OrderStatus.CANCELLED,
                    performed_by="auto_expire", performed_by_type="system",
                    extra_values={"cancellation_reason": f"Sin pago tras {hours}h"},
                )
            except InvalidTransition as e:
                logger.info(f"Orden {order_id} cambió a {e.current_status}, no se expira")
                continue
            await self.order_service.release_order_stock(
                db, order_id, reason="order_expired", performed_by="auto_expire",
            )
            if transition.performed:
                expired.append(order_id)

        if expired:
            logger.info(f"{len(expired)} órdenes en efectivo expiradas")
        return expired

    async def _log(self, db: AsyncSession, order_id: uuid.UUID, action: str, admin_id: Optional[str], details: Dict):
        db.add(OrderLog(
            id=uuid.uuid4(),
            order_id=order_id,
            action=action,
            performed_by=admin_id,
            performed_by_type="admin",
            details=details,
        ))
        await db.commit()
