"""Orquestador de fulfillment: emisión de tickets y notificaciones post-pago"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
import logging
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import NotificationRecord, Order, OrderLine, OrderLog, Ticket
from shared.utils.exceptions import InvalidTransition, NotFoundError, PartialFulfillmentFailure
from shared.utils.qr_generator import generate_secure_token, render_qr_png
from services.fulfillment.services.ticket_storage import LocalTicketStorage
from services.notifications.models.messages import TicketSummary
from services.notifications.services.notification_service import (
    DispatchOutcome,
    ChannelOutcome,
    NotificationService,
    EMAIL,
    SMS,
    FAILED,
    QUEUED,
    SENT,
    TIMEOUT,
    load_order_summary,
)
from services.notifications.tasks.notification_tasks import schedule_notification_retry

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentResult:
    order_id: uuid.UUID
    success: bool
    tickets: List[TicketSummary] = field(default_factory=list)
    already_fulfilled: bool = False
    failed_units: int = 0
    email_sent: bool = False
    sms_sent: bool = False
    notifications_sent: bool = False
    notifications_queued: List[str] = field(default_factory=list)
    warnings: List[Dict] = field(default_factory=list)

    @property
    def tickets_count(self) -> int:
        return len(self.tickets)

    @property
    def tickets_generated(self) -> bool:
        return self.tickets_count > 0


class FulfillmentOrchestrator:
    """
    Reacciona a una orden PAID emitiendo sus tickets una sola vez.

    Pasos:
    1. Si la orden ya tiene tickets, devuelve el resultado existente
    2. Emite un ticket por unidad (token, QR, almacenamiento); una unidad que
       falla no aborta el resto
    3. Envía email consolidado + SMS dentro del presupuesto de tiempo; lo no
       entregado se encola para reintento
    4. Registra la auditoría en order_logs
    """

    def __init__(
        self,
        storage: Optional[LocalTicketStorage] = None,
        notification_service: Optional[NotificationService] = None,
        retry_scheduler: Optional[Callable[..., Awaitable[bool]]] = None
    ):
        self.storage = storage or LocalTicketStorage()
        self.notification_service = notification_service or NotificationService()
        self.retry_scheduler = retry_scheduler or schedule_notification_retry

    async def fulfill(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        triggered_by: Optional[str] = None,
        triggered_by_type: str = "system",
        previous_status: Optional[str] = None
    ) -> FulfillmentResult:
        """
        Emitir tickets y notificar

        Args:
            db: Sesión de base de datos
            order_id: Orden ya en estado PAID
            triggered_by: Quién disparó la transición (admin id, webhook, etc.)
            triggered_by_type: Tipo de actor
            previous_status: Estado anterior a PAID (para auditoría)

        Raises:
            InvalidTransition: Si la orden no está PAID
        """
        existing = await self._existing_result(db, order_id)
        if existing is not None:
            logger.info(f"Orden {order_id} ya tiene {existing.tickets_count} tickets, fulfillment idempotente")
            return existing

        status = (await db.execute(select(Order.status).where(Order.id == order_id))).scalar_one_or_none()
        if status is None:
            raise NotFoundError(f"Orden {order_id} no encontrada")
        if status != "PAID":
            raise InvalidTransition(
                f"Solo se emiten tickets para órdenes PAID (actual: {status})",
                current_status=status,
            )

        lines = (await db.execute(
            select(OrderLine.id, OrderLine.quantity)
            .where(OrderLine.order_id == order_id)
            .order_by(OrderLine.position)
        )).all()

        issued = 0
        failed_units = 0
        for line_id, quantity in lines:
            for unit_index in range(quantity):
                try:
                    await self._issue_ticket(db, order_id, line_id, unit_index)
                    issued += 1
                except Exception as e:
                    await db.rollback()
                    failed_units += 1
                    logger.error(
                        f"Error emitiendo ticket {unit_index + 1}/{quantity} de línea {line_id} "
                        f"(orden {order_id}): {e}",
                        exc_info=True
                    )

        summary = await load_order_summary(db, order_id)
        result = FulfillmentResult(
            order_id=order_id,
            success=issued > 0,
            tickets=summary.tickets,
            failed_units=failed_units,
        )

        if issued == 0:
            logger.error(f"Orden {order_id}: no se pudo emitir ningún ticket")
            await self._audit(db, order_id, result, triggered_by, triggered_by_type, previous_status)
            return result

        logger.info(f"Orden {order_id}: {issued} tickets emitidos ({failed_units} fallidos)")

        try:
            outcome = await self.notification_service.dispatch_tickets(summary)
        except Exception as e:
            logger.error(f"Orden {order_id}: error despachando notificaciones: {e}", exc_info=True)
            outcome = DispatchOutcome(outcomes={
                EMAIL: ChannelOutcome(EMAIL, summary.customer_email, FAILED, str(e)),
                SMS: ChannelOutcome(SMS, summary.customer_phone, FAILED, str(e)),
            })

        await self.notification_service.record(db, order_id, outcome, kind="tickets")
        result.email_sent = outcome.email_sent
        result.sms_sent = outcome.sms_sent
        result.notifications_sent = outcome.all_sent

        if outcome.email_sent:
            await db.execute(
                update(Ticket)
                .where(Ticket.order_id == order_id, Ticket.status == "GENERATED")
                .values(status="DELIVERED")
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        undelivered = outcome.undelivered_channels
        if undelivered:
            warning = PartialFulfillmentFailure(
                "Tickets emitidos pero algunas notificaciones no se enviaron",
                failed_channels=undelivered,
                tickets_count=result.tickets_count,
            )
            result.warnings.append(warning.to_dict())
            if await self.retry_scheduler(str(order_id), undelivered, "tickets"):
                result.notifications_queued = undelivered
                await self.notification_service.record(db, order_id, DispatchOutcome(outcomes={
                    channel: ChannelOutcome(channel, outcome.outcomes[channel].recipient, QUEUED)
                    for channel in undelivered
                }), kind="tickets")

        await self._audit(db, order_id, result, triggered_by, triggered_by_type, previous_status)
        return result

    async def _issue_ticket(self, db: AsyncSession, order_id: uuid.UUID, line_id: uuid.UUID, unit_index: int):
        ticket_id = uuid.uuid4()
        secure_token = generate_secure_token(str(ticket_id))
        png = render_qr_png(secure_token)
        code_image_url = await self.storage.save(str(order_id), secure_token, png)

        db.add(Ticket(
            id=ticket_id,
            order_id=order_id,
            order_line_id=line_id,
            unit_index=unit_index,
            secure_token=secure_token,
            status="GENERATED",
            code_image_url=code_image_url,
        ))
        await db.commit()

    async def _existing_result(self, db: AsyncSession, order_id: uuid.UUID) -> Optional[FulfillmentResult]:
        count = (await db.execute(
            select(func.count(Ticket.id)).where(Ticket.order_id == order_id)
        )).scalar_one()
        if not count:
            return None

        summary = await load_order_summary(db, order_id)
        records = (await db.execute(
            select(NotificationRecord.channel, NotificationRecord.status).where(
                NotificationRecord.order_id == order_id,
                NotificationRecord.kind == "tickets",
            )
        )).all()

        statuses: Dict[str, set] = {}
        for channel, status in records:
            statuses.setdefault(channel, set()).add(status)
        sent_channels = {c for c, s in statuses.items() if SENT in s}
        # Canal fallido o encolado sin envío posterior = no entregado
        pending = sorted(
            c for c, s in statuses.items() if SENT not in s and s & {FAILED, TIMEOUT, QUEUED}
        )

        return FulfillmentResult(
            order_id=order_id,
            success=True,
            tickets=summary.tickets,
            already_fulfilled=True,
            email_sent=EMAIL in sent_channels,
            sms_sent=SMS in sent_channels,
            notifications_sent=bool(sent_channels) and not pending,
            notifications_queued=[c for c in pending if QUEUED in statuses[c]],
        )

    async def _audit(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        result: FulfillmentResult,
        triggered_by: Optional[str],
        triggered_by_type: str,
        previous_status: Optional[str]
    ):
        db.add(OrderLog(
            id=uuid.uuid4(),
            order_id=order_id,
            action="fulfillment",
            performed_by=triggered_by,
            performed_by_type=triggered_by_type,
            details={
                "old_status": previous_status,
                "new_status": "PAID",
                "tickets_generated": result.tickets_generated,
                "tickets_count": result.tickets_count,
                "failed_units": result.failed_units,
                "email_sent": result.email_sent,
                "sms_sent": result.sms_sent,
                "notifications_queued": result.notifications_queued,
            },
        ))
        await db.commit()
