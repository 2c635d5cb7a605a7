"""Despacho de notificaciones con presupuesto de tiempo"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Ambassador, Event, NotificationRecord, Order, OrderLine, Ticket
from shared.utils.exceptions import NotFoundError
from services.notifications.models.messages import (
    OrderLineSummary,
    OrderSummary,
    TicketSummary,
)
from services.notifications.services.email_service import EmailService
from services.notifications.services.sms_service import SmsService

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
TIMEOUT = "timeout"
SKIPPED = "skipped"
QUEUED = "queued"

EMAIL = "email"
SMS = "sms"


@dataclass
class ChannelOutcome:
    channel: str
    recipient: Optional[str]
    status: str
    error: Optional[str] = None


@dataclass
class DispatchOutcome:
    outcomes: Dict[str, ChannelOutcome] = field(default_factory=dict)

    def sent(self, channel: str) -> bool:
        outcome = self.outcomes.get(channel)
        return outcome is not None and outcome.status == SENT

    @property
    def email_sent(self) -> bool:
        return self.sent(EMAIL)

    @property
    def sms_sent(self) -> bool:
        return self.sent(SMS)

    @property
    def undelivered_channels(self) -> List[str]:
        """Canales que fallaron o no respondieron dentro del presupuesto"""
        return [c for c, o in self.outcomes.items() if o.status in (FAILED, TIMEOUT)]

    @property
    def all_sent(self) -> bool:
        statuses = [o.status for o in self.outcomes.values()]
        return SENT in statuses and not self.undelivered_channels


async def load_order_summary(db: AsyncSession, order_id: uuid.UUID) -> OrderSummary:
    """Armar el resumen plano de una orden (orden, evento, líneas, tickets)"""
    order = (await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if order is None:
        raise NotFoundError(f"Orden {order_id} no encontrada")

    event_name = None
    if order.event_id:
        event_name = (await db.execute(
            select(Event.name).where(Event.id == order.event_id)
        )).scalar_one_or_none()

    ambassador_name = ambassador_phone = None
    if order.ambassador_id:
        row = (await db.execute(
            select(Ambassador.full_name, Ambassador.phone).where(Ambassador.id == order.ambassador_id)
        )).one_or_none()
        if row:
            ambassador_name, ambassador_phone = row

    lines = (await db.execute(
        select(OrderLine).where(OrderLine.order_id == order_id).order_by(OrderLine.position)
    )).scalars().all()
    line_names = {line.id: line.pass_name_snapshot for line in lines}

    tickets = (await db.execute(
        select(Ticket)
        .where(Ticket.order_id == order_id, Ticket.status != "REVOKED")
        .order_by(Ticket.issued_at, Ticket.unit_index)
    )).scalars().all()

    return OrderSummary(
        order_id=str(order.id),
        status=order.status,
        channel=order.channel,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        customer_email=order.customer_email,
        total_price=order.total_price,
        currency=order.currency,
        event_name=event_name,
        ambassador_name=ambassador_name,
        ambassador_phone=ambassador_phone,
        lines=[
            OrderLineSummary(line.pass_name_snapshot, line.quantity, line.unit_price_snapshot)
            for line in lines
        ],
        tickets=[
            TicketSummary(
                ticket_id=str(ticket.id),
                pass_name=line_names.get(ticket.order_line_id, ""),
                secure_token=ticket.secure_token,
                code_image_url=ticket.code_image_url,
            )
            for ticket in tickets
        ],
    )


class NotificationService:
    """
    Envía email y SMS en paralelo, cada uno aislado del otro.

    El despacho completo está acotado por `budget_seconds`: lo que no
    terminó a tiempo se cancela y queda como TIMEOUT. Nunca lanza
    excepciones por fallas del proveedor.
    """

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        sms_service: Optional[SmsService] = None,
        budget_seconds: Optional[float] = None
    ):
        self.email_service = email_service or EmailService()
        self.sms_service = sms_service or SmsService()
        self.budget_seconds = budget_seconds if budget_seconds is not None else settings.NOTIFICATION_BUDGET_SECONDS

    async def dispatch_tickets(
        self,
        order: OrderSummary,
        channels: Iterable[str] = (EMAIL, SMS)
    ) -> DispatchOutcome:
        """Email consolidado con todos los tickets + SMS de confirmación"""
        jobs = {}
        if EMAIL in channels:
            jobs[EMAIL] = (order.customer_email, lambda: self.email_service.send_tickets_email(order))
        if SMS in channels:
            jobs[SMS] = (order.customer_phone, lambda: self.sms_service.send_tickets_sms(order))
        return await self._dispatch(order.order_id, jobs)

    async def dispatch_order_received(
        self,
        order: OrderSummary,
        channels: Iterable[str] = (EMAIL, SMS)
    ) -> DispatchOutcome:
        """Aviso de orden recibida: email al cliente, SMS al embajador si lo hay"""
        jobs = {}
        if EMAIL in channels:
            jobs[EMAIL] = (order.customer_email, lambda: self.email_service.send_order_received_email(order))
        if SMS in channels:
            jobs[SMS] = (order.ambassador_phone, lambda: self.sms_service.send_order_received_sms(order))
        return await self._dispatch(order.order_id, jobs)

    async def _dispatch(
        self,
        order_id: str,
        jobs: Dict[str, Tuple[Optional[str], Callable[[], Awaitable[bool]]]]
    ) -> DispatchOutcome:
        outcome = DispatchOutcome()
        tasks = {}

        for channel, (recipient, factory) in jobs.items():
            if not recipient:
                outcome.outcomes[channel] = ChannelOutcome(channel, None, SKIPPED, "sin destinatario")
                continue
            tasks[channel] = asyncio.ensure_future(factory())

        if not tasks:
            return outcome

        done, pending = await asyncio.wait(tasks.values(), timeout=self.budget_seconds)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"Orden {order_id}: presupuesto de notificaciones ({self.budget_seconds}s) agotado, "
                f"{len(pending)} envío(s) abandonados"
            )

        for channel, task in tasks.items():
            recipient = jobs[channel][0]
            if task in pending:
                outcome.outcomes[channel] = ChannelOutcome(channel, recipient, TIMEOUT, "presupuesto agotado")
            elif task.exception() is not None:
                error = task.exception()
                logger.error(f"Orden {order_id}: error enviando {channel}: {error}")
                outcome.outcomes[channel] = ChannelOutcome(channel, recipient, FAILED, str(error))
            elif task.result():
                outcome.outcomes[channel] = ChannelOutcome(channel, recipient, SENT)
            else:
                outcome.outcomes[channel] = ChannelOutcome(channel, recipient, FAILED, "el proveedor rechazó el envío")

        return outcome

    async def record(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        outcome: DispatchOutcome,
        kind: str = "tickets"
    ):
        """Guardar un NotificationRecord por canal"""
        for channel_outcome in outcome.outcomes.values():
            db.add(NotificationRecord(
                id=uuid.uuid4(),
                order_id=order_id,
                channel=channel_outcome.channel,
                kind=kind,
                recipient=channel_outcome.recipient,
                status=channel_outcome.status,
                error=channel_outcome.error,
            ))
        await db.commit()
