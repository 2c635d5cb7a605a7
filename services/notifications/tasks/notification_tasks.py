"""Tareas Celery para reintentar notificaciones fuera del request"""
from typing import Dict, List, Optional, Sequence
import asyncio
import logging
import uuid

from app.core.config import settings
from shared.cache.celery_app import celery_app
from shared.database.connection import create_task_session_maker
from shared.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

MAX_NOTIFICATION_RETRIES = 5


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def deliver_order_notifications(
    db,
    order_id: str,
    channels: Sequence[str],
    kind: str = "tickets",
    notification_service=None
) -> Dict:
    """
    Reenviar los canales indicados de una orden y registrar el resultado

    Returns:
        dict con los canales que siguen sin entregarse
    """
    from services.notifications.services.notification_service import (
        NotificationService,
        load_order_summary,
    )

    summary = await load_order_summary(db, uuid.UUID(order_id))
    service = notification_service or NotificationService()

    if kind == "tickets":
        if summary.status != "PAID" or not summary.tickets:
            logger.info(f"[CELERY] Orden {order_id} en {summary.status} sin tickets vigentes, no se reenvía")
            return {"order_id": order_id, "undelivered": []}
        outcome = await service.dispatch_tickets(summary, channels)
    else:
        outcome = await service.dispatch_order_received(summary, channels)

    await service.record(db, uuid.UUID(order_id), outcome, kind=kind)
    return {"order_id": order_id, "undelivered": outcome.undelivered_channels}


@celery_app.task(
    name="send_order_notifications",
    bind=True,
    autoretry_for=(ConnectionError, OSError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": MAX_NOTIFICATION_RETRIES},
)
def send_order_notifications_task(self, order_id: str, channels: List[str], kind: str = "tickets"):
    """
    Reintento de email/SMS de una orden

    Solo se reintentan los canales que siguen fallando, con backoff exponencial.
    """
    logger.info(f"[CELERY] Reenviando {channels} ({kind}) para orden {order_id}, intento {self.request.retries + 1}")

    async def deliver():
        engine, session_maker = create_task_session_maker()
        try:
            async with session_maker() as db:
                return await deliver_order_notifications(db, order_id, channels, kind)
        finally:
            await engine.dispose()

    result = run_async(deliver())

    undelivered = result["undelivered"]
    if undelivered:
        if self.request.retries >= MAX_NOTIFICATION_RETRIES:
            logger.error(f"[CELERY] Orden {order_id}: {undelivered} sin entregar tras {self.request.retries + 1} intentos")
            return result
        countdown = backoff_delay(self.request.retries, initial_delay=30, max_delay=600)
        logger.warning(f"[CELERY] Orden {order_id}: {undelivered} sin entregar, reintento en {countdown:.0f}s")
        raise self.retry(
            kwargs={"order_id": order_id, "channels": undelivered, "kind": kind},
            countdown=countdown,
        )

    logger.info(f"[CELERY] Notificaciones de orden {order_id} entregadas")
    return result


def _enqueue_retry(order_id: str, channels: List[str], kind: str, countdown: int):
    send_order_notifications_task.apply_async(
        kwargs={"order_id": order_id, "channels": list(channels), "kind": kind},
        countdown=countdown,
        retry=False,
    )


async def schedule_notification_retry(order_id: str, channels: List[str], kind: str = "tickets",
                                      countdown: Optional[int] = None, timeout: Optional[float] = None) -> bool:
    """
    Encolar el reintento de notificaciones

    La publicación corre en un thread y no espera más que el presupuesto de
    notificaciones. Un broker caído o lento se registra en el log y nunca
    afecta al request.
    """
    if countdown is None:
        countdown = settings.NOTIFICATION_RETRY_COUNTDOWN
    if timeout is None:
        timeout = settings.NOTIFICATION_BUDGET_SECONDS

    try:
        await asyncio.wait_for(
            asyncio.to_thread(_enqueue_retry, order_id, channels, kind, countdown),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"Broker sin respuesta tras {timeout}s, reintento de {channels} no encolado para orden {order_id}")
        return False
    except Exception as e:
        logger.error(f"No se pudo encolar reintento de notificaciones para orden {order_id}: {e}")
        return False

    logger.info(f"Reintento de {channels} encolado para orden {order_id}")
    return True
