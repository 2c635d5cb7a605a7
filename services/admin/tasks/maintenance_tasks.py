"""Tareas Celery de mantenimiento de órdenes"""
import logging

from shared.cache.celery_app import celery_app
from shared.database.connection import create_task_session_maker
from services.notifications.tasks.notification_tasks import run_async

logger = logging.getLogger(__name__)


@celery_app.task(name="expire_pending_cash_orders")
def expire_pending_cash_orders_task(older_than_hours: int = None):
    """Cancelar órdenes en efectivo vencidas y devolver su stock"""
    from services.admin.services.admin_orders_service import AdminOrdersService

    async def expire():
        engine, session_maker = create_task_session_maker()
        try:
            async with session_maker() as db:
                return await AdminOrdersService().expire_pending_cash_orders(db, older_than_hours)
        finally:
            await engine.dispose()

    expired = run_async(expire())
    logger.info(f"[CELERY] {len(expired)} órdenes en efectivo expiradas")
    return {"expired": len(expired), "order_ids": [str(order_id) for order_id in expired]}
