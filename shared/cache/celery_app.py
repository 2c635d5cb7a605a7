"""
Configuración de Celery para tareas asíncronas

Reintentos de notificaciones y limpieza de órdenes en efectivo vencidas.
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue, Exchange
import os
import logging

logger = logging.getLogger(__name__)

# Configuración de Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_MAX_CONNECTIONS = int(os.getenv("CELERY_REDIS_MAX_CONNECTIONS", "50"))

# Crear aplicación Celery
celery_app = Celery(
    "andiamo",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "services.notifications.tasks.notification_tasks",
        "services.admin.tasks.maintenance_tasks",
    ]
)

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

celery_app.conf.task_queues = (
    # Notificaciones de tickets ya pagados
    Queue("high_priority", priority_exchange, routing_key="high"),
    Queue("default", default_exchange, routing_key="default"),
    # Limpieza periódica
    Queue("low_priority", default_exchange, routing_key="low"),
)

celery_app.conf.task_routes = {
    "send_order_notifications": {"queue": "high_priority"},
    "expire_pending_cash_orders": {"queue": "low_priority"},
}

celery_app.conf.beat_schedule = {
    "expire-pending-cash-orders": {
        "task": "expire_pending_cash_orders",
        "schedule": crontab(minute="*/15"),
    },
}

celery_app.conf.update(
    # Serialización
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,

    # Solo 1 tarea por worker a la vez
    worker_prefetch_multiplier=1,

    broker_pool_limit=REDIS_MAX_CONNECTIONS,
    redis_max_connections=REDIS_MAX_CONNECTIONS,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    # ACK late: confirmar tarea solo cuando termina
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    worker_concurrency=4,
    worker_max_tasks_per_child=1000,

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_annotations={
        "send_order_notifications": {"rate_limit": "30/m"},
    },
)

logger.info(
    "Celery configurado - Broker: %s, Pool limit: %d, Concurrency: %d",
    REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL,
    REDIS_MAX_CONNECTIONS,
    celery_app.conf.worker_concurrency
)
