"""Rutas de órdenes (canales online y embajador)"""
from typing import Dict, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from shared.auth.dependencies import get_optional_user
from shared.database.session import get_db
from shared.utils.exceptions import PassSalesError
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.notifications.services.notification_service import NotificationService
from services.pass_sales.dependencies import get_notification_service, get_order_service
from services.pass_sales.models.order import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderResponse,
    serialize_order,
)
from services.pass_sales.services.channel_adapters import adapter_for_payment_method
from services.pass_sales.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["order"])
async def create_order(
    request: Request,  # Necesario para rate limiter
    response: Response,
    order_request: CreateOrderRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    current_user: Optional[Dict] = Depends(get_optional_user),
    order_service: OrderService = Depends(get_order_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Crear orden online, app externa o efectivo con embajador

    El stock se reserva al crear la orden. Con Idempotency-Key, un reintento
    devuelve la orden original con isDuplicate=true y status 200.
    """
    adapter = adapter_for_payment_method(order_request.payment_method, order_service, notification_service)
    try:
        creation = await adapter.create_order(db, order_request, current_user, idempotency_key)
        order = await order_service.get_order(db, creation.order.id)
    except PassSalesError:
        raise
    except Exception as e:
        logger.error(f"Exception en create_order: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error procesando la orden"
        )

    if creation.is_duplicate:
        response.status_code = status.HTTP_200_OK
    return CreateOrderResponse(order=serialize_order(order), is_duplicate=creation.is_duplicate)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """Estado actual de una orden (la página de pago lo consulta tras el poller)"""
    order = await order_service.get_order(db, order_id)
    return serialize_order(order)
