"""Rutas de administración de órdenes"""
from typing import Dict, Optional
from uuid import UUID
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.auth.dependencies import get_current_admin
from shared.database.session import get_db
from shared.utils.exceptions import AuthorizationError, PassSalesError
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.admin.models.admin import OrderActionRequest
from services.admin.services.admin_orders_service import AdminOrdersService, CompensationResult
from services.pass_sales.dependencies import get_admin_orders_service, get_order_service
from services.pass_sales.models.order import (
    ApproveOrderResponse,
    ExpireOrdersResponse,
    OrderActionResponse,
    serialize_order,
)
from services.pass_sales.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _action_response(db: AsyncSession, order_service: OrderService, result: CompensationResult,
                           include_order: bool = True) -> OrderActionResponse:
    order = serialize_order(await order_service.get_order(db, result.order_id)) if include_order else None
    return OrderActionResponse(
        order=order,
        order_id=result.order_id,
        status=result.status,
        stock_released=order.stock_released if order else result.stock_released,
        already_processed=result.already_processed,
    )


# ==================== APROBACIÓN ====================

@router.post("/orders/{order_id}/approve", response_model=ApproveOrderResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def approve_order(
    request: Request,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    service: AdminOrdersService = Depends(get_admin_orders_service),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Aprobar una orden POS (PENDING_ADMIN_APPROVAL) o en efectivo (PENDING_CASH)

    La orden pasa a PAID y se emiten sus tickets. Repetir la llamada devuelve
    el mismo resultado lógico con alreadyApproved=true, sin duplicar tickets.
    Requiere autenticación de admin.
    """
    try:
        result = await service.approve_order(db, order_id, current_user)
        order = await order_service.get_order(db, order_id)
    except PassSalesError:
        raise
    except Exception as e:
        logger.error(f"Exception aprobando orden {order_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error aprobando la orden"
        )

    fulfillment = result.fulfillment

    return ApproveOrderResponse(
        order=serialize_order(order),
        tickets_generated=fulfillment.tickets_generated,
        tickets_count=fulfillment.tickets_count,
        notifications_sent=fulfillment.notifications_sent,
        email_sent=fulfillment.email_sent,
        sms_sent=fulfillment.sms_sent,
        already_approved=result.already_approved,
        warnings=fulfillment.warnings,
    )


# ==================== COMPENSACIONES ====================

@router.post("/orders/{order_id}/cancel", response_model=OrderActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def cancel_order(
    request: Request,
    order_id: UUID,
    body: Optional[OrderActionRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    service: AdminOrdersService = Depends(get_admin_orders_service),
    order_service: OrderService = Depends(get_order_service)
):
    """Cancelar una orden en efectivo pendiente y devolver su stock"""
    result = await service.cancel_order(db, order_id, current_user, body.reason if body else None)
    return await _action_response(db, order_service, result)


@router.post("/orders/{order_id}/refund", response_model=OrderActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def refund_order(
    request: Request,
    order_id: UUID,
    body: Optional[OrderActionRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    service: AdminOrdersService = Depends(get_admin_orders_service),
    order_service: OrderService = Depends(get_order_service)
):
    """Reembolsar una orden pagada: tickets revocados y stock devuelto"""
    result = await service.refund_order(db, order_id, current_user, body.reason if body else None)
    return await _action_response(db, order_service, result)


@router.delete("/orders/{order_id}", response_model=OrderActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def remove_order(
    request: Request,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_admin),
    service: AdminOrdersService = Depends(get_admin_orders_service),
    order_service: OrderService = Depends(get_order_service)
):
    """Eliminar una orden no pagada; su stock se devuelve en la misma operación"""
    result = await service.remove_order(db, order_id, current_user)
    return await _action_response(db, order_service, result, include_order=False)


# ==================== MANTENIMIENTO ====================

@router.post("/admin/orders/expire-pending-cash", response_model=ExpireOrdersResponse)
async def expire_pending_cash_orders(
    x_cron_secret: Optional[str] = Header(default=None, alias="x-cron-secret"),
    db: AsyncSession = Depends(get_db),
    service: AdminOrdersService = Depends(get_admin_orders_service)
):
    """
    Cancelar órdenes en efectivo sin pago tras PENDING_CASH_EXPIRATION_HOURS

    Pensado para un cron externo; el beat de Celery ejecuta la misma lógica.
    """
    if not settings.CRON_SECRET or not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise AuthorizationError("Cron secret inválido", status_code=401)

    expired = await service.expire_pending_cash_orders(db)
    return ExpireOrdersResponse(expired=len(expired), order_ids=expired)
