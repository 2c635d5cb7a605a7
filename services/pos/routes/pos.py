"""Rutas de punto de venta (sesión por cookie posToken)"""
from typing import Dict, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.session import get_db
from shared.utils.exceptions import PassSalesError
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.notifications.services.notification_service import NotificationService
from services.pass_sales.dependencies import (
    get_notification_service,
    get_order_service,
    get_pos_auth_service,
)
from services.pass_sales.models.order import CreateOrderResponse, PosOrderRequest, serialize_order
from services.pass_sales.services.channel_adapters import PosOutletAdapter
from services.pass_sales.services.order_service import OrderService
from services.pos.services.pos_auth_service import POS_COOKIE_NAME, PosAuthService

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_pos_session(
    slug: str,
    pos_token: Optional[str] = Cookie(default=None, alias=POS_COOKIE_NAME),
    db: AsyncSession = Depends(get_db),
    auth_service: PosAuthService = Depends(get_pos_auth_service)
) -> Dict:
    '''Sesión POS validada contra el outlet de la URL'''
    return await auth_service.resolve_session(db, slug, pos_token)


@router.post("/{slug}/orders", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["pos"])
async def create_pos_order(
    request: Request,
    slug: str,
    order_request: PosOrderRequest,
    session: Dict = Depends(get_pos_session),
    db: AsyncSession = Depends(get_db),
    order_service: OrderService = Depends(get_order_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Crear orden en el punto de venta

    Descuenta del stock propio del outlet y queda en PENDING_ADMIN_APPROVAL
    hasta que un admin la apruebe.
    """
    adapter = PosOutletAdapter(order_service, notification_service)
    try:
        creation = await adapter.create_order(db, session, order_request)
        order = await order_service.get_order(db, creation.order.id)
    except PassSalesError:
        raise
    except Exception as e:
        logger.error(f"Exception en create_pos_order ({slug}): {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error procesando la orden"
        )

    logger.info(f"Orden POS {order.id} creada en {slug} por {session['pos_user_id']}")
    return CreateOrderResponse(order=serialize_order(order), is_duplicate=creation.is_duplicate)


@router.get("/{slug}/events/{event_id}/passes")
async def list_outlet_passes(
    event_id: UUID,
    session: Dict = Depends(get_pos_session),
    db: AsyncSession = Depends(get_db)
):
    """Pases con stock asignado al outlet para un evento"""
    passes = await PosOutletAdapter().list_stock(db, session["outlet_id"], event_id)
    return {"outlet": session["outlet_slug"], "eventId": str(event_id), "passes": passes}
