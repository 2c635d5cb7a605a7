"""Rutas de pagos online (Flouci)"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.session import get_db
from shared.utils.exceptions import AuthorizationError, ValidationError
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.pass_sales.dependencies import get_payment_service
from services.payments.models.payment import (
    GeneratePaymentRequest,
    GeneratePaymentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from services.payments.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "x-flouci-signature"


@router.post("/generate", response_model=GeneratePaymentResponse)
@limiter.limit(RATE_LIMITS["payment"])
async def generate_payment(
    request: Request,
    payment_request: GeneratePaymentRequest,
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Crear sesión de pago Flouci; el monto se calcula en el servidor"""
    payment = await payment_service.create_payment_link(db, payment_request.order_id)
    return GeneratePaymentResponse(
        order_id=payment_request.order_id,
        payment_id=payment.payment_id,
        payment_link=payment.link,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
@limiter.limit(RATE_LIMITS["payment"])
async def verify_payment(
    request: Request,
    verify_request: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Verificar un pago tras el redirect de la pasarela

    Solo SUCCESS modifica la orden (PENDING_ONLINE -> PAID + tickets).
    Llamarlo de nuevo sobre una orden ya pagada devuelve alreadyProcessed=true.
    """
    outcome = await payment_service.verify_payment(db, verify_request.order_id, verify_request.payment_id)
    fulfillment = outcome.fulfillment
    return VerifyPaymentResponse(
        status=outcome.status.value,
        order_updated=outcome.order_updated,
        already_processed=outcome.already_processed,
        order_id=outcome.order_id,
        tickets_generated=fulfillment.tickets_generated if fulfillment else False,
        tickets_count=fulfillment.tickets_count if fulfillment else 0,
        notifications_sent=fulfillment.notifications_sent if fulfillment else None,
        warnings=fulfillment.warnings if fulfillment else [],
    )


@router.post("/webhook")
@limiter.limit(RATE_LIMITS["webhook"])  # La pasarela puede reenviar muchas veces
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Webhook de Flouci

    No requiere autenticación: la firma HMAC del body crudo se verifica
    antes de confiar en el payload. Reentregas son idempotentes.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not payment_service.gateway.verify_webhook_signature(raw_body, signature):
        logger.warning(f"Webhook con firma inválida desde {request.client.host if request.client else 'desconocido'}")
        raise AuthorizationError("Firma de webhook inválida", status_code=401)

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationError("Body de webhook no es JSON válido")
    if not isinstance(payload, dict):
        raise ValidationError("Body de webhook no es un objeto JSON")

    result = await payment_service.handle_webhook(db, payload)
    logger.info(f"Webhook procesado: {result}")
    return result
