"""Confirmación de pagos online: verificación server-side y webhook"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Order
from shared.utils.exceptions import InvalidTransition, NotFoundError, ValidationError
from services.fulfillment.services.fulfillment_service import FulfillmentOrchestrator, FulfillmentResult
from services.pass_sales.services.order_service import OrderService
from services.pass_sales.services.order_state_machine import (
    OrderStateMachine,
    OrderStatus,
    PaymentMethod,
    TransitionResult,
)
from services.payments.services.flouci_service import (
    FlouciService,
    GatewayPayment,
    GatewayStatus,
    GatewayVerification,
    to_millimes,
)

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    order_id: uuid.UUID
    status: GatewayStatus
    order_updated: bool = False
    already_processed: bool = False
    fulfillment: Optional[FulfillmentResult] = None


class PaymentService:
    """
    Lleva órdenes PENDING_ONLINE a PAID (o FAILED desde el webhook).

    La verificación del cliente y el webhook comparten el mismo camino:
    transición condicional + fulfillment idempotente.
    """

    def __init__(
        self,
        gateway: Optional[FlouciService] = None,
        fulfillment: Optional[FulfillmentOrchestrator] = None,
        order_service: Optional[OrderService] = None,
        state_machine: Optional[OrderStateMachine] = None
    ):
        self.gateway = gateway or FlouciService()
        self.fulfillment = fulfillment or FulfillmentOrchestrator()
        self.order_service = order_service or OrderService()
        self.state_machine = state_machine or OrderStateMachine()

    async def _payment_row(self, db: AsyncSession, order_id: uuid.UUID):
        row = (await db.execute(
            select(Order.status, Order.payment_method, Order.total_price, Order.payment_reference)
            .where(Order.id == order_id)
        )).one_or_none()
        if row is None:
            raise NotFoundError(f"Orden {order_id} no encontrada")
        return row

    async def create_payment_link(self, db: AsyncSession, order_id: uuid.UUID) -> GatewayPayment:
        """Generar link de pago para una orden online pendiente"""
        status, payment_method, total_price, _ = await self._payment_row(db, order_id)

        if payment_method != PaymentMethod.ONLINE.value:
            raise ValidationError("La orden no es de pago online", {"payment_method": payment_method})
        if status != OrderStatus.PENDING_ONLINE.value:
            raise InvalidTransition(
                f"La orden está en estado {status}, no se puede generar pago",
                current_status=status,
            )

        payment = await self.gateway.generate_payment(to_millimes(total_price), str(order_id))

        await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_reference=payment.payment_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return payment

    async def verify_payment(self, db: AsyncSession, order_id: uuid.UUID, payment_id: str) -> VerificationOutcome:
        """
        Verificar un pago contra la pasarela y confirmar la orden si corresponde

        FAILURE/EXPIRED/PENDING no modifican la orden: el webhook decide.
        """
        _, _, total_price, payment_reference = await self._payment_row(db, order_id)
        self._check_reference(order_id, payment_reference, payment_id)

        verification = await self.gateway.verify_payment(payment_id)
        logger.info(f"Verificación de pago {payment_id} (orden {order_id}): {verification.status.value}")
        self._check_tracking_id(order_id, verification)

        if verification.status != GatewayStatus.SUCCESS:
            return VerificationOutcome(order_id=order_id, status=verification.status)

        self._check_amount(order_id, total_price, verification)

        transition, fulfillment = await self._confirm_paid(db, order_id, payment_id, "payment_verify")
        return VerificationOutcome(
            order_id=order_id,
            status=verification.status,
            order_updated=transition.performed,
            already_processed=transition.is_duplicate,
            fulfillment=fulfillment,
        )

    async def handle_webhook(self, db: AsyncSession, payload: Dict) -> Dict:
        """
        Procesar notificación de la pasarela (firma ya verificada)

        Returns:
            dict con el resultado ("processed", "duplicate", "ignored", "conflict")
        """
        payment_id = payload.get("payment_id") or payload.get("paymentId")
        raw_status = str(payload.get("status", "")).upper()
        if not payment_id:
            raise ValidationError("Webhook sin payment_id")

        order_id = await self._find_order(db, payload.get("developer_tracking_id"), payment_id)
        if order_id is None:
            logger.warning(f"Webhook para pago {payment_id} sin orden asociada")
            return {"status": "ignored", "reason": "order_not_found"}

        try:
            status = GatewayStatus(raw_status)
        except ValueError:
            logger.warning(f"Webhook con estado desconocido: {raw_status}")
            return {"status": "ignored", "reason": "unknown_status"}

        if not self.gateway.webhook_secret:
            # Sin firma: el estado y el dueño del pago salen de la pasarela, no del payload
            _, _, total_price, payment_reference = await self._payment_row(db, order_id)
            self._check_reference(order_id, payment_reference, payment_id)
            verification = await self.gateway.verify_payment(payment_id)
            self._check_tracking_id(order_id, verification)
            if verification.status == GatewayStatus.SUCCESS:
                self._check_amount(order_id, total_price, verification)
            if verification.status != status:
                logger.warning(
                    f"Webhook sin firma para pago {payment_id} reporta {status.value}, "
                    f"la pasarela reporta {verification.status.value}"
                )
            status = verification.status

        try:
            if status == GatewayStatus.SUCCESS:
                transition, fulfillment = await self._confirm_paid(db, order_id, payment_id, "webhook")
                return {
                    "status": "processed" if transition.performed else "duplicate",
                    "orderId": str(order_id),
                    "ticketsCount": fulfillment.tickets_count,
                }

            if status in (GatewayStatus.FAILURE, GatewayStatus.EXPIRED):
                transition = await self.state_machine.transition(
                    db, order_id, OrderStatus.PENDING_ONLINE, OrderStatus.FAILED,
                    performed_by=payment_id, performed_by_type="webhook",
                    details={"gateway_status": status.value},
                )
                released = await self.order_service.release_order_stock(
                    db, order_id, reason=f"payment_{status.value.lower()}",
                    performed_by=payment_id, performed_by_type="webhook",
                )
                return {
                    "status": "processed" if transition.performed else "duplicate",
                    "orderId": str(order_id),
                    "stockReleased": released,
                }
        except InvalidTransition as e:
            logger.error(f"Webhook {status.value} para orden {order_id} en estado {e.current_status}")
            return {"status": "conflict", "orderId": str(order_id), "currentStatus": e.current_status}

        return {"status": "ignored", "reason": "pending"}

    @staticmethod
    def _check_reference(order_id: uuid.UUID, payment_reference: Optional[str], payment_id: str):
        """El pago debe ser el generado para esta orden"""
        if not payment_reference:
            logger.warning(f"paymentId {payment_id} para la orden {order_id}, que no tiene pago generado")
            raise ValidationError("La orden no tiene un pago generado")
        if payment_reference != payment_id:
            logger.warning(f"paymentId {payment_id} no corresponde a la orden {order_id} ({payment_reference})")
            raise ValidationError("El paymentId no corresponde a la orden")

    @staticmethod
    def _check_tracking_id(order_id: uuid.UUID, verification: GatewayVerification):
        tracking_id = verification.raw.get("developer_tracking_id")
        if tracking_id and str(tracking_id) != str(order_id):
            logger.warning(f"Pago {verification.payment_id} pertenece a {tracking_id}, no a la orden {order_id}")
            raise ValidationError("El paymentId no corresponde a la orden")

    @staticmethod
    def _check_amount(order_id: uuid.UUID, total_price, verification: GatewayVerification):
        expected = to_millimes(total_price)
        if verification.amount is not None and verification.amount != expected:
            logger.error(
                f"Monto pagado ({verification.amount}) distinto al de la orden {order_id} ({expected})"
            )
            raise ValidationError(
                "El monto pagado no coincide con la orden",
                {"paid": verification.amount, "expected": expected},
            )

    async def _confirm_paid(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        payment_id: str,
        source: str
    ) -> Tuple[TransitionResult, FulfillmentResult]:
        transition = await self.state_machine.transition(
            db, order_id, OrderStatus.PENDING_ONLINE, OrderStatus.PAID,
            performed_by=payment_id, performed_by_type=source,
            extra_values={"payment_reference": payment_id},
        )
        fulfillment = await self.fulfillment.fulfill(
            db, order_id,
            triggered_by=payment_id,
            triggered_by_type=source,
            previous_status=OrderStatus.PENDING_ONLINE.value,
        )
        return transition, fulfillment

    async def _find_order(self, db: AsyncSession, tracking_id: Optional[str], payment_id: str) -> Optional[uuid.UUID]:
        if tracking_id:
            try:
                order_id = uuid.UUID(str(tracking_id))
            except ValueError:
                order_id = None
            if order_id is not None:
                found = (await db.execute(select(Order.id).where(Order.id == order_id))).scalar_one_or_none()
                if found:
                    return found

        return (await db.execute(
            select(Order.id).where(Order.payment_reference == payment_id)
        )).scalars().first()
