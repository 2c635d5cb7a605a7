"""Adaptadores de canal: online, embajador (efectivo) y punto de venta"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Ambassador, OutletPassStock, PassOffering
from shared.utils.exceptions import AuthorizationError, ValidationError
from services.notifications.services.notification_service import (
    EMAIL,
    SMS,
    NotificationService,
    load_order_summary,
)
from services.pass_sales.models.order import CreateOrderRequest, CustomerData, OrderLineRequest, PosOrderRequest
from services.pass_sales.services.inventory_service import InventoryLedger, PoolKind, PoolRef
from services.pass_sales.services.order_service import (
    CustomerInfo,
    OrderCreation,
    OrderDraft,
    OrderService,
    ResolvedLine,
)
from services.pass_sales.services.order_state_machine import Channel, PaymentMethod

logger = logging.getLogger(__name__)


def _customer(data: CustomerData) -> CustomerInfo:
    return CustomerInfo(
        name=data.name.strip(),
        phone=data.phone.strip(),
        email=str(data.email).lower(),
        city=data.city.strip(),
        district=data.district.strip() if data.district else None,
    )


class ChannelAdapter:
    """Validaciones comunes: método de pago, pases, snapshots de precio"""

    channel: Channel
    allowed_methods: Set[PaymentMethod] = set()
    notify_channels: Iterable[str] = ()

    def __init__(
        self,
        order_service: Optional[OrderService] = None,
        notification_service: Optional[NotificationService] = None
    ):
        self.order_service = order_service or OrderService()
        self.notification_service = notification_service

    def check_payment_method(self, payment_method: str) -> PaymentMethod:
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            method = None
        if method is None or method not in self.allowed_methods:
            raise ValidationError(
                "Método de pago inválido",
                {
                    "payment_method": payment_method,
                    "allowed": sorted(m.value for m in self.allowed_methods),
                },
            )
        return method

    @staticmethod
    def check_distinct_lines(lines: List[OrderLineRequest]):
        pass_ids = [line.pool_ref for line in lines]
        if len(set(pass_ids)) != len(pass_ids):
            raise ValidationError("Cada pase debe aparecer una sola vez en la orden")

    async def load_passes(self, db: AsyncSession, pass_ids: List[uuid.UUID]) -> Dict[uuid.UUID, PassOffering]:
        passes = (await db.execute(
            select(PassOffering).where(PassOffering.id.in_(pass_ids))
        )).scalars().all()
        by_id = {p.id: p for p in passes}
        missing = [str(pid) for pid in pass_ids if pid not in by_id]
        if missing:
            raise ValidationError("Uno o más pases no existen", {"pass_ids": missing})
        return by_id

    @staticmethod
    def single_event(passes: Iterable[PassOffering], event_id: Optional[uuid.UUID] = None) -> uuid.UUID:
        event_ids = {p.event_id for p in passes}
        if event_id is not None:
            event_ids.add(event_id)
        if len(event_ids) != 1:
            raise ValidationError("Todos los pases deben pertenecer al mismo evento")
        return event_ids.pop()

    @staticmethod
    def check_pass_allows(offering: PassOffering, method: PaymentMethod):
        allowed = offering.allowed_payment_methods
        if allowed and method.value not in allowed:
            raise ValidationError(
                f"El pase '{offering.name}' no acepta el método de pago {method.value}",
                {"pass_id": str(offering.id), "allowed": allowed},
            )

    @staticmethod
    def snapshot_price(offering: PassOffering, line: OrderLineRequest) -> Decimal:
        """El precio siempre es el del servidor; un priceClaim distinto solo se registra"""
        price = Decimal(offering.price)
        if line.price_claim is not None and Decimal(line.price_claim) != price:
            logger.warning(
                f"priceClaim {line.price_claim} distinto al precio del servidor {price} "
                f"para pase {offering.id}, se usa el del servidor"
            )
        return price

    async def notify_received(self, db: AsyncSession, creation: OrderCreation):
        """Aviso de orden recibida; nunca afecta a la orden"""
        if self.notification_service is None or not self.notify_channels or creation.is_duplicate:
            return
        order_id = creation.order.id
        try:
            summary = await load_order_summary(db, order_id)
            outcome = await self.notification_service.dispatch_order_received(summary, self.notify_channels)
            await self.notification_service.record(db, order_id, outcome, kind="order_received")
        except Exception as e:
            logger.error(f"Error notificando orden recibida {order_id}: {e}", exc_info=True)
            await db.rollback()
            creation.order = await self.order_service.get_order(db, order_id)


class OnlineCheckoutAdapter(ChannelAdapter):
    """Checkout online / app externa sobre los pools globales"""

    channel = Channel.ONLINE
    allowed_methods = {PaymentMethod.ONLINE, PaymentMethod.EXTERNAL_APP}

    async def build_draft(
        self,
        db: AsyncSession,
        request: CreateOrderRequest,
        current_user: Optional[Dict] = None,
        idempotency_key: Optional[str] = None
    ) -> OrderDraft:
        method = self.check_payment_method(request.payment_method)
        self.check_distinct_lines(request.lines)
        passes = await self.load_passes(db, [line.pool_ref for line in request.lines])

        lines = []
        for line in request.lines:
            offering = passes[line.pool_ref]
            self.check_pass_allows(offering, method)
            lines.append(ResolvedLine(
                pool=PoolRef(PoolKind.PASS, offering.id),
                pass_id=offering.id,
                pass_name=offering.name,
                unit_price=self.snapshot_price(offering, line),
                quantity=line.quantity,
            ))

        user_id = current_user.get("user_id") if current_user else None
        return OrderDraft(
            payment_method=method,
            customer=_customer(request.customer),
            lines=lines,
            event_id=self.single_event(passes.values()),
            user_id=user_id,
            idempotency_key=idempotency_key or request.idempotency_key,
            created_by=user_id,
            created_by_type="customer",
        )

    async def create_order(self, db: AsyncSession, request: CreateOrderRequest,
                           current_user: Optional[Dict] = None,
                           idempotency_key: Optional[str] = None) -> OrderCreation:
        draft = await self.build_draft(db, request, current_user, idempotency_key)
        creation = await self.order_service.create_order(db, draft)
        await self.notify_received(db, creation)
        return creation


class AmbassadorCashAdapter(OnlineCheckoutAdapter):
    """Venta en efectivo a través de un embajador activo"""

    channel = Channel.AMBASSADOR
    allowed_methods = {PaymentMethod.AMBASSADOR_CASH}
    notify_channels = (EMAIL, SMS)

    async def build_draft(self, db, request, current_user=None, idempotency_key=None) -> OrderDraft:
        if request.ambassador_id is None:
            raise ValidationError("ambassadorId es requerido para pagos en efectivo")

        draft = await super().build_draft(db, request, current_user, idempotency_key)

        status = (await db.execute(
            select(Ambassador.status).where(Ambassador.id == request.ambassador_id)
        )).scalar_one_or_none()
        if status != "ACTIVE":
            logger.warning(f"Orden en efectivo con embajador inválido o inactivo: {request.ambassador_id}")
            raise AuthorizationError("Embajador no válido o inactivo", status_code=403)

        draft.ambassador_id = request.ambassador_id
        draft.created_by_type = "ambassador"
        return draft


class PosOutletAdapter(ChannelAdapter):
    """Punto de venta: stock propio del outlet, orden pendiente de aprobación"""

    channel = Channel.POS
    allowed_methods = {PaymentMethod.POS}
    notify_channels = (EMAIL,)

    async def create_order(
        self,
        db: AsyncSession,
        pos_session: Dict,
        request: PosOrderRequest
    ) -> OrderCreation:
        """
        Args:
            pos_session: Sesión validada {'pos_user_id', 'outlet_id'}
            request: Cliente, líneas y evento
        """
        outlet_id = pos_session["outlet_id"]
        method = self.check_payment_method(PaymentMethod.POS.value)
        self.check_distinct_lines(request.lines)
        pass_ids = [line.pool_ref for line in request.lines]

        passes = await self.load_passes(db, pass_ids)
        self.single_event(passes.values(), request.event_id)

        stock_rows = (await db.execute(
            select(OutletPassStock.id, OutletPassStock.pass_id).where(
                OutletPassStock.outlet_id == outlet_id,
                OutletPassStock.event_id == request.event_id,
                OutletPassStock.pass_id.in_(pass_ids),
            )
        )).all()
        stock_by_pass = {pass_id: stock_id for stock_id, pass_id in stock_rows}
        missing = [str(pid) for pid in pass_ids if pid not in stock_by_pass]
        if missing:
            raise ValidationError("Pases sin stock asignado en este punto de venta", {"pass_ids": missing})

        lines = []
        for line in request.lines:
            offering = passes[line.pool_ref]
            self.check_pass_allows(offering, method)
            lines.append(ResolvedLine(
                pool=PoolRef(PoolKind.OUTLET, stock_by_pass[offering.id]),
                pass_id=offering.id,
                pass_name=offering.name,
                unit_price=self.snapshot_price(offering, line),
                quantity=line.quantity,
            ))

        draft = OrderDraft(
            payment_method=method,
            customer=_customer(request.customer),
            lines=lines,
            event_id=request.event_id,
            outlet_id=outlet_id,
            pos_user_id=pos_session["pos_user_id"],
            created_by=str(pos_session["pos_user_id"]),
            created_by_type="pos",
        )
        creation = await self.order_service.create_order(db, draft)
        await self.notify_received(db, creation)
        return creation

    async def list_stock(self, db: AsyncSession, outlet_id: uuid.UUID, event_id: uuid.UUID) -> List[Dict]:
        """Stock del outlet para un evento con unidades restantes"""
        rows = (await db.execute(
            select(OutletPassStock, PassOffering)
            .join(PassOffering, PassOffering.id == OutletPassStock.pass_id)
            .where(OutletPassStock.outlet_id == outlet_id, OutletPassStock.event_id == event_id)
            .order_by(PassOffering.price)
        )).all()
        ledger = InventoryLedger()
        result = []
        for stock, offering in rows:
            result.append({
                "passId": str(offering.id),
                "name": offering.name,
                "price": float(offering.price),
                "isActive": bool(stock.is_active and offering.is_active),
                "maxQuantity": stock.max_quantity,
                "soldQuantity": stock.sold_quantity,
                "remaining": await ledger.remaining(db, PoolRef(PoolKind.OUTLET, stock.id)),
            })
        return result


def adapter_for_payment_method(
    payment_method: str,
    order_service: Optional[OrderService] = None,
    notification_service: Optional[NotificationService] = None
) -> ChannelAdapter:
    """POST /orders atiende online y efectivo; POS tiene su propia ruta"""
    if payment_method == PaymentMethod.AMBASSADOR_CASH.value:
        return AmbassadorCashAdapter(order_service, notification_service)
    if payment_method in (PaymentMethod.ONLINE.value, PaymentMethod.EXTERNAL_APP.value):
        return OnlineCheckoutAdapter(order_service, notification_service)
    raise ValidationError(
        "Método de pago inválido",
        {"payment_method": payment_method, "allowed": ["ambassador_cash", "external_app", "online"]},
    )
