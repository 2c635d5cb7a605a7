"""Factories de servicios inyectables con Depends (sobrescribibles en tests)"""
from fastapi import Depends

from services.admin.services.admin_orders_service import AdminOrdersService
from services.fulfillment.services.fulfillment_service import FulfillmentOrchestrator
from services.fulfillment.services.ticket_storage import LocalTicketStorage
from services.notifications.services.notification_service import NotificationService
from services.pass_sales.services.order_service import OrderService
from services.payments.services.flouci_service import FlouciService
from services.payments.services.payment_service import PaymentService
from services.pos.services.pos_auth_service import PosAuthService


def get_order_service() -> OrderService:
    return OrderService()


def get_notification_service() -> NotificationService:
    return NotificationService()


def get_ticket_storage() -> LocalTicketStorage:
    return LocalTicketStorage()


def get_fulfillment_orchestrator(
    storage: LocalTicketStorage = Depends(get_ticket_storage),
    notification_service: NotificationService = Depends(get_notification_service)
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(storage=storage, notification_service=notification_service)


def get_payment_gateway() -> FlouciService:
    return FlouciService()


def get_payment_service(
    gateway: FlouciService = Depends(get_payment_gateway),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment_orchestrator),
    order_service: OrderService = Depends(get_order_service)
) -> PaymentService:
    return PaymentService(gateway=gateway, fulfillment=fulfillment, order_service=order_service)


def get_admin_orders_service(
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment_orchestrator),
    order_service: OrderService = Depends(get_order_service)
) -> AdminOrdersService:
    return AdminOrdersService(fulfillment=fulfillment, order_service=order_service)


def get_pos_auth_service() -> PosAuthService:
    return PosAuthService()
