"""Modelos Pydantic de órdenes"""
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from uuid import UUID
from decimal import Decimal
from datetime import datetime


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CustomerData(CamelModel):
    name: str = Field(min_length=2, max_length=120)
    phone: str = Field(min_length=8, max_length=20)
    email: EmailStr
    city: str = Field(min_length=1)
    district: Optional[str] = None  # ville


class OrderLineRequest(CamelModel):
    pool_ref: UUID  # id del pase
    quantity: int = Field(gt=0, le=50)
    price_claim: Optional[Decimal] = None


class CreateOrderRequest(CamelModel):
    customer: CustomerData
    lines: List[OrderLineRequest] = Field(min_length=1)
    payment_method: str
    ambassador_id: Optional[UUID] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class PosOrderRequest(CamelModel):
    customer: CustomerData
    lines: List[OrderLineRequest] = Field(min_length=1)
    event_id: UUID


class OrderLineResponse(CamelModel):
    id: UUID
    pass_id: UUID
    pass_name: str
    quantity: int
    unit_price: float


class CustomerResponse(CamelModel):
    name: str
    phone: str
    email: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None


class OrderResponse(CamelModel):
    id: UUID
    channel: str
    source: str
    status: str
    payment_method: str
    event_id: Optional[UUID] = None
    ambassador_id: Optional[UUID] = None
    outlet_id: Optional[UUID] = None
    customer: CustomerResponse
    total_price: float
    currency: str
    quantity: int
    stock_released: bool
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    lines: List[OrderLineResponse] = []


class CreateOrderResponse(CamelModel):
    order: OrderResponse
    is_duplicate: bool = False


class ApproveOrderResponse(CamelModel):
    order: OrderResponse
    tickets_generated: bool
    tickets_count: int
    notifications_sent: bool
    email_sent: bool = False
    sms_sent: bool = False
    already_approved: bool = False
    warnings: List[Dict[str, Any]] = []


class OrderActionResponse(CamelModel):
    order: Optional[OrderResponse] = None
    order_id: UUID
    status: str
    stock_released: bool
    already_processed: bool = False


class ExpireOrdersResponse(CamelModel):
    expired: int
    order_ids: List[UUID]


def serialize_order(order) -> OrderResponse:
    """Order (SQLAlchemy, con líneas cargadas) -> OrderResponse"""
    return OrderResponse(
        id=order.id,
        channel=order.channel,
        source=order.source,
        status=order.status,
        payment_method=order.payment_method,
        event_id=order.event_id,
        ambassador_id=order.ambassador_id,
        outlet_id=order.outlet_id,
        customer=CustomerResponse(
            name=order.customer_name,
            phone=order.customer_phone,
            email=order.customer_email,
            city=order.city,
            district=order.district,
        ),
        total_price=float(order.total_price),
        currency=order.currency,
        quantity=order.quantity,
        stock_released=order.stock_released,
        payment_reference=order.payment_reference,
        created_at=order.created_at,
        approved_at=order.approved_at,
        paid_at=order.paid_at,
        cancelled_at=order.cancelled_at,
        lines=[
            OrderLineResponse(
                id=line.id,
                pass_id=line.pass_id,
                pass_name=line.pass_name_snapshot,
                quantity=line.quantity,
                unit_price=float(line.unit_price_snapshot),
            )
            for line in order.lines
        ],
    )
