"""Datos planos que viajan hacia los servicios de notificación"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional


@dataclass
class TicketSummary:
    ticket_id: str
    pass_name: str
    secure_token: str
    code_image_url: Optional[str] = None


@dataclass
class OrderLineSummary:
    pass_name: str
    quantity: int
    unit_price: Decimal


@dataclass
class OrderSummary:
    order_id: str
    status: str
    channel: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    total_price: Decimal
    currency: str = "TND"
    event_name: Optional[str] = None
    ambassador_name: Optional[str] = None
    ambassador_phone: Optional[str] = None
    lines: List[OrderLineSummary] = field(default_factory=list)
    tickets: List[TicketSummary] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.order_id.replace("-", "")[:8].upper()
