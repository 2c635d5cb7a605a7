"""Modelos Pydantic de pagos"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field

from services.pass_sales.models.order import CamelModel


class GeneratePaymentRequest(CamelModel):
    order_id: UUID


class GeneratePaymentResponse(CamelModel):
    order_id: UUID
    payment_id: str
    payment_link: str


class VerifyPaymentRequest(CamelModel):
    payment_id: str = Field(min_length=1)
    order_id: UUID


class VerifyPaymentResponse(CamelModel):
    status: str  # SUCCESS, FAILURE, PENDING, EXPIRED
    order_updated: bool
    already_processed: bool = False
    order_id: UUID
    tickets_generated: bool = False
    tickets_count: int = 0
    notifications_sent: Optional[bool] = None
    warnings: List[Dict[str, Any]] = []
