"""Modelos Pydantic de acciones de administrador sobre órdenes"""
from typing import Optional

from pydantic import Field

from services.pass_sales.models.order import CamelModel


class OrderActionRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)
