"""Servicio de SMS vía WinSMS - Async con httpx"""
import logging
import re
from typing import Optional

import httpx

from app.core.config import settings
from services.notifications.models.messages import OrderSummary

logger = logging.getLogger(__name__)


def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalizar un teléfono tunecino a 216XXXXXXXX

    Acepta prefijos +216/00216 y ceros a la izquierda. El número local debe
    tener 8 dígitos y empezar por 2, 4, 5 o 9.
    """
    if not phone:
        return None
    cleaned = re.sub(r"\D", "", str(phone))
    if cleaned.startswith("00216"):
        cleaned = cleaned[5:]
    elif cleaned.startswith("216"):
        cleaned = cleaned[3:]
    cleaned = cleaned.lstrip("0")
    if len(cleaned) == 8 and cleaned[0] in "2459":
        return f"216{cleaned}"
    return None


class SmsService:
    """Envío de SMS con WinSMS"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0
    ):
        self.api_key = api_key if api_key is not None else settings.WINSMS_API_KEY
        self.sender = sender or settings.WINSMS_SENDER
        self.base_url = base_url or settings.WINSMS_BASE_URL
        self.transport = transport
        self.timeout = timeout

        if not self.api_key:
            logger.warning("WINSMS_API_KEY no configurado. Los SMS no se enviarán.")

    async def send_sms(self, phone: str, message: str) -> bool:
        """
        Enviar un SMS

        Returns:
            True si WinSMS aceptó el mensaje
        """
        to = format_phone_number(phone)
        if to is None:
            logger.warning(f"Teléfono inválido para SMS: {phone}")
            return False

        if not self.api_key:
            logger.warning(f"WinSMS no configurado. SMS simulado a {to}: {message[:40]}...")
            return True

        params = {
            "action": "send-sms",
            "api_key": self.api_key,
            "to": to,
            "sms": message.strip(),
            "from": self.sender,
            "response": "json",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(self.base_url, params=params)
            except httpx.TimeoutException:
                logger.error(f"Timeout enviando SMS a {to}")
                return False
            except httpx.RequestError as e:
                logger.error(f"Error de conexión con WinSMS: {e}")
                return False

        if response.status_code != 200:
            logger.error(f"WinSMS respondió {response.status_code}: {response.text[:200]}")
            return False

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Respuesta inválida de WinSMS: {response.text[:200]}")
            return False

        if isinstance(data, dict) and str(data.get("code", "ok")).lower() not in ("ok", "200"):
            logger.error(f"WinSMS rechazó el SMS a {to}: {data}")
            return False

        logger.info(f"SMS enviado a {to}")
        return True

    async def send_tickets_sms(self, order: OrderSummary) -> bool:
        message = (
            f"Andiamo: pago confirmado. {len(order.tickets)} pase(s) para "
            f"{order.event_name or 'tu evento'}. Revisa tu email ({order.customer_email or '-'}). "
            f"Orden {order.short_id}"
        )
        return await self.send_sms(order.customer_phone, message)

    async def send_order_received_sms(self, order: OrderSummary) -> bool:
        """SMS al embajador con los datos del cliente de una orden en efectivo"""
        if not order.ambassador_phone:
            return False
        quantity = sum(line.quantity for line in order.lines)
        message = (
            f"Nueva orden {order.short_id}: {order.customer_name} ({order.customer_phone}), "
            f"{quantity} pase(s), total {order.total_price} {order.currency}."
        )
        return await self.send_sms(order.ambassador_phone, message)
