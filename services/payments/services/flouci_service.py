"""Servicio de integración con Flouci - Async con httpx"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional
import hashlib
import hmac
import logging

import httpx

from app.core.config import settings
from shared.utils.exceptions import PaymentGatewayError
from shared.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class GatewayStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"


@dataclass
class GatewayPayment:
    payment_id: str
    link: str


@dataclass
class GatewayVerification:
    payment_id: str
    status: GatewayStatus
    amount: Optional[int] = None  # millimes
    raw: Dict = field(default_factory=dict)


def to_millimes(amount: Decimal) -> int:
    """TND -> millimes (1 TND = 1000 millimes)"""
    return int((Decimal(amount) * 1000).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class FlouciService:
    """Cliente de la API de Flouci: generate_payment / verify_payment"""

    def __init__(
        self,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0
    ):
        self.public_key = public_key if public_key is not None else settings.FLOUCI_PUBLIC_KEY
        self.secret_key = secret_key if secret_key is not None else settings.FLOUCI_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.FLOUCI_WEBHOOK_SECRET
        self.base_url = (base_url or settings.FLOUCI_BASE_URL).rstrip("/")
        self.transport = transport
        self.timeout = timeout

        if not self.public_key or not self.secret_key:
            logger.warning("FLOUCI_PUBLIC_KEY/FLOUCI_SECRET_KEY no configurados. Los pagos online fallarán.")

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.public_key}:{self.secret_key}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def generate_payment(self, amount_millimes: int, order_id: str) -> GatewayPayment:
        """
        Crear sesión de pago en Flouci

        Args:
            amount_millimes: Monto en millimes (calculado por el servidor)
            order_id: ID de la orden, viaja como developer_tracking_id

        Returns:
            GatewayPayment con payment_id y link de redirección
        """
        if amount_millimes <= 0:
            raise PaymentGatewayError("El monto del pago debe ser mayor a 0")

        app_url = settings.APP_BASE_URL.rstrip("/")
        payload = {
            "amount": amount_millimes,
            "success_link": f"{app_url}/payment-processing?orderId={order_id}",
            "fail_link": f"{app_url}/payment-processing?orderId={order_id}&status=failed",
            "webhook": f"{settings.API_BASE_URL.rstrip('/')}/api/v1/payments/webhook",
            "developer_tracking_id": order_id,
            "session_timeout_secs": settings.FLOUCI_SESSION_TIMEOUT_SECS,
            "accept_card": True,
        }

        async def post():
            async with self._client() as client:
                return await client.post(f"{self.base_url}/generate_payment", json=payload, headers=self._headers())

        try:
            response = await retry_with_backoff(
                post, max_retries=2, initial_delay=0.5, max_delay=2.0,
                exceptions=(httpx.ConnectError, httpx.ConnectTimeout)
            )
        except httpx.TimeoutException:
            raise PaymentGatewayError("Timeout al conectar con Flouci")
        except httpx.RequestError as e:
            raise PaymentGatewayError(f"Error de conexión con Flouci: {e}")

        data = self._json(response)
        result = data.get("result") or {}
        if response.status_code >= 400 or not result.get("payment_id") or not result.get("link"):
            logger.error(f"Flouci generate_payment falló ({response.status_code}): {data}")
            raise PaymentGatewayError(
                data.get("message") or f"Flouci API error: {response.status_code}",
                {"status_code": response.status_code},
            )

        logger.info(f"Pago Flouci creado para orden {order_id}: {result['payment_id']}")
        return GatewayPayment(payment_id=result["payment_id"], link=result["link"])

    async def verify_payment(self, payment_id: str) -> GatewayVerification:
        """Consultar el estado de un pago en Flouci"""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/verify_payment/{payment_id}", headers=self._headers())
        except httpx.TimeoutException:
            raise PaymentGatewayError("Timeout al verificar pago con Flouci")
        except httpx.RequestError as e:
            raise PaymentGatewayError(f"Error de conexión con Flouci: {e}")

        data = self._json(response)
        if response.status_code >= 400:
            logger.error(f"Flouci verify_payment falló ({response.status_code}): {data}")
            raise PaymentGatewayError(
                data.get("message") or f"Flouci API error: {response.status_code}",
                {"status_code": response.status_code},
            )

        result = data.get("result") or {}
        try:
            status = GatewayStatus(str(result.get("status", "")).upper())
        except ValueError:
            raise PaymentGatewayError(f"Estado de pago desconocido: {result.get('status')}")

        amount = result.get("amount")
        return GatewayVerification(
            payment_id=payment_id,
            status=status,
            amount=int(amount) if amount is not None else None,
            raw=result,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Verificar firma HMAC-SHA256 del webhook (header x-flouci-signature)

        Sin secret configurado solo se acepta fuera de producción.
        """
        if not self.webhook_secret:
            if settings.APP_ENV == "production":
                logger.error("FLOUCI_WEBHOOK_SECRET no configurado en producción, webhook rechazado")
                return False
            logger.warning("FLOUCI_WEBHOOK_SECRET no configurado, omitiendo verificación de firma")
            return True

        if not signature:
            return False

        expected = hmac.new(
            self.webhook_secret.encode("utf-8"),
            raw_body,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    @staticmethod
    def _json(response: httpx.Response) -> Dict:
        try:
            data = response.json()
        except ValueError:
            return {"message": response.text[:200]}
        return data if isinstance(data, dict) else {}
