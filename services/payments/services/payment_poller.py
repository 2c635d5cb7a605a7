"""
Poller de verificación de pagos del lado cliente

Tras el redirect de Flouci, consulta POST /payments/verify con backoff
exponencial acotado. El webhook es la fuente de verdad: agotar los intentos
solo deja de preguntar, nunca modifica la orden.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol
import asyncio
import logging

import httpx

from app.core.config import settings
from shared.utils.retry import backoff_delay

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    REDIRECTING = "redirecting"
    VERIFYING = "verifying"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"
    STILL_PROCESSING = "still_processing"
    CANCELLED = "cancelled"


TERMINAL_STATES = {
    PollerState.SUCCESS,
    PollerState.FAILED,
    PollerState.ERROR,
    PollerState.STILL_PROCESSING,
    PollerState.CANCELLED,
}


@dataclass
class PollAttempt:
    number: int
    status: Optional[str] = None
    error: Optional[str] = None
    delay_after: Optional[float] = None


@dataclass
class PollResult:
    state: PollerState
    gateway_status: Optional[str] = None
    order_updated: bool = False
    attempts: List[PollAttempt] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def attempts_count(self) -> int:
        return len(self.attempts)


class VerifyClient(Protocol):
    async def verify(self, order_id: str, payment_id: str) -> Dict: ...


class PaymentStatusClient:
    """Cliente HTTP del endpoint de verificación de la API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.transport = transport
        self.timeout = timeout or settings.PAYMENT_POLL_REQUEST_TIMEOUT

    async def verify(self, order_id: str, payment_id: str) -> Dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/api/v1/payments/verify",
                json={"orderId": order_id, "paymentId": payment_id},
            )
        response.raise_for_status()
        return response.json()


class PaymentVerificationPoller:
    """
    redirecting -> verifying -> {success, failed, error, still_processing}

    - SUCCESS: la API ya llevó la orden a PAID y emitió los tickets
    - FAILURE/EXPIRED: terminal; la orden queda en PENDING_ONLINE
    - PENDING: reintento con backoff hasta max_attempts
    - Errores de red o timeout por intento: se reintentan; si se agotan
      los intentos el resultado es error
    - Respuesta 4xx: error inmediato
    """

    def __init__(
        self,
        client: Optional[VerifyClient] = None,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        request_timeout: Optional[float] = None
    ):
        self.client = client or PaymentStatusClient()
        self.max_attempts = max_attempts if max_attempts is not None else settings.PAYMENT_POLL_MAX_ATTEMPTS
        self.initial_delay = initial_delay if initial_delay is not None else settings.PAYMENT_POLL_INITIAL_DELAY
        self.max_delay = max_delay if max_delay is not None else settings.PAYMENT_POLL_MAX_DELAY
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.PAYMENT_POLL_REQUEST_TIMEOUT
        )
        if self.max_attempts < 1:
            raise ValueError("max_attempts debe ser >= 1")

        self.state = PollerState.REDIRECTING
        self._cancelled = asyncio.Event()

    def cancel(self):
        """Dejar de consultar; no afecta a la orden"""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self, order_id: str, payment_id: str) -> PollResult:
        self.state = PollerState.VERIFYING
        attempts: List[PollAttempt] = []
        last_error = None

        for number in range(1, self.max_attempts + 1):
            if self.cancelled:
                return self._finish(PollResult(PollerState.CANCELLED, attempts=attempts))

            attempt = PollAttempt(number=number)
            attempts.append(attempt)

            try:
                data = await asyncio.wait_for(
                    self.client.verify(str(order_id), str(payment_id)),
                    timeout=self.request_timeout,
                )
            except asyncio.TimeoutError:
                attempt.error = last_error = f"Timeout tras {self.request_timeout}s"
                logger.warning(f"Verificación de pago {payment_id}: intento {number} sin respuesta")
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    attempt.error = f"HTTP {e.response.status_code}"
                    logger.error(f"Verificación de pago {payment_id} rechazada: {attempt.error}")
                    return self._finish(PollResult(PollerState.ERROR, attempts=attempts, error=attempt.error))
                attempt.error = last_error = f"HTTP {e.response.status_code}"
            except httpx.HTTPError as e:
                attempt.error = last_error = str(e) or e.__class__.__name__
                logger.warning(f"Verificación de pago {payment_id}: error de red en intento {number}: {attempt.error}")
            else:
                status = str(data.get("status", "")).upper()
                attempt.status = status
                if status == "SUCCESS":
                    return self._finish(PollResult(
                        PollerState.SUCCESS,
                        gateway_status=status,
                        order_updated=bool(data.get("orderUpdated")),
                        attempts=attempts,
                    ))
                if status in ("FAILURE", "EXPIRED"):
                    return self._finish(PollResult(PollerState.FAILED, gateway_status=status, attempts=attempts))
                if status != "PENDING":
                    return self._finish(PollResult(
                        PollerState.ERROR, gateway_status=status or None, attempts=attempts,
                        error=f"Estado desconocido: {status}",
                    ))
                last_error = None

            if number == self.max_attempts:
                break

            delay = backoff_delay(number - 1, self.initial_delay, self.max_delay)
            attempt.delay_after = delay
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            else:
                return self._finish(PollResult(PollerState.CANCELLED, attempts=attempts))

        if last_error is not None:
            return self._finish(PollResult(PollerState.ERROR, attempts=attempts, error=last_error))

        logger.info(f"Pago {payment_id} sigue pendiente tras {len(attempts)} intentos, se espera el webhook")
        return self._finish(PollResult(PollerState.STILL_PROCESSING, gateway_status="PENDING", attempts=attempts))

    def _finish(self, result: PollResult) -> PollResult:
        self.state = result.state
        return result
