"""
Rate limiting usando slowapi + Redis

El storage en Redis permite que varias instancias de la API compartan los
contadores. RATE_LIMIT_ENABLED=false lo desactiva (tests, desarrollo local).
"""
import hashlib
import logging

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from app.core.config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """
    IP real del cliente detrás de proxies/load balancers.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # client, proxy1, proxy2: la primera es la del cliente
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip

    return get_remote_address(request)


def get_client_identifier(request: Request) -> str:
    """
    IP + hash de la credencial (Bearer o cookie POS) si existe.

    Varias cajas de un mismo outlet suelen compartir IP.
    """
    ip = get_real_client_ip(request)

    credential = request.headers.get("Authorization", "") or request.cookies.get("posToken", "")
    if credential:
        credential_hash = hashlib.sha256(credential.encode()).hexdigest()[:8]
        return f"{ip}:{credential_hash}"

    return ip


def _build_limiter() -> Limiter:
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting deshabilitado (RATE_LIMIT_ENABLED=false)")
        return Limiter(key_func=get_client_identifier, enabled=False, headers_enabled=False)

    try:
        limiter = Limiter(
            key_func=get_client_identifier,
            storage_uri=settings.REDIS_URL,
            strategy="fixed-window",
            headers_enabled=False,  # Compatibilidad con response_model de FastAPI
        )
        logger.info(f"Rate limiter inicializado con Redis: {settings.REDIS_URL.split('@')[-1]}")
        return limiter
    except Exception as e:
        logger.warning(f"Redis no disponible para rate limiting, usando memoria local: {e}")
        return Limiter(key_func=get_client_identifier, strategy="fixed-window", headers_enabled=False)


limiter = _build_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """JSON 429 con Retry-After"""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"

    logger.warning(
        f"Rate limit exceeded - IP: {get_real_client_ip(request)}, "
        f"Path: {request.url.path}, "
        f"Retry-After: {retry_after}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "details": {
                "message": "Demasiadas solicitudes. Por favor espera antes de intentar nuevamente.",
                "retry_after_seconds": int(retry_after) if retry_after.isdigit() else 60,
            },
        },
        headers={"Retry-After": str(retry_after)},
    )


# ============ RATE LIMITS PRE-DEFINIDOS ============

RATE_LIMITS = {
    # Creación de órdenes: reserva stock, más restrictivo
    "order": "10/minute",

    # Webhooks: la pasarela puede reintentar muchas veces
    "webhook": "100/minute",

    # Generación y verificación de pagos (el poller consulta varias veces)
    "payment": "60/minute",

    # Cajas de punto de venta
    "pos": "60/minute",

    "admin": "120/minute",

    "default": "30/minute",
}
