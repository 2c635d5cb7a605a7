"""Errores de dominio del motor de órdenes"""
from typing import Any, Dict, Optional


class PassSalesError(Exception):
    """Error base: cada subclase define su status HTTP y código de error"""

    status_code = 500
    error = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, "details": self.details}


class ValidationError(PassSalesError):
    status_code = 400
    error = "validation_error"


class StockConflict(PassSalesError):
    """Capacidad agotada o carrera perdida en el CAS; el cliente puede reintentar"""

    status_code = 400
    error = "insufficient_stock"

    def __init__(self, message: str, pool_ref=None, reason: str = "insufficient_stock"):
        super().__init__(message, {
            "reason": reason,
            "pool": pool_ref.to_dict() if pool_ref is not None else None,
        })
        self.pool_ref = pool_ref
        self.reason = reason


class InvalidTransition(PassSalesError):
    status_code = 409
    error = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None,
                 requested_from: Optional[str] = None, requested_to: Optional[str] = None):
        super().__init__(message, {
            "current_status": current_status,
            "from": requested_from,
            "to": requested_to,
        })
        self.current_status = current_status


class AuthorizationError(PassSalesError):
    status_code = 403
    error = "forbidden"

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code
        if status_code == 401:
            self.error = "unauthorized"


class NotFoundError(PassSalesError):
    status_code = 404
    error = "not_found"


class UnrecoverableWriteFailure(PassSalesError):
    """Escritura fallida con stock ya reservado (la reserva ya fue liberada)"""

    status_code = 500
    error = "order_write_failed"


class PaymentGatewayError(PassSalesError):
    status_code = 502
    error = "payment_gateway_error"


class PartialFulfillmentFailure(PassSalesError):
    """
    Tickets emitidos pero alguna notificación falló.

    No se lanza hacia el cliente: se adjunta como warning al resultado.
    """

    status_code = 200
    error = "partial_fulfillment"

    def __init__(self, message: str, failed_channels, tickets_count: int):
        super().__init__(message, {"failed_channels": list(failed_channels), "tickets_count": tickets_count})
        self.failed_channels = list(failed_channels)
