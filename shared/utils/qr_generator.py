"""Utilidades para tokens seguros de tickets y códigos QR"""
import hashlib
import hmac
import io
from typing import Optional

import qrcode

from app.core.config import settings


def generate_secure_token(ticket_id: str, secret: Optional[str] = None) -> str:
    """
    Generar el token seguro de un ticket

    HMAC-SHA256 sobre el ticket_id: único por ticket, no falsificable sin
    el secret y verificable en puerta.

    Args:
        ticket_id: UUID del ticket como string
        secret: Secret key para HMAC (default: QR_SECRET)

    Returns:
        Prefijo de 8 caracteres del ticket_id + firma hexadecimal
    """
    if secret is None:
        secret = settings.QR_SECRET

    message = f"ticket:{ticket_id}"
    signature = hmac.new(
        secret.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()

    ticket_id_clean = ticket_id.replace('-', '')
    return f"{ticket_id_clean[:8]}{signature}"


def verify_secure_token(token: str, ticket_id: str, secret: Optional[str] = None) -> bool:
    """Verificar que un token corresponde al ticket"""
    expected = generate_secure_token(ticket_id, secret)
    return hmac.compare_digest(token, expected)


def render_qr_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    """Renderizar un QR como PNG"""
    if not data:
        raise ValueError("No se puede generar un QR sin datos")

    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
