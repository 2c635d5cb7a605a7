"""Servicio de envío de emails usando Resend"""
import asyncio
import base64
import html
import logging
from typing import List, Optional, Union

import resend

from app.core.config import settings
from services.notifications.models.messages import OrderSummary

logger = logging.getLogger(__name__)


class EmailService:
    """Servicio para enviar emails usando Resend (desarrollo y producción)"""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.resend_api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email or settings.RESEND_FROM_EMAIL

        if not self.resend_api_key:
            logger.warning("RESEND_API_KEY no configurado. Los emails no se enviarán.")
            self.resend_configured = False
        else:
            resend.api_key = self.resend_api_key
            self.resend_configured = True
            logger.info(f"EmailService (Resend) inicializado con from: {self.from_email}")

    async def send_email(
        self,
        to_email: Union[str, List[str]],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        attachments: Optional[List[dict]] = None
    ) -> bool:
        """
        Enviar email usando Resend

        Args:
            to_email: Email destino (string o lista de strings)
            subject: Asunto del email
            html_content: Contenido HTML del email
            text_content: Contenido de texto plano (opcional)
            attachments: Lista de adjuntos (opcional) [{"filename": "qr.png", "content": bytes}]

        Returns:
            True si se envió correctamente, False en caso contrario
        """
        if not self.resend_configured:
            logger.warning(f"Resend no configurado. Email simulado a {to_email}: {subject}")
            return True

        to_emails = [to_email] if isinstance(to_email, str) else to_email

        params = {
            "from": self.from_email,
            "to": to_emails,
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            params["text"] = text_content
        if attachments:
            params["attachments"] = [
                {
                    "filename": attachment["filename"],
                    "content": attachment["content"] if isinstance(attachment["content"], str)
                    else base64.b64encode(attachment["content"]).decode("utf-8"),
                }
                for attachment in attachments
            ]

        # Resend SDK es síncrono, se ejecuta en un thread pool
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Error enviando email a {to_emails}: {e}", exc_info=True)
            return False

        logger.info(f"Email enviado exitosamente a {to_emails}: {subject} (ID: {result.get('id', 'N/A')})")
        return True

    async def send_tickets_email(self, order: OrderSummary) -> bool:
        """Email consolidado con todos los tickets de la orden"""
        if not order.customer_email:
            logger.warning(f"Orden {order.order_id} sin email de cliente, no se envían tickets")
            return False

        event_name = html.escape(order.event_name or "Andiamo Events")
        ticket_blocks = []
        for index, ticket in enumerate(order.tickets, start=1):
            image = (
                f'<img src="{html.escape(ticket.code_image_url)}" alt="QR {index}" width="220" height="220" />'
                if ticket.code_image_url else ""
            )
            ticket_blocks.append(
                f"""
                <div style="border:1px solid #ddd;border-radius:8px;padding:16px;margin:12px 0;text-align:center">
                    <p style="margin:0 0 8px 0"><strong>{html.escape(ticket.pass_name)}</strong> &middot; #{index}</p>
                    {image}
                    <p style="font-family:monospace;font-size:11px;color:#666">{html.escape(ticket.secure_token[:16])}</p>
                </div>
                """
            )

        html_content = f"""
        <html>
        <body style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
            <h2>Tus pases para {event_name}</h2>
            <p>Hola {html.escape(order.customer_name)},</p>
            <p>Tu pago fue confirmado. Presenta cada código QR en la entrada.</p>
            {''.join(ticket_blocks)}
            <p>Orden: <strong>{order.short_id}</strong> &middot; Total: {order.total_price} {order.currency}</p>
        </body>
        </html>
        """
        text_content = (
            f"Hola {order.customer_name}, tu pago para {order.event_name or 'el evento'} fue confirmado. "
            f"Orden {order.short_id}: {len(order.tickets)} pase(s)."
        )
        return await self.send_email(
            to_email=order.customer_email,
            subject=f"Tus pases - {order.event_name or 'Andiamo Events'}",
            html_content=html_content,
            text_content=text_content,
        )

    async def send_order_received_email(self, order: OrderSummary) -> bool:
        """Confirmación de orden recibida (pendiente de pago/aprobación)"""
        if not order.customer_email:
            return False

        rows = "".join(
            f"<tr><td>{html.escape(line.pass_name)}</td><td>{line.quantity}</td>"
            f"<td>{line.unit_price} {order.currency}</td></tr>"
            for line in order.lines
        )
        pending_text = (
            f"Tu embajador {html.escape(order.ambassador_name)} te contactará para el pago en efectivo."
            if order.ambassador_name else
            "Tu orden está pendiente de aprobación. Recibirás tus pases cuando sea confirmada."
        )
        html_content = f"""
        <html>
        <body style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
            <h2>Orden recibida</h2>
            <p>Hola {html.escape(order.customer_name)},</p>
            <p>{pending_text}</p>
            <table cellpadding="6">{rows}</table>
            <p>Orden: <strong>{order.short_id}</strong> &middot; Total: {order.total_price} {order.currency}</p>
        </body>
        </html>
        """
        return await self.send_email(
            to_email=order.customer_email,
            subject=f"Orden recibida - {order.short_id}",
            html_content=html_content,
        )
