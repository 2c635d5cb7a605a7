"""Almacenamiento de imágenes QR de tickets"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class LocalTicketStorage:
    """
    Guarda los PNG en disco bajo tickets/{order_id}/{token}.png

    El directorio se sirve como estático en TICKET_PUBLIC_BASE_URL.
    """

    def __init__(self, root_dir: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root_dir = Path(root_dir or settings.TICKET_STORAGE_DIR)
        self.public_base_url = (public_base_url or settings.TICKET_PUBLIC_BASE_URL).rstrip("/")

    @staticmethod
    def object_key(order_id: str, secure_token: str) -> str:
        return f"tickets/{order_id}/{secure_token}.png"

    async def save(self, order_id: str, secure_token: str, content: bytes) -> str:
        """
        Guardar PNG y devolver su URL pública

        La escritura corre en un executor para no bloquear el event loop.
        """
        key = self.object_key(order_id, secure_token)
        path = self.root_dir / key

        def write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, write)
        logger.debug(f"QR guardado en {path}")
        return f"{self.public_base_url}/{key}"
