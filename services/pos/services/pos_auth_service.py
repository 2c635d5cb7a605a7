"""Sesión de punto de venta: cookie posToken ligada a un outlet"""
from typing import Dict, Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.auth.jwt_handler import verify_token
from shared.database.models import Outlet, OutletUser
from shared.utils.exceptions import AuthorizationError, NotFoundError

logger = logging.getLogger(__name__)

POS_COOKIE_NAME = "posToken"


class PosAuthService:
    """Valida que el token POS corresponda al outlet de la URL y a un usuario habilitado"""

    async def get_outlet(self, db: AsyncSession, slug: str) -> Outlet:
        outlet = (await db.execute(
            select(Outlet).where(Outlet.slug == slug, Outlet.is_active.is_(True))
        )).scalar_one_or_none()
        if outlet is None:
            raise NotFoundError(f"Punto de venta '{slug}' no encontrado")
        return outlet

    async def resolve_session(self, db: AsyncSession, slug: str, token: Optional[str]) -> Dict:
        """
        Returns:
            {'pos_user_id', 'outlet_id', 'outlet_slug', 'outlet_name'}

        Raises:
            AuthorizationError: 401 sin token/inválido, 403 outlet distinto o usuario pausado
        """
        if not token:
            raise AuthorizationError("Sesión de punto de venta requerida", status_code=401)

        payload = await verify_token(token)
        if payload is None or payload.get("role") != "pos":
            raise AuthorizationError("Sesión de punto de venta inválida o expirada", status_code=401)

        outlet = await self.get_outlet(db, slug)

        try:
            token_outlet = uuid.UUID(str(payload.get("pos_outlet_id")))
            pos_user_id = uuid.UUID(str(payload.get("pos_user_id")))
        except ValueError:
            raise AuthorizationError("Sesión de punto de venta inválida", status_code=401)

        if token_outlet != outlet.id:
            logger.warning(f"Token POS de outlet {token_outlet} usado en outlet {outlet.id} ({slug})")
            raise AuthorizationError("La sesión no pertenece a este punto de venta")

        user = (await db.execute(
            select(OutletUser.is_active, OutletUser.is_paused, OutletUser.outlet_id)
            .where(OutletUser.id == pos_user_id)
        )).one_or_none()
        if user is None or user.outlet_id != outlet.id:
            raise AuthorizationError("Usuario de punto de venta no encontrado", status_code=401)
        if not user.is_active or user.is_paused:
            raise AuthorizationError("Usuario de punto de venta pausado o inactivo")

        return {
            "pos_user_id": pos_user_id,
            "outlet_id": outlet.id,
            "outlet_slug": outlet.slug,
            "outlet_name": outlet.name,
        }
