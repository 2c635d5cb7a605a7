"""Ledger de inventario: reservas all-or-nothing con compare-and-swap por fila"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence
import logging
import uuid

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import OutletPassStock, PassOffering, StockMovement, StockReservation
from shared.utils.exceptions import NotFoundError, StockConflict, UnrecoverableWriteFailure, ValidationError

logger = logging.getLogger(__name__)


class PoolKind(str, Enum):
    PASS = "pass"  # event_passes (global)
    OUTLET = "outlet"  # pos_pass_stock (por punto de venta)


POOL_MODELS = {
    PoolKind.PASS: PassOffering,
    PoolKind.OUTLET: OutletPassStock,
}


@dataclass(frozen=True)
class PoolRef:
    kind: PoolKind
    id: uuid.UUID

    def to_dict(self) -> Dict:
        return {"kind": self.kind.value, "id": str(self.id)}


@dataclass(frozen=True)
class ReservationLine:
    pool: PoolRef
    quantity: int


@dataclass
class PoolSnapshot:
    sold_quantity: int
    max_quantity: Optional[int]
    is_active: bool


@dataclass
class Reservation:
    """Handle de reserva: única entrada válida para release()"""
    id: uuid.UUID
    lines: List[ReservationLine] = field(default_factory=list)
    released: bool = False

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)


class InventoryLedger:
    """
    Reserva y libera stock de los pools de pases.

    No hay locks: cada línea se reserva con un UPDATE condicional sobre el
    sold_quantity leído justo antes. Si una línea falla, las anteriores se
    liberan en orden inverso antes de propagar el error.
    """

    async def reserve_all(
        self,
        db: AsyncSession,
        lines: Sequence[ReservationLine],
        reason: str = "order_reservation"
    ) -> Reservation:
        """
        Reservar todas las líneas o ninguna.

        Args:
            db: Sesión de base de datos
            lines: Líneas (pool, cantidad) en el orden solicitado
            reason: Motivo registrado en el ledger

        Returns:
            Reservation con las líneas reservadas

        Raises:
            StockConflict: Si alguna línea no pudo reservarse (ya se hizo rollback)
            UnrecoverableWriteFailure: Error de base de datos a mitad de la reserva (ya se hizo rollback)
        """
        if not lines:
            raise ValidationError("La reserva debe tener al menos una línea")
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(
                    "La cantidad debe ser mayor a 0",
                    {"pool": line.pool.to_dict(), "quantity": line.quantity}
                )

        reservation_id = uuid.uuid4()
        db.add(StockReservation(id=reservation_id, status="ACTIVE", reason=reason))
        await db.commit()

        reserved: List[ReservationLine] = []
        for sequence, line in enumerate(lines):
            try:
                await self._reserve_line(db, reservation_id, sequence, line)
            except StockConflict as e:
                logger.warning(
                    f"Reserva {reservation_id}: línea {sequence} rechazada ({e.reason}) "
                    f"en pool {line.pool.kind.value}:{line.pool.id}; liberando {len(reserved)} línea(s)"
                )
                await self._rollback(db, reservation_id, reserved)
                raise
            except Exception as e:
                logger.error(
                    f"Reserva {reservation_id}: error escribiendo línea {sequence}: {e}; "
                    f"liberando {len(reserved)} línea(s)",
                    exc_info=True
                )
                await db.rollback()
                await self._rollback(db, reservation_id, reserved)
                raise UnrecoverableWriteFailure(
                    "No se pudo completar la reserva, el stock reservado fue liberado",
                    {"reservation_id": str(reservation_id)},
                ) from e
            reserved.append(line)

        logger.info(f"Reserva {reservation_id} confirmada: {len(reserved)} línea(s)")
        return Reservation(id=reservation_id, lines=reserved)

    async def release(
        self,
        db: AsyncSession,
        reservation: Reservation,
        reason: str = "order_released"
    ) -> bool:
        """
        Liberar una reserva. Idempotente: la segunda llamada no hace nada.

        Returns:
            True si esta llamada liberó el stock
        """
        if reservation.released:
            return False

        result = await db.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation.id, StockReservation.status == "ACTIVE")
            .values(status="RELEASED", reason=reason, released_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            reservation.released = True
            logger.info(f"Reserva {reservation.id} ya estaba liberada")
            return False

        for sequence, line in reversed(list(enumerate(reservation.lines))):
            await self._decrement(db, reservation.id, sequence, line, reason)

        await db.commit()
        reservation.released = True
        logger.info(f"Reserva {reservation.id} liberada ({reason})")
        return True

    async def load_reservation(self, db: AsyncSession, reservation_id: uuid.UUID) -> Reservation:
        """Reconstruir el handle de una reserva desde el ledger"""
        status = (await db.execute(
            select(StockReservation.status).where(StockReservation.id == reservation_id)
        )).scalar_one_or_none()
        if status is None:
            raise NotFoundError(f"Reserva {reservation_id} no encontrada")

        rows = (await db.execute(
            select(StockMovement.pool_kind, StockMovement.pool_id, StockMovement.delta)
            .where(
                StockMovement.reservation_id == reservation_id,
                StockMovement.reason == "reserve",
            )
            .order_by(StockMovement.sequence)
        )).all()

        lines = [
            ReservationLine(pool=PoolRef(PoolKind(kind), pool_id), quantity=delta)
            for kind, pool_id, delta in rows
        ]
        return Reservation(id=reservation_id, lines=lines, released=status == "RELEASED")

    async def attach_order(self, db: AsyncSession, reservation: Reservation, order_id: uuid.UUID):
        """Asociar la reserva a su orden (sin commit, va en la transacción de la orden)"""
        await db.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation.id)
            .values(order_id=order_id)
            .execution_options(synchronize_session=False)
        )

    async def remaining(self, db: AsyncSession, pool: PoolRef) -> Optional[int]:
        """Unidades disponibles en el pool (None = ilimitado)"""
        snapshot = await self._read_pool(db, pool)
        if snapshot is None:
            raise NotFoundError(f"Pool {pool.kind.value}:{pool.id} no encontrado")
        if snapshot.max_quantity is None:
            return None
        return max(snapshot.max_quantity - snapshot.sold_quantity, 0)

    async def _read_pool(self, db: AsyncSession, pool: PoolRef) -> Optional[PoolSnapshot]:
        """Leer contadores actuales directamente de la fila (nunca desde el identity map)"""
        model = POOL_MODELS[pool.kind]
        row = (await db.execute(
            select(model.sold_quantity, model.max_quantity, model.is_active).where(model.id == pool.id)
        )).one_or_none()
        if row is None:
            return None
        return PoolSnapshot(sold_quantity=row[0], max_quantity=row[1], is_active=bool(row[2]))

    async def _reserve_line(
        self,
        db: AsyncSession,
        reservation_id: uuid.UUID,
        sequence: int,
        line: ReservationLine
    ):
        model = POOL_MODELS[line.pool.kind]
        snapshot = await self._read_pool(db, line.pool)

        if snapshot is None:
            raise StockConflict("Pase no encontrado", pool_ref=line.pool, reason="pool_not_found")
        if not snapshot.is_active:
            raise StockConflict("Pase no disponible", pool_ref=line.pool, reason="inactive")

        if snapshot.max_quantity is None:
            # Pool ilimitado: no hay capacidad que proteger, incremento atómico
            stmt = (
                update(model)
                .where(model.id == line.pool.id, model.is_active.is_(True))
                .values(sold_quantity=model.sold_quantity + line.quantity)
            )
        else:
            available = snapshot.max_quantity - snapshot.sold_quantity
            if line.quantity > available:
                raise StockConflict(
                    f"Stock insuficiente. Disponible: {max(available, 0)}, Solicitado: {line.quantity}",
                    pool_ref=line.pool,
                    reason="insufficient_stock"
                )
            stmt = (
                update(model)
                .where(
                    model.id == line.pool.id,
                    model.sold_quantity == snapshot.sold_quantity,
                    model.is_active.is_(True),
                )
                .values(sold_quantity=snapshot.sold_quantity + line.quantity)
            )

        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise StockConflict(
                "El stock cambió durante la reserva, intenta nuevamente",
                pool_ref=line.pool,
                reason="concurrent_update"
            )

        db.add(StockMovement(
            id=uuid.uuid4(),
            reservation_id=reservation_id,
            sequence=sequence,
            pool_kind=line.pool.kind.value,
            pool_id=line.pool.id,
            delta=line.quantity,
            reason="reserve",
        ))
        await db.commit()

    async def _decrement(
        self,
        db: AsyncSession,
        reservation_id: uuid.UUID,
        sequence: int,
        line: ReservationLine,
        reason: str
    ):
        """Decrementar sold_quantity con clamp en 0 (sin commit)"""
        model = POOL_MODELS[line.pool.kind]
        await db.execute(
            update(model)
            .where(model.id == line.pool.id)
            .values(sold_quantity=case(
                (model.sold_quantity >= line.quantity, model.sold_quantity - line.quantity),
                else_=0,
            ))
            .execution_options(synchronize_session=False)
        )
        db.add(StockMovement(
            id=uuid.uuid4(),
            reservation_id=reservation_id,
            sequence=sequence,
            pool_kind=line.pool.kind.value,
            pool_id=line.pool.id,
            delta=-line.quantity,
            reason=reason,
        ))

    async def _rollback(self, db: AsyncSession, reservation_id: uuid.UUID, reserved: List[ReservationLine]):
        """Deshacer las líneas ya reservadas en esta llamada, en orden inverso"""
        for sequence, line in reversed(list(enumerate(reserved))):
            await self._decrement(db, reservation_id, sequence, line, "reservation_rollback")
        await db.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation_id)
            .values(status="RELEASED", reason="reservation_rollback", released_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
