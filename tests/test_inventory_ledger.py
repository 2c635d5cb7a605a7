"""Ledger de inventario: conservación, all-or-nothing y carreras en el CAS"""
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import sold_quantity
from shared.database.models import PassOffering, StockMovement, StockReservation
from shared.utils.exceptions import StockConflict, UnrecoverableWriteFailure, ValidationError
from services.pass_sales.services.inventory_service import (
    InventoryLedger,
    PoolKind,
    PoolRef,
    ReservationLine,
)


def line(offering, quantity):
    return ReservationLine(pool=PoolRef(PoolKind.PASS, offering.id), quantity=quantity)


async def reservation_status(db, reservation_id):
    return (await db.execute(
        select(StockReservation.status).where(StockReservation.id == reservation_id)
    )).scalar_one()


async def test_reserve_increments_sold_quantity_and_records_movement(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    ledger = InventoryLedger()

    reservation = await ledger.reserve_all(db, [line(offering, 3)])

    assert await sold_quantity(db, PassOffering, offering.id) == 3
    assert reservation.total_quantity == 3
    assert await reservation_status(db, reservation.id) == "ACTIVE"
    deltas = (await db.execute(
        select(StockMovement.delta).where(StockMovement.reservation_id == reservation.id)
    )).scalars().all()
    assert deltas == [3]


async def test_insufficient_stock_leaves_counter_untouched(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=5, sold_quantity=4)

    with pytest.raises(StockConflict) as exc:
        await InventoryLedger().reserve_all(db, [line(offering, 2)])

    assert exc.value.reason == "insufficient_stock"
    assert exc.value.pool_ref.id == offering.id
    assert await sold_quantity(db, PassOffering, offering.id) == 4


async def test_failing_second_line_rolls_back_the_first(db, seed):
    event = await seed.event()
    vip = await seed.pass_offering(event, name="VIP", max_quantity=10, sold_quantity=2)
    standard = await seed.pass_offering(event, name="Standard", max_quantity=1, sold_quantity=1)

    with pytest.raises(StockConflict) as exc:
        await InventoryLedger().reserve_all(db, [line(vip, 3), line(standard, 1)])

    assert exc.value.pool_ref.id == standard.id
    assert await sold_quantity(db, PassOffering, vip.id) == 2
    assert await sold_quantity(db, PassOffering, standard.id) == 1

    reasons = (await db.execute(
        select(StockMovement.reason, StockMovement.delta)
        .where(StockMovement.pool_id == vip.id)
        .order_by(StockMovement.delta.desc())
    )).all()
    assert [tuple(r) for r in reasons] == [("reserve", 3), ("reservation_rollback", -3)]

    released = (await db.execute(
        select(func.count(StockReservation.id)).where(StockReservation.status == "RELEASED")
    )).scalar_one()
    assert released == 1


async def test_inactive_pool_is_rejected(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, is_active=False)

    with pytest.raises(StockConflict) as exc:
        await InventoryLedger().reserve_all(db, [line(offering, 1)])
    assert exc.value.reason == "inactive"


async def test_unlimited_pool_always_reserves(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=None, sold_quantity=1000)
    ledger = InventoryLedger()

    await ledger.reserve_all(db, [line(offering, 50)])

    assert await sold_quantity(db, PassOffering, offering.id) == 1050
    assert await ledger.remaining(db, PoolRef(PoolKind.PASS, offering.id)) is None


async def test_empty_or_invalid_lines_are_validation_errors(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event)
    ledger = InventoryLedger()

    with pytest.raises(ValidationError):
        await ledger.reserve_all(db, [])
    with pytest.raises(ValidationError):
        await ledger.reserve_all(db, [line(offering, 0)])


async def test_release_is_idempotent(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    ledger = InventoryLedger()
    reservation = await ledger.reserve_all(db, [line(offering, 4)])

    assert await ledger.release(db, reservation, reason="order_cancelled") is True
    assert await ledger.release(db, reservation, reason="order_cancelled") is False

    # Un handle reconstruido desde la base tampoco vuelve a liberar
    reloaded = await ledger.load_reservation(db, reservation.id)
    assert reloaded.released is True
    assert await ledger.release(db, reloaded) is False

    assert await sold_quantity(db, PassOffering, offering.id) == 0
    assert await reservation_status(db, reservation.id) == "RELEASED"


async def test_release_clamps_at_zero(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    ledger = InventoryLedger()
    reservation = await ledger.reserve_all(db, [line(offering, 3)])

    # Ajuste manual del contador por fuera del ledger
    offering_row = await db.get(PassOffering, offering.id)
    offering_row.sold_quantity = 1
    await db.commit()

    await ledger.release(db, reservation)
    assert await sold_quantity(db, PassOffering, offering.id) == 0


async def test_load_reservation_rebuilds_lines_in_order(db, seed):
    event = await seed.event()
    first = await seed.pass_offering(event, name="Early bird")
    second = await seed.pass_offering(event, name="Standard")
    ledger = InventoryLedger()
    reservation = await ledger.reserve_all(db, [line(first, 2), line(second, 1)])

    reloaded = await ledger.load_reservation(db, reservation.id)

    assert reloaded.lines == reservation.lines
    assert reloaded.released is False


async def test_conservation_over_reservations_and_releases(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=20)
    ledger = InventoryLedger()

    kept = []
    for quantity in (3, 5, 2, 4):
        kept.append(await ledger.reserve_all(db, [line(offering, quantity)]))
    await ledger.release(db, kept.pop(1))
    with pytest.raises(StockConflict):
        await ledger.reserve_all(db, [line(offering, 15)])

    expected = sum(r.total_quantity for r in kept)
    assert await sold_quantity(db, PassOffering, offering.id) == expected == 9

    ledger_total = (await db.execute(
        select(func.sum(StockMovement.delta)).where(StockMovement.pool_id == offering.id)
    )).scalar_one()
    assert ledger_total == expected


async def test_last_unit_race_has_exactly_one_winner(db, seed):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=1)
    pool = PoolRef(PoolKind.PASS, offering.id)

    ledger = InventoryLedger()
    rival = InventoryLedger()
    read_pool = ledger._read_pool
    rival_reservations = []

    async def read_then_lose_race(session, pool_ref):
        snapshot = await read_pool(session, pool_ref)
        # Otra compra se lleva la última unidad entre la lectura y el CAS
        rival_reservations.append(await rival.reserve_all(session, [ReservationLine(pool_ref, 1)]))
        return snapshot

    ledger._read_pool = read_then_lose_race

    with pytest.raises(StockConflict) as exc:
        await ledger.reserve_all(db, [ReservationLine(pool, 1)])

    assert exc.value.reason == "concurrent_update"
    assert len(rival_reservations) == 1
    assert await sold_quantity(db, PassOffering, offering.id) == 1


async def test_database_error_on_later_line_releases_earlier_lines(db, seed):
    event = await seed.event()
    vip = await seed.pass_offering(event, name="VIP", max_quantity=10)
    standard = await seed.pass_offering(event, name="Standard", max_quantity=10)
    vip_id, standard_id = vip.id, standard.id
    lines = [line(vip, 2), line(standard, 1)]

    ledger = InventoryLedger()
    reserve_line = ledger._reserve_line

    async def connection_lost_on_second_line(session, reservation_id, sequence, reservation_line):
        if sequence == 1:
            raise OperationalError("UPDATE event_passes", {}, ConnectionResetError("connection reset"))
        await reserve_line(session, reservation_id, sequence, reservation_line)

    ledger._reserve_line = connection_lost_on_second_line

    with pytest.raises(UnrecoverableWriteFailure):
        await ledger.reserve_all(db, lines)

    assert await sold_quantity(db, PassOffering, vip_id) == 0
    assert await sold_quantity(db, PassOffering, standard_id) == 0
    statuses = (await db.execute(select(StockReservation.status))).scalars().all()
    assert statuses == ["RELEASED"]
    movements = (await db.execute(
        select(func.sum(StockMovement.delta)).where(StockMovement.pool_id == vip_id)
    )).scalar_one()
    assert movements == 0
