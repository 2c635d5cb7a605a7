"""Aprobación de órdenes y acciones compensatorias del administrador"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from conftest import sold_quantity
from shared.database.models import Order, OrderLine, OrderLog, PassOffering, Ticket
from shared.utils.exceptions import InvalidTransition, NotFoundError
from services.admin.services.admin_orders_service import AdminOrdersService
from services.pass_sales.services.order_state_machine import PaymentMethod

ADMIN = {"user_id": "admin-1", "role": "admin"}


@pytest.fixture
def admin_service(orchestrator, order_service):
    return AdminOrdersService(fulfillment=orchestrator, order_service=order_service)


async def order_status(db, order_id):
    return (await db.execute(select(Order.status).where(Order.id == order_id))).scalar_one()


async def ticket_tokens(db, order_id):
    return (await db.execute(select(Ticket.secure_token).where(Ticket.order_id == order_id))).scalars().all()


async def test_approving_cash_order_issues_one_ticket_per_unit(db, make_order, admin_service):
    order = await make_order(PaymentMethod.AMBASSADOR_CASH, quantity=3)
    order_id = order.id

    result = await admin_service.approve_order(db, order_id, ADMIN)

    assert not result.already_approved
    assert result.fulfillment.tickets_count == 3
    assert await order_status(db, order_id) == "PAID"
    tokens = await ticket_tokens(db, order_id)
    assert len(tokens) == 3 == len(set(tokens))

    approved_at = (await db.execute(select(Order.approved_at).where(Order.id == order_id))).scalar_one()
    assert approved_at is not None
    actions = (await db.execute(
        select(OrderLog.action).where(OrderLog.order_id == order_id)
    )).scalars().all()
    assert "admin_approve" in actions


async def test_approving_twice_does_not_duplicate_tickets(db, make_order, admin_service, email_service):
    order = await make_order(PaymentMethod.POS, quantity=2)
    order_id = order.id

    first = await admin_service.approve_order(db, order_id, ADMIN)
    second = await admin_service.approve_order(db, order_id, ADMIN)

    assert not first.already_approved
    assert second.already_approved
    assert second.fulfillment.tickets_count == 2
    assert len(await ticket_tokens(db, order_id)) == 2
    assert len(email_service.sent) == 1

    duplicates = (await db.execute(
        select(func.count(OrderLog.id))
        .where(OrderLog.order_id == order_id, OrderLog.action == "admin_approve_duplicate")
    )).scalar_one()
    assert duplicates == 1


async def test_online_orders_cannot_be_approved(db, make_order, admin_service):
    order = await make_order(PaymentMethod.ONLINE, quantity=1)
    order_id = order.id

    with pytest.raises(InvalidTransition) as exc:
        await admin_service.approve_order(db, order_id, ADMIN)

    assert exc.value.current_status == "PENDING_ONLINE"
    assert await ticket_tokens(db, order_id) == []


async def test_cancel_cash_order_releases_stock_once(db, seed, make_order, admin_service):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    order = await make_order(PaymentMethod.AMBASSADOR_CASH, quantity=4, offering=offering)
    order_id = order.id
    assert await sold_quantity(db, PassOffering, offering.id) == 4

    result = await admin_service.cancel_order(db, order_id, ADMIN, reason="cliente desistió")
    replay = await admin_service.cancel_order(db, order_id, ADMIN, reason="cliente desistió")

    assert result.stock_released
    assert not replay.stock_released
    assert replay.already_processed
    assert await order_status(db, order_id) == "CANCELLED"
    assert await sold_quantity(db, PassOffering, offering.id) == 0

    row = (await db.execute(
        select(Order.stock_released, Order.cancellation_reason).where(Order.id == order_id)
    )).one()
    assert row.stock_released is True
    assert row.cancellation_reason == "cliente desistió"


async def test_refund_revokes_tickets_and_releases_stock(db, seed, make_order, admin_service):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    order = await make_order(PaymentMethod.POS, quantity=2, offering=offering)
    order_id = order.id
    await admin_service.approve_order(db, order_id, ADMIN)

    result = await admin_service.refund_order(db, order_id, ADMIN, reason="evento reprogramado")
    replay = await admin_service.refund_order(db, order_id, ADMIN)

    assert result.stock_released
    assert replay.already_processed and not replay.stock_released
    assert await order_status(db, order_id) == "REFUNDED"
    assert await sold_quantity(db, PassOffering, offering.id) == 0
    statuses = (await db.execute(select(Ticket.status).where(Ticket.order_id == order_id))).scalars().all()
    assert statuses == ["REVOKED", "REVOKED"]


async def test_refund_requires_paid_order(db, make_order, admin_service):
    order = await make_order(PaymentMethod.AMBASSADOR_CASH, quantity=1)

    with pytest.raises(InvalidTransition):
        await admin_service.refund_order(db, order.id, ADMIN)


async def test_remove_unpaid_order_returns_its_stock(db, seed, make_order, admin_service, fake_redis):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    order = await make_order(PaymentMethod.POS, quantity=3, offering=offering)
    order_id = order.id

    result = await admin_service.remove_order(db, order_id, ADMIN)

    assert result.stock_released
    assert await sold_quantity(db, PassOffering, offering.id) == 0
    assert (await db.execute(select(Order.id).where(Order.id == order_id))).scalar_one_or_none() is None
    assert (await db.execute(select(OrderLine.id).where(OrderLine.order_id == order_id))).first() is None

    with pytest.raises(NotFoundError):
        await admin_service.remove_order(db, order_id, ADMIN)


async def test_paid_orders_cannot_be_removed(db, make_order, admin_service):
    order = await make_order(PaymentMethod.POS, quantity=1)
    order_id = order.id
    await admin_service.approve_order(db, order_id, ADMIN)

    with pytest.raises(InvalidTransition) as exc:
        await admin_service.remove_order(db, order_id, ADMIN)

    assert exc.value.current_status == "PAID"
    assert await order_status(db, order_id) == "PAID"


async def test_expire_only_old_pending_cash_orders(db, seed, make_order, admin_service):
    event = await seed.event()
    offering = await seed.pass_offering(event, max_quantity=10)
    old = (await make_order(PaymentMethod.AMBASSADOR_CASH, quantity=2, offering=offering)).id
    fresh = (await make_order(PaymentMethod.AMBASSADOR_CASH, quantity=1, offering=offering)).id
    now = datetime.now(timezone.utc)
    await db.execute(update(Order).where(Order.id == old).values(created_at=now - timedelta(hours=72)))
    await db.execute(update(Order).where(Order.id == fresh).values(created_at=now - timedelta(hours=1)))
    await db.commit()

    expired = await admin_service.expire_pending_cash_orders(db, older_than_hours=48, now=now)

    assert expired == [old]
    assert await order_status(db, old) == "CANCELLED"
    assert await order_status(db, fresh) == "PENDING_CASH"
    assert await sold_quantity(db, PassOffering, offering.id) == 1


def test_expiration_runs_on_celery_beat():
    from services.admin.tasks.maintenance_tasks import expire_pending_cash_orders_task
    from shared.cache.celery_app import celery_app

    schedule = celery_app.conf.beat_schedule["expire-pending-cash-orders"]
    assert schedule["task"] == expire_pending_cash_orders_task.name
    assert celery_app.conf.task_routes[expire_pending_cash_orders_task.name] == {"queue": "low_priority"}
