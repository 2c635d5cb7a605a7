"""Fixtures compartidas: SQLite en memoria, dobles de proveedores y cliente HTTP"""
import asyncio
import json
import os
import tempfile

# Configuración antes de importar la aplicación (Settings se lee al importar)
os.environ["APP_ENV"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["QR_SECRET"] = "test-qr-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["FLOUCI_PUBLIC_KEY"] = "test-public"
os.environ["FLOUCI_SECRET_KEY"] = "test-secret"
os.environ["FLOUCI_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["WINSMS_API_KEY"] = ""
os.environ["TICKET_STORAGE_DIR"] = tempfile.mkdtemp(prefix="andiamo-tickets-")

import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from shared.auth.jwt_handler import create_access_token
from shared.cache import redis_client as redis_module
from shared.database.connection import Base
from shared.database.models import (
    Ambassador,
    Event,
    Outlet,
    OutletPassStock,
    OutletUser,
    PassOffering,
)
from services.fulfillment.services.fulfillment_service import FulfillmentOrchestrator
from services.notifications.services.notification_service import NotificationService
from services.pass_sales.services.inventory_service import PoolKind, PoolRef
from services.pass_sales.services.order_service import (
    CustomerInfo,
    OrderDraft,
    OrderService,
    ResolvedLine,
)
from services.pass_sales.services.order_state_machine import PaymentMethod
from services.payments.services.flouci_service import FlouciService

WEBHOOK_SECRET = "test-webhook-secret"


# ==================== DOBLES ====================

class FakeRedis:
    """Redis en memoria con la API usada por shared.cache.redis_client"""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, expire, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def ping(self):
        return True

    async def aclose(self):
        pass


class FakeEmailService:
    def __init__(self, fail: bool = False, delay: float = 0):
        self.fail = fail
        self.delay = delay
        self.sent = []

    async def _send(self, kind, order):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("Resend no disponible")
        self.sent.append((kind, order))
        return True

    async def send_tickets_email(self, order):
        return await self._send("tickets", order)

    async def send_order_received_email(self, order):
        return await self._send("order_received", order)


class FakeSmsService:
    def __init__(self, fail: bool = False, delay: float = 0):
        self.fail = fail
        self.delay = delay
        self.sent = []

    async def _send(self, kind, phone):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("WinSMS no disponible")
        self.sent.append((kind, phone))
        return True

    async def send_tickets_sms(self, order):
        return await self._send("tickets", order.customer_phone)

    async def send_order_received_sms(self, order):
        return await self._send("order_received", order.ambassador_phone)


class InMemoryTicketStorage:
    def __init__(self, fail_on_calls=()):
        self.objects = {}
        self.calls = 0
        self.fail_on_calls = set(fail_on_calls)

    async def save(self, order_id, secure_token, content):
        self.calls += 1
        if self.calls in self.fail_on_calls:
            raise OSError("disco lleno")
        key = f"tickets/{order_id}/{secure_token}.png"
        self.objects[key] = content
        return f"memory://{key}"


class RetryRecorder:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.calls = []

    async def __call__(self, order_id, channels, kind="tickets", countdown=None):
        self.calls.append((order_id, list(channels), kind))
        return self.accept


class FlouciStub:
    """Estado de pagos del lado de la pasarela, servido por httpx.MockTransport"""

    def __init__(self):
        self.payments = {}
        self.requests = []
        self.counter = 0

    def set_status(self, payment_id, status, amount):
        self.payments.setdefault(payment_id, {}).update(status=status, amount=amount)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/generate_payment"):
            self.counter += 1
            payment_id = f"pay_{self.counter}"
            body = json.loads(request.content)
            self.payments[payment_id] = {
                "status": "PENDING",
                "amount": body["amount"],
                "developer_tracking_id": body["developer_tracking_id"],
            }
            return httpx.Response(200, json={
                "result": {"success": True, "payment_id": payment_id, "link": f"https://pay.flouci.test/{payment_id}"}
            })
        if "/verify_payment/" in path:
            payment_id = path.rsplit("/", 1)[-1]
            payment = self.payments.get(payment_id)
            if payment is None:
                return httpx.Response(404, json={"message": "payment not found"})
            return httpx.Response(200, json={"success": True, "result": {**payment, "payment_id": payment_id}})
        return httpx.Response(404, json={"message": "not found"})


# ==================== BASE DE DATOS ====================

@pytest.fixture
async def engine():
    import shared.database.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_module, "redis_client", fake)
    return fake


# ==================== DATOS ====================

class Seeder:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _add(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def event(self, name="Andiamo Summer Fest"):
        return await self._add(Event(id=uuid.uuid4(), name=name, city="Tunis"))

    async def pass_offering(self, event, name="Standard", price="50.00", max_quantity=100,
                            sold_quantity=0, is_active=True, allowed_payment_methods=None):
        return await self._add(PassOffering(
            id=uuid.uuid4(),
            event_id=event.id,
            name=name,
            price=Decimal(price),
            max_quantity=max_quantity,
            sold_quantity=sold_quantity,
            is_active=is_active,
            allowed_payment_methods=allowed_payment_methods,
        ))

    async def outlet(self, slug="la-marsa", name="Point de vente La Marsa"):
        return await self._add(Outlet(id=uuid.uuid4(), slug=slug, name=name, is_active=True))

    async def outlet_user(self, outlet, is_paused=False, is_active=True):
        return await self._add(OutletUser(
            id=uuid.uuid4(), outlet_id=outlet.id, name="Caissier", is_paused=is_paused, is_active=is_active,
        ))

    async def outlet_stock(self, outlet, event, offering, max_quantity=10, sold_quantity=0):
        return await self._add(OutletPassStock(
            id=uuid.uuid4(),
            outlet_id=outlet.id,
            event_id=event.id,
            pass_id=offering.id,
            max_quantity=max_quantity,
            sold_quantity=sold_quantity,
            is_active=True,
        ))

    async def ambassador(self, status="ACTIVE", phone="+216 98 123 456"):
        return await self._add(Ambassador(
            id=uuid.uuid4(), full_name="Yassine Ben Ali", phone=phone, email="yassine@andiamo.tn", status=status,
        ))


@pytest.fixture
def seed(db):
    return Seeder(db)


async def sold_quantity(db: AsyncSession, model, pool_id) -> int:
    return (await db.execute(select(model.sold_quantity).where(model.id == pool_id))).scalar_one()


def customer(**overrides) -> CustomerInfo:
    data = dict(name="Amira Trabelsi", phone="+216 22 345 678", email="amira@andiamo.tn", city="Tunis")
    data.update(overrides)
    return CustomerInfo(**data)


@pytest.fixture
def order_service():
    return OrderService()


@pytest.fixture
def make_order(db, seed, order_service):
    """Crear una orden de prueba sobre un pase global"""
    async def factory(payment_method=PaymentMethod.POS, quantity=2, offering=None, price="50.00"):
        if offering is None:
            event = await seed.event()
            offering = await seed.pass_offering(event, price=price)
        draft = OrderDraft(
            payment_method=payment_method,
            customer=customer(),
            lines=[ResolvedLine(
                pool=PoolRef(PoolKind.PASS, offering.id),
                pass_id=offering.id,
                pass_name=offering.name,
                unit_price=Decimal(offering.price),
                quantity=quantity,
            )],
            event_id=offering.event_id,
        )
        creation = await order_service.create_order(db, draft)
        return creation.order

    return factory


# ==================== SERVICIOS ====================

@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def sms_service():
    return FakeSmsService()


@pytest.fixture
def notification_service(email_service, sms_service):
    return NotificationService(email_service=email_service, sms_service=sms_service, budget_seconds=1.0)


@pytest.fixture
def storage():
    return InMemoryTicketStorage()


@pytest.fixture
def retry_recorder():
    return RetryRecorder()


@pytest.fixture
def orchestrator(storage, notification_service, retry_recorder):
    return FulfillmentOrchestrator(
        storage=storage,
        notification_service=notification_service,
        retry_scheduler=retry_recorder,
    )


@pytest.fixture
def flouci_stub():
    return FlouciStub()


@pytest.fixture
def gateway(flouci_stub):
    return FlouciService(
        public_key="test-public",
        secret_key="test-secret",
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://flouci.test/api",
        transport=httpx.MockTransport(flouci_stub.handler),
    )


# ==================== API ====================

@pytest.fixture
async def client(session_maker, notification_service, orchestrator, gateway):
    from main import app
    from shared.database.session import get_db
    from services.pass_sales.dependencies import (
        get_fulfillment_orchestrator,
        get_notification_service,
        get_payment_gateway,
    )

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_service] = lambda: notification_service
    app.dependency_overrides[get_fulfillment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin-1", "email": "admin@andiamo.tn", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


def pos_cookie(outlet, user) -> dict:
    token = create_access_token({
        "sub": str(user.id),
        "role": "pos",
        "pos_outlet_id": str(outlet.id),
        "pos_user_id": str(user.id),
    })
    return {"Cookie": f"posToken={token}"}
