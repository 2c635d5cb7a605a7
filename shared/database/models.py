"""Modelos SQLAlchemy del motor de órdenes y reservas de stock"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, Text, JSON,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    venue = Column(String, nullable=True)
    city = Column(String, nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relaciones
    passes = relationship("PassOffering", back_populates="event")


class PassOffering(Base):
    """Pool global de un tipo de pase (canales online y embajador)"""
    __tablename__ = "event_passes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    max_quantity = Column(Integer, nullable=True)  # NULL = ilimitado
    sold_quantity = Column(Integer, nullable=False, default=0)
    allowed_payment_methods = Column(JSON, nullable=True)  # NULL = todos los métodos
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    event = relationship("Event", back_populates="passes")


class Outlet(Base):
    """Punto de venta físico"""
    __tablename__ = "pos_outlets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OutletUser(Base):
    __tablename__ = "pos_users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    outlet_id = Column(Uuid(as_uuid=True), ForeignKey("pos_outlets.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OutletPassStock(Base):
    """Pool de stock por punto de venta, independiente de PassOffering"""
    __tablename__ = "pos_pass_stock"
    __table_args__ = (
        UniqueConstraint("outlet_id", "event_id", "pass_id", name="uq_pos_pass_stock_scope"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    outlet_id = Column(Uuid(as_uuid=True), ForeignKey("pos_outlets.id"), nullable=False, index=True)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False)
    pass_id = Column(Uuid(as_uuid=True), ForeignKey("event_passes.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    max_quantity = Column(Integer, nullable=True)
    sold_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Ambassador(Base):
    __tablename__ = "ambassadors"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    city = Column(String, nullable=True)
    status = Column(String, nullable=False, default="ACTIVE")  # ACTIVE, PAUSED, REJECTED
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class StockReservation(Base):
    """Handle persistido de una reserva de stock (ACTIVE -> RELEASED)"""
    __tablename__ = "stock_reservations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    status = Column(String, nullable=False, default="ACTIVE")
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)

    movements = relationship("StockMovement", back_populates="reservation", order_by="StockMovement.sequence")


class StockMovement(Base):
    """Movimiento de contador de un pool (auditoría del ledger)"""
    __tablename__ = "stock_movements"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_id = Column(Uuid(as_uuid=True), ForeignKey("stock_reservations.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)  # posición de la línea en la reserva
    pool_kind = Column(String, nullable=False)  # pass, outlet
    pool_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    reservation = relationship("StockReservation", back_populates="movements")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel = Column(String, nullable=False)  # online, ambassador, pos
    source = Column(String, nullable=False)  # platform_online, platform_cod, point_de_vente
    status = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=False)  # online, external_app, ambassador_cash, pos
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=True)
    user_id = Column(String, nullable=True)
    ambassador_id = Column(Uuid(as_uuid=True), ForeignKey("ambassadors.id"), nullable=True)
    outlet_id = Column(Uuid(as_uuid=True), ForeignKey("pos_outlets.id"), nullable=True)
    pos_user_id = Column(Uuid(as_uuid=True), ForeignKey("pos_users.id"), nullable=True)

    customer_name = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    city = Column(String, nullable=True)
    district = Column(String, nullable=True)

    total_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="TND")

    reservation_id = Column(Uuid(as_uuid=True), ForeignKey("stock_reservations.id"), nullable=True)
    stock_released = Column(Boolean, nullable=False, default=False)
    idempotency_key = Column(String, nullable=True, unique=True)
    payment_reference = Column(String, nullable=True, index=True)  # payment_id de la pasarela

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Relaciones
    lines = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan", order_by="OrderLine.position")
    tickets = relationship("Ticket", back_populates="order", cascade="all, delete-orphan")


class OrderLine(Base):
    """Línea inmutable: nombre y precio snapshot al momento de la compra"""
    __tablename__ = "order_lines"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    pass_id = Column(Uuid(as_uuid=True), ForeignKey("event_passes.id"), nullable=False)
    pool_kind = Column(String, nullable=False)
    pool_id = Column(Uuid(as_uuid=True), nullable=False)
    pass_name_snapshot = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_snapshot = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="lines")


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("order_line_id", "unit_index", name="uq_tickets_line_unit"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    order_line_id = Column(Uuid(as_uuid=True), ForeignKey("order_lines.id", ondelete="CASCADE"), nullable=False)
    unit_index = Column(Integer, nullable=False)
    secure_token = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="GENERATED")  # GENERATED, DELIVERED, REVOKED
    code_image_url = Column(String, nullable=True)
    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="tickets")


class NotificationRecord(Base):
    """Log append-only de intentos de email/SMS"""
    __tablename__ = "notification_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    channel = Column(String, nullable=False)  # email, sms
    kind = Column(String, nullable=False, default="tickets")  # tickets, order_received
    recipient = Column(String, nullable=True)
    status = Column(String, nullable=False)  # sent, failed, timeout, queued
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrderLog(Base):
    __tablename__ = "order_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    action = Column(String, nullable=False)
    performed_by = Column(String, nullable=True)
    performed_by_type = Column(String, nullable=True)  # admin, system, pos, ambassador, webhook
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
