"""
FieldAudit Database Models

Tables read and written by the audit core.

Tables:
  1. sales_reps         - Field sales representatives
  2. outlets            - Retail outlets (+ registered coordinate)
  3. orders             - Orders placed by a sales rep for an outlet
  4. cancellation_logs  - One row per cancelled order
  5. visit_logs         - Field-visit check-ins (+ photo evidence hash)
  6. audit_flags        - Rule output awaiting human review

Orders, cancellations and visits are written upstream; this core only
creates audit_flags and sets visit status/photo fields at check time.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── Stored enumerations ────────────────────────────────────────────────────


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    READY_TO_SHIP = "READY_TO_SHIP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class CancellationReason(str, enum.Enum):
    CUSTOMER_REQUEST = "CUSTOMER_REQUEST"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PAYMENT_ISSUE = "PAYMENT_ISSUE"
    DELIVERY_ISSUE = "DELIVERY_ISSUE"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    PRICING_ERROR = "PRICING_ERROR"
    SALES_REP_ERROR = "SALES_REP_ERROR"
    OTHER = "OTHER"


class VisitStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FLAGGED = "FLAGGED"
    REJECTED = "REJECTED"


class EntityType(str, enum.Enum):
    SALES_REP = "SALES_REP"
    OUTLET = "OUTLET"
    ORDER = "ORDER"
    PRODUCT = "PRODUCT"
    VISIT = "VISIT"


class Severity(str, enum.Enum):
    INFO = "INFO"
    WARN = "WARN"
    HIGH = "HIGH"


class RuleCode(str, enum.Enum):
    HIGH_CANCEL_RATE = "HIGH_CANCEL_RATE"
    END_OF_MONTH_SPIKE = "END_OF_MONTH_SPIKE"
    PRE_SHIP_CANCEL = "PRE_SHIP_CANCEL"
    ABNORMAL_ORDER_SIZE = "ABNORMAL_ORDER_SIZE"
    DISTANCE_TOO_FAR = "DISTANCE_TOO_FAR"
    DUPLICATE_PHOTO = "DUPLICATE_PHOTO"


def _in_clause(column: str, enum_cls: type[enum.Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ─── 1. Sales Reps ──────────────────────────────────────────────────────────


class SalesRep(Base):
    __tablename__ = "sales_reps"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    code = Column(String(32), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    orders = relationship("Order", back_populates="sales_rep")
    visits = relationship("VisitLog", back_populates="sales_rep")


# ─── 2. Outlets ─────────────────────────────────────────────────────────────


class Outlet(Base):
    __tablename__ = "outlets"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    code = Column(String(32), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    address = Column(Text)
    latitude = Column(Float)
    longitude = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("latitude IS NULL OR (latitude >= -90 AND latitude <= 90)", name="ck_outlet_latitude"),
        CheckConstraint("longitude IS NULL OR (longitude >= -180 AND longitude <= 180)", name="ck_outlet_longitude"),
    )

    orders = relationship("Order", back_populates="outlet")
    visits = relationship("VisitLog", back_populates="outlet")


# ─── 3. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_number = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=OrderStatus.CREATED.value)
    total_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    planned_ship_date = Column(DateTime)
    sales_rep_id = Column(GUID(), ForeignKey("sales_reps.id"), nullable=False)
    outlet_id = Column(GUID(), ForeignKey("outlets.id"), nullable=False)

    __table_args__ = (
        Index("ix_orders_created_at", "created_at"),
        Index("ix_orders_sales_rep_created", "sales_rep_id", "created_at"),
        Index("ix_orders_outlet_created", "outlet_id", "created_at"),
        CheckConstraint(_in_clause("status", OrderStatus), name="ck_order_status"),
        CheckConstraint("total_amount >= 0", name="ck_order_amount"),
    )

    sales_rep = relationship("SalesRep", back_populates="orders")
    outlet = relationship("Outlet", back_populates="orders")
    cancellation = relationship("CancellationLog", back_populates="order", uselist=False)


# ─── 4. Cancellation Logs ───────────────────────────────────────────────────


class CancellationLog(Base):
    __tablename__ = "cancellation_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, unique=True)
    reason = Column(String(32), nullable=False)
    notes = Column(Text)
    cancelled_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    # Negative when the order was cancelled after its planned ship date
    hours_before_ship_date = Column(Float)
    cancelled_by_sales_rep_id = Column(GUID(), ForeignKey("sales_reps.id"))

    __table_args__ = (
        Index("ix_cancellation_logs_cancelled_at", "cancelled_at"),
        CheckConstraint(_in_clause("reason", CancellationReason), name="ck_cancellation_reason"),
    )

    order = relationship("Order", back_populates="cancellation")


# ─── 5. Visit Logs ──────────────────────────────────────────────────────────


class VisitLog(Base):
    __tablename__ = "visit_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    sales_rep_id = Column(GUID(), ForeignKey("sales_reps.id"), nullable=False)
    outlet_id = Column(GUID(), ForeignKey("outlets.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float)
    distance = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default=VisitStatus.PENDING.value)
    photo_path = Column(String(512))
    photo_sha256 = Column(String(64))
    check_in_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    server_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    notes = Column(Text)

    __table_args__ = (
        Index("ix_visit_logs_rep_photo", "sales_rep_id", "photo_sha256"),
        CheckConstraint(_in_clause("status", VisitStatus), name="ck_visit_status"),
        CheckConstraint("distance >= 0", name="ck_visit_distance"),
    )

    sales_rep = relationship("SalesRep", back_populates="visits")
    outlet = relationship("Outlet", back_populates="visits")


# ─── 6. Audit Flags ─────────────────────────────────────────────────────────


class AuditFlag(Base):
    __tablename__ = "audit_flags"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(20), nullable=False)
    # String so period-level flags can carry the SYSTEM sentinel
    entity_id = Column(String(64), nullable=False)
    rule_code = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)
    meta = Column(JSON, default=dict)
    order_id = Column(GUID(), ForeignKey("orders.id"))
    visit_log_id = Column(GUID(), ForeignKey("visit_logs.id"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(255))
    resolved_at = Column(DateTime)

    __table_args__ = (
        Index("ix_audit_flags_created_at", "created_at"),
        Index("ix_audit_flags_rule_severity", "rule_code", "severity"),
        CheckConstraint(_in_clause("entity_type", EntityType), name="ck_audit_flag_entity_type"),
        CheckConstraint(_in_clause("severity", Severity), name="ck_audit_flag_severity"),
    )
