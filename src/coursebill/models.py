"""SQLAlchemy database models for the billing ledger."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from coursebill.utils.timestamps import utcnow


def _current_year() -> int:
    return utcnow().year


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


# ============ Status values ============


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    # Orders an operator may still refund against
    REFUNDABLE = (PAID, PARTIALLY_REFUNDED)


class OrderType:
    CHECKOUT = "checkout"
    SUBSCRIPTION = "subscription"


class SubscriptionStatus:
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"

    # Statuses that still grant access and count toward active_subscriptions
    LIVE = (ACTIVE, TRIALING)


class PurchaseStatus:
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ContentType:
    COURSE = "course"
    MASTER_CLASS = "master_class"
    BUNDLE = "bundle"
    DIGITAL_DOWNLOAD = "digital_download"


RECURRING_INTERVALS = ("day", "week", "month", "year")


# ============ Customers and catalog ============


class Customer(Base):
    """Customer with denormalized lifetime counters."""

    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    total_orders = Column(Integer, nullable=False, default=0)
    total_spent_cents = Column(BigInteger, nullable=False, default=0)
    active_subscriptions = Column(Integer, nullable=False, default=0)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, email={self.email})>"


class Product(Base):
    """Sellable content (course, master class, bundle, download)."""

    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)
    description = Column(Text, nullable=True)
    content_type = Column(String(50), nullable=False, default=ContentType.COURSE)

    amount_cents = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")

    is_active = Column(Boolean, nullable=False, default=True)
    is_archived = Column(Boolean, nullable=False, default=False)

    stripe_product_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_free(self) -> bool:
        return not self.amount_cents or self.amount_cents <= 0

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name={self.name}, amount_cents={self.amount_cents})>"


class SubscriptionPlan(Base):
    """Admin-defined recurring plan granting access to a set of products."""

    __tablename__ = "subscription_plans"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)
    description = Column(Text, nullable=True)

    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    recurring_interval = Column(String(20), nullable=False, default="month")
    recurring_interval_count = Column(Integer, nullable=False, default=1)
    trial_days = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    is_archived = Column(Boolean, nullable=False, default=False)

    stripe_product_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True, index=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    plan_products = relationship(
        "SubscriptionPlanProduct", back_populates="plan", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name}, interval={self.recurring_interval})>"


class SubscriptionPlanProduct(Base):
    """Link table: which products a plan includes."""

    __tablename__ = "subscription_plan_products"
    __table_args__ = (UniqueConstraint("plan_id", "product_id", name="uq_plan_product"),)

    id = Column(Uuid, primary_key=True, default=uuid4)
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    plan = relationship("SubscriptionPlan", back_populates="plan_products")


# ============ Ledger ============


class Order(Base):
    """One purchase transaction. Partitioned by creation year on PostgreSQL."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("stripe_payment_intent_id", "created_year", name="uq_orders_payment_intent"),
        UniqueConstraint("stripe_invoice_id", "created_year", name="uq_orders_invoice"),
        Index("idx_orders_customer_recent", "customer_id", "created_at"),
        {"postgresql_partition_by": "RANGE (created_year)"},
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    created_year = Column(Integer, primary_key=True, default=_current_year)

    order_number = Column(String(50), nullable=False, index=True)
    status = Column(String(30), nullable=False, default=OrderStatus.PENDING, index=True)
    order_type = Column(String(20), nullable=False, default=OrderType.CHECKOUT)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)

    currency = Column(String(3), nullable=False, default="usd")
    subtotal_cents = Column(BigInteger, nullable=False, default=0)
    discount_cents = Column(BigInteger, nullable=False, default=0)
    tax_cents = Column(BigInteger, nullable=False, default=0)
    total_cents = Column(BigInteger, nullable=False, default=0)
    amount_due_cents = Column(BigInteger, nullable=False, default=0)

    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_invoice_id = Column(String(255), nullable=True, index=True)

    refund_amount_cents = Column(BigInteger, nullable=False, default=0)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItem(Base):
    """Line item within an order, stored in the same year partition as its order."""

    __tablename__ = "order_items"
    __table_args__ = (
        ForeignKeyConstraint(
            ["order_id", "order_year"],
            ["orders.id", "orders.created_year"],
            ondelete="CASCADE",
        ),
        {"postgresql_partition_by": "RANGE (order_year)"},
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_year = Column(Integer, primary_key=True)
    order_id = Column(Uuid, nullable=False, index=True)

    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_amount_cents = Column(BigInteger, nullable=False)
    discount_cents = Column(BigInteger, nullable=False, default=0)
    tax_cents = Column(BigInteger, nullable=False, default=0)
    total_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    subscription_id = Column(Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="items")


class Subscription(Base):
    """Recurring billing relationship mirrored from the payment provider."""

    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False, index=True)
    # NULL for legacy subscriptions whose price matches no local plan
    plan_id = Column(Uuid, ForeignKey("subscription_plans.id"), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    currency = Column(String(3), nullable=False, default="usd")
    unit_amount_cents = Column(BigInteger, nullable=False, default=0)
    recurring_interval = Column(String(20), nullable=False, default="month")
    recurring_interval_count = Column(Integer, nullable=False, default=1)
    quantity = Column(Integer, nullable=False, default=1)

    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    stripe_subscription_id = Column(String(255), nullable=True, unique=True)
    # Provider `created` time of the newest subscription event applied to this row
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, stripe_id={self.stripe_subscription_id}, "
            f"status={self.status})>"
        )


class Purchase(Base):
    """Entitlement: grants a customer access to one product."""

    __tablename__ = "purchases"
    __table_args__ = (Index("idx_purchases_access_check", "customer_id", "product_id", "status"),)

    id = Column(Uuid, primary_key=True, default=uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)

    is_lifetime = Column(Boolean, nullable=False, default=False)
    currency = Column(String(3), nullable=False, default="usd")
    unit_amount_cents = Column(BigInteger, nullable=False, default=0)

    # Orders are partitioned, so this is a plain reference without a foreign key
    order_id = Column(Uuid, nullable=True, index=True)
    order_year = Column(Integer, nullable=True)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    status = Column(String(20), nullable=False, default=PurchaseStatus.ACTIVE)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    granted_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, customer_id={self.customer_id}, "
            f"product_id={self.product_id}, status={self.status})>"
        )
