from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Date, Boolean, Text, JSON, Integer
from datetime import datetime, date
from typing import Optional


class Base(DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "wc_customers"
    id: Mapped[int] = mapped_column(primary_key=True)
    wc_customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    # Human order id, e.g. WC-774 or MAN-12
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    source: Mapped[str] = mapped_column(String(20), default="manual")
    woo_order_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True, nullable=True)
    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wc_customers.id"), nullable=True)
    # Customer snapshot captured at intake
    customer_name: Mapped[str] = mapped_column(String(200))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    billing_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    billing_state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    billing_pincode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    global_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    # Cached bucket; readers recompute it from delivery_date
    priority: Mapped[str] = mapped_column(String(10), default="blue")
    order_status: Mapped[str] = mapped_column(String(40), default="new_order")
    current_department: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    order_total: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    tax_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.id", lazy="selectin",
    )
    files: Mapped[list["OrderFile"]] = relationship(
        "OrderFile", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderFile.id", lazy="selectin",
    )
    timeline: Mapped[list["TimelineEntry"]] = relationship(
        "TimelineEntry", back_populates="order", cascade="all, delete-orphan",
        order_by="TimelineEntry.id",
    )
    delay_reasons: Mapped[list["DelayReason"]] = relationship(
        "DelayReason", back_populates="order", cascade="all, delete-orphan",
        order_by="DelayReason.id", lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_name: Mapped[str] = mapped_column(String(200))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    price: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    line_total: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    specifications: Mapped[dict] = mapped_column(JSON, default=dict)
    current_stage: Mapped[str] = mapped_column(String(30), default="sales")
    current_substage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    production_stage_sequence: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    # Authoritative for department visibility; current_stage is the fallback
    assigned_department: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, index=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_to_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    delivery_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    priority: Mapped[str] = mapped_column(String(10), default="blue")
    is_ready_for_production: Mapped[bool] = mapped_column(Boolean, default=False)
    is_dispatched: Mapped[bool] = mapped_column(Boolean, default=False)
    dispatch_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    outsource_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="items")


class TimelineEntry(Base):
    __tablename__ = "timeline"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    product_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    stage: Mapped[str] = mapped_column(String(30))
    substage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    action: Mapped[str] = mapped_column(String(40))
    performed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    performed_by_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachments: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="timeline")


class OrderFile(Base):
    __tablename__ = "order_files"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_url: Mapped[str] = mapped_column(String(500))
    file_path: Mapped[str] = mapped_column(String(500))
    file_name: Mapped[str] = mapped_column(String(255))
    file_type: Mapped[str] = mapped_column(String(20), default="other")
    uploaded_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="files")


class DelayReason(Base):
    __tablename__ = "delay_reasons"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category: Mapped[str] = mapped_column(String(30), index=True)
    reason: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Stage the item was in when the delay was reported
    stage: Mapped[str] = mapped_column(String(30))
    reported_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reported_by_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    reported_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="delay_reasons")


class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(20), default="info")
    # No FK: notifications outlive deleted orders
    order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class UserProfile(Base):
    __tablename__ = "profiles"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    production_stage: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    role: Mapped[str] = mapped_column(String(20))
