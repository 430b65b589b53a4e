"""SQLAlchemy database models."""

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class NotificationType(str, enum.Enum):
    """Kinds of events a subscriber can be notified about."""

    NEW_PRODUCT = "NEW_PRODUCT"
    PRICE_DROP = "PRICE_DROP"


class User(Base):
    """Subscriber known through the chat transport."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    api_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    # Relationships
    search_queries: Mapped[list["SearchQuery"]] = relationship(
        "SearchQuery", back_populates="user", cascade="all, delete-orphan"
    )
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class Retailer(Base):
    """An upstream source that can be searched."""

    __tablename__ = "retailers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    base_url: Mapped[str] = mapped_column(Text, nullable=False)
    use_rotating_proxy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    use_random_user_agent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    search_queries: Mapped[list["SearchQuery"]] = relationship(
        "SearchQuery", back_populates="retailer"
    )
    products: Mapped[list["Product"]] = relationship("Product", back_populates="retailer")


class SearchQuery(Base):
    """A user's standing search on one retailer."""

    __tablename__ = "search_queries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id"), nullable=False
    )
    search_text: Mapped[str] = mapped_column(Text, nullable=False)
    # Upstream endpoint found by discovery, memoized so discovery runs once
    api_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    # NULL means the query never completed a run
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    interval_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    # Notification preferences
    notify_on_new: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_on_price_drops: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    price_drop_threshold_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="search_queries")
    retailer: Mapped["Retailer"] = relationship("Retailer", back_populates="search_queries")
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification", back_populates="search_query", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("interval_minutes >= 1", name="ck_query_interval_positive"),
        CheckConstraint(
            "price_drop_threshold_percent IS NULL OR "
            "(price_drop_threshold_percent >= 1 AND price_drop_threshold_percent <= 100)",
            name="ck_query_threshold_range",
        ),
    )


class Product(Base):
    """Our memory of one upstream listing."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # Set only when the price actually changes
    old_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="EUR", nullable=False)
    price_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_url: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    distance_meters: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_checked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    retailer: Mapped["Retailer"] = relationship("Retailer", back_populates="products")
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification", back_populates="product", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("retailer_id", "external_id", name="uq_product_retailer_external"),
    )


class Notification(Base):
    """A decided event for one subscriber, pushed or waiting to be pulled."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    search_query_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("search_queries.id"), nullable=False
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, native_enum=False, length=16), nullable=False
    )
    price_drop_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="notifications")
    product: Mapped["Product"] = relationship("Product", back_populates="notifications")
    search_query: Mapped["SearchQuery"] = relationship(
        "SearchQuery", back_populates="notifications"
    )

    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )
