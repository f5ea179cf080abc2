from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from database import Base


# ── Enumerations ─────────────────────────────────────────────
PRODUCT_ACTIVE = "A"
PRODUCT_INACTIVE = "I"

ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED)

# pending → processing → shipped → delivered
# cancelled is terminal, reachable from pending or processing
ORDER_TRANSITIONS = {
    ORDER_PENDING:    {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED:    {ORDER_DELIVERED},
    ORDER_DELIVERED:  set(),
    ORDER_CANCELLED:  set(),
}

IMAGE_SLOTS = ("image_url", "image_url2", "image_url3", "image_url4")


def statuses_leading_to(status: str) -> list:
    """Statuses an order may be in to legally move to `status`."""
    return sorted(s for s, targets in ORDER_TRANSITIONS.items() if status in targets)


# ============================================================
# User - never hard-deleted, deactivated through is_active
# ============================================================
class User(Base):
    __tablename__ = "users"

    id             = Column(Integer, primary_key=True, index=True)
    name           = Column(String(255), nullable=False)
    email          = Column(String(255), unique=True, nullable=False, index=True)
    age            = Column(Integer, default=0)
    password_hash  = Column(String(255), nullable=False)
    is_active      = Column(Integer, default=1)                 # 1 active, 0 inactive
    created_at     = Column(DateTime, server_default=func.now())


# ============================================================
# ProductGroup - products point at it through products.groupid
# ============================================================
class ProductGroup(Base):
    __tablename__ = "productgroups"

    id           = Column(Integer, primary_key=True, index=True)
    groupname    = Column(String(255), nullable=False, index=True)
    description  = Column(Text, default="")
    is_active    = Column(Integer, default=1)
    created_at   = Column(DateTime, server_default=func.now())


# ============================================================
# Product - owns its MOQ tiers and up to four stored images
# ============================================================
class Product(Base):
    __tablename__ = "products"

    id            = Column(Integer, primary_key=True, index=True)
    name          = Column(String(255), nullable=False)
    price         = Column(Numeric(12, 2), nullable=False)
    description   = Column(Text, default="")
    image_url     = Column(String(512), nullable=True)          # stable reference (filename or URL)
    image_url2    = Column(String(512), nullable=True)
    image_url3    = Column(String(512), nullable=True)
    image_url4    = Column(String(512), nullable=True)
    active        = Column(String(1), default=PRODUCT_ACTIVE)  # A | I
    groupid       = Column(Integer, ForeignKey("productgroups.id"), nullable=True, index=True)
    specialprice  = Column(Numeric(12, 2), nullable=True)
    created_at    = Column(DateTime, server_default=func.now())

    def image_references(self) -> dict:
        """Slot → stored reference, only for slots that hold one."""
        return {slot: getattr(self, slot) for slot in IMAGE_SLOTS if getattr(self, slot)}


# ============================================================
# MOQ - one pricing tier; the whole set is replaced at once
# ============================================================
class MOQ(Base):
    __tablename__ = "moqs"

    id          = Column(Integer, primary_key=True, index=True)
    product_id  = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    moq         = Column(Integer, nullable=False)                # quantity threshold
    rate        = Column(Numeric(12, 2), nullable=False)         # rate at or above the threshold
    created_at  = Column(DateTime, server_default=func.now())


# ============================================================
# Order - one row per order
# Carries its own item/qty/rate line and, optionally, an
# itemized breakdown in orderdetail
# ============================================================
class Order(Base):
    __tablename__ = "orderfile"

    id               = Column(Integer, primary_key=True, index=True)
    customer_code    = Column(String(64), nullable=False, index=True)
    item_code        = Column(Integer, default=0)
    qty              = Column(Integer, default=0)
    rate             = Column(Numeric(12, 2), default=0)
    amount           = Column(Numeric(12, 2), default=0)
    status           = Column(String(20), default=ORDER_PENDING)   # see ORDER_TRANSITIONS
    transaction_id   = Column(String(128), nullable=True)
    cancel           = Column(Integer, default=0)
    address          = Column(Text, default="")
    delivery_charge  = Column(Numeric(12, 2), default=0)
    email            = Column(String(255), default="")
    created_date     = Column(DateTime, server_default=func.now())


# ============================================================
# OrderDetail - one row per itemized line of an order
# ============================================================
class OrderDetail(Base):
    __tablename__ = "orderdetail"

    id               = Column(Integer, primary_key=True, index=True)
    order_id         = Column(Integer, ForeignKey("orderfile.id", ondelete="CASCADE"), nullable=False, index=True)
    item_code        = Column(Integer, nullable=False)
    qty              = Column(Integer, nullable=False)
    rate             = Column(Numeric(12, 2), default=0)
    amount           = Column(Numeric(12, 2), default=0)
    delivery_charge  = Column(Numeric(12, 2), default=0)


# ============================================================
# Serialization helper
# ============================================================

def row_to_dict(row, exclude: tuple = ()) -> dict:
    """
    Plain dict of a model's columns.
    Decimals become floats, datetimes ISO strings.
    """
    data = {}
    for column in row.__table__.columns:
        if column.key in exclude:
            continue
        value = getattr(row, column.key)
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[column.key] = value
    return data
