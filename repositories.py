# ============================================================
# repositories.py - Single-table data access
# ============================================================
# One repository per table. Each one is bound to a SQLAlchemy
# session handed in by the caller and never touches another
# table's rows (reads may join for display columns).
#
# Writes flush but never commit: the HTTP request or the
# service transaction that owns the session decides that.
# ============================================================

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session as DBSession

from errors import ValidationFailed, translate_db_errors
from models import (
    User, Product, MOQ, ProductGroup, Order, OrderDetail,
    PRODUCT_ACTIVE, PRODUCT_INACTIVE, ORDER_CANCELLED, IMAGE_SLOTS
)

# Columns a caller may never write through create/update
PROTECTED_COLUMNS = ("id", "created_at", "created_date")


# ============================================================
# Partial-update builder
# ============================================================

def build_update_values(model, fields: Mapping[str, Any], protected: Iterable[str] = PROTECTED_COLUMNS) -> Dict[str, Any]:
    """
    Build the SET clause values for a partial update.

    Only keys present in `fields` are included (a present key with
    value None sets the column to NULL). Unknown and protected
    columns are rejected instead of silently dropped.
    """
    columns = {column.key for column in model.__table__.columns}
    protected = set(protected)
    values = {}

    for key, value in fields.items():
        if key in protected:
            raise ValidationFailed(f"{key} cannot be changed")
        if key not in columns:
            raise ValidationFailed(f"Unknown field for {model.__tablename__}: {key}")
        values[key] = value

    return values


def build_insert_values(model, fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Like build_update_values, but None means 'use the column default'."""
    values = build_update_values(model, fields)
    return {key: value for key, value in values.items() if value is not None}


# ============================================================
# BASE REPOSITORY
# ============================================================

class BaseRepository:
    model = None

    def __init__(self, db: DBSession):
        self.db = db

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def ordering(self) -> list:
        return [self.model.id.desc()]

    def query(self):
        return self.db.query(self.model)

    # ── Reads ────────────────────────────────────────────────

    def find_all(self) -> list:
        return self.query().order_by(*self.ordering()).all()

    def find_by_id(self, id: int):
        return self.query().filter(self.model.id == id).first()

    def exists(self, id: int) -> bool:
        return self.db.query(self.model.id).filter(self.model.id == id).first() is not None

    def count(self) -> int:
        return self.query().count()

    def paginate(self, page: int = 1, limit: int = 10) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        total = self.count()
        items = (
            self.query()
            .order_by(*self.ordering())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / limit)
        }

    # ── Writes ───────────────────────────────────────────────

    def create(self, fields: Mapping[str, Any]) -> int:
        row = self.model(**build_insert_values(self.model, fields))
        with translate_db_errors(f"insert into {self.table}"):
            self.db.add(row)
            self.db.flush()
        return row.id

    def update(self, id: int, fields: Mapping[str, Any]) -> bool:
        """Returns False for an empty partial without issuing a statement."""
        values = build_update_values(self.model, fields)
        if not values:
            return False

        with translate_db_errors(f"update {self.table}"):
            count = self.query().filter(self.model.id == id).update(values)
        return count > 0

    def delete(self, id: int) -> bool:
        with translate_db_errors(f"delete from {self.table}"):
            count = self.query().filter(self.model.id == id).delete()
        return count > 0

    def lock(self, id: int) -> bool:
        """
        Hold the row's write lock until the transaction ends, so a
        read-then-write on it cannot race another one. False if absent.
        """
        with translate_db_errors(f"lock {self.table} row"):
            if self.db.get_bind().dialect.name == "sqlite":
                # No SELECT ... FOR UPDATE; a no-op UPDATE takes the write lock
                count = (
                    self.query()
                    .filter(self.model.id == id)
                    .update({self.model.id: self.model.id}, synchronize_session=False)
                )
                return count > 0
            row = self.db.query(self.model.id).filter(self.model.id == id).with_for_update().first()
            return row is not None

    def _toggle(self, id: int, column: str, on, off) -> bool:
        row = self.find_by_id(id)
        if row is None:
            return False
        return self.update(id, {column: off if getattr(row, column) == on else on})


# ============================================================
# USER REPOSITORY
# ============================================================

class UserRepository(BaseRepository):
    model = User

    def find_by_email(self, email: str) -> Optional[User]:
        return self.query().filter(User.email == email).first()

    def search_by_name(self, name: str) -> List[User]:
        return (
            self.query()
            .filter(User.name.ilike(f"%{name}%"))
            .order_by(*self.ordering())
            .all()
        )

    def find_by_status(self, is_active: int) -> List[User]:
        return self.query().filter(User.is_active == is_active).order_by(*self.ordering()).all()

    def toggle_active(self, id: int) -> bool:
        return self._toggle(id, "is_active", 1, 0)

    def update_password(self, id: int, password_hash: str) -> bool:
        return self.update(id, {"password_hash": password_hash})

    def delete(self, id: int) -> bool:
        """Users are deactivated, never removed."""
        return self.update(id, {"is_active": 0})


# ============================================================
# PRODUCT REPOSITORY
# ============================================================

class ProductRepository(BaseRepository):
    model = Product

    def find_active(self) -> List[Product]:
        return self.query().filter(Product.active == PRODUCT_ACTIVE).order_by(*self.ordering()).all()

    def find_by_group(self, group_id: int) -> List[Product]:
        return self.query().filter(Product.groupid == group_id).order_by(Product.name.asc()).all()

    def count_in_group(self, group_id: int) -> int:
        return self.query().filter(Product.groupid == group_id).count()

    def find_all_with_group_names(self) -> list:
        """(product, group name or None) pairs, newest product first."""
        return (
            self.db.query(Product, ProductGroup.groupname)
            .outerjoin(ProductGroup, Product.groupid == ProductGroup.id)
            .order_by(Product.id.desc())
            .all()
        )

    def get_images(self, id: int) -> Optional[Dict[str, Optional[str]]]:
        row = (
            self.db.query(*[getattr(Product, slot) for slot in IMAGE_SLOTS])
            .filter(Product.id == id)
            .first()
        )
        if row is None:
            return None
        return dict(zip(IMAGE_SLOTS, row))

    def toggle_active(self, id: int) -> bool:
        return self._toggle(id, "active", PRODUCT_ACTIVE, PRODUCT_INACTIVE)


# ============================================================
# MOQ REPOSITORY
# ============================================================

class MOQRepository(BaseRepository):
    model = MOQ

    def ordering(self) -> list:
        return [MOQ.moq.asc(), MOQ.id.asc()]

    def find_by_product(self, product_id: int) -> List[MOQ]:
        return self.query().filter(MOQ.product_id == product_id).order_by(*self.ordering()).all()

    def find_by_products(self, product_ids: List[int]) -> Dict[int, List[MOQ]]:
        """One query for many products; every requested id gets a list."""
        grouped = {product_id: [] for product_id in product_ids}
        if not product_ids:
            return grouped

        rows = (
            self.query()
            .filter(MOQ.product_id.in_(product_ids))
            .order_by(*self.ordering())
            .all()
        )
        for row in rows:
            grouped[row.product_id].append(row)
        return grouped

    def insert_many(self, product_id: int, moqs: List[Mapping[str, Any]]) -> List[MOQ]:
        rows = [MOQ(product_id=product_id, moq=tier["moq"], rate=tier["rate"]) for tier in moqs]
        with translate_db_errors("insert into moqs"):
            self.db.add_all(rows)
            self.db.flush()
        return rows

    def delete_by_product(self, product_id: int) -> int:
        with translate_db_errors("delete from moqs"):
            return self.query().filter(MOQ.product_id == product_id).delete()


# ============================================================
# PRODUCT GROUP REPOSITORY
# ============================================================

class ProductGroupRepository(BaseRepository):
    model = ProductGroup

    def find_active(self) -> List[ProductGroup]:
        return (
            self.query()
            .filter(ProductGroup.is_active == 1)
            .order_by(ProductGroup.groupname.asc())
            .all()
        )

    def search(self, term: str) -> List[ProductGroup]:
        pattern = f"%{term}%"
        return (
            self.query()
            .filter(or_(ProductGroup.groupname.ilike(pattern), ProductGroup.description.ilike(pattern)))
            .order_by(ProductGroup.groupname.asc())
            .all()
        )

    def find_with_product_count(self) -> list:
        """(group, number of products) pairs, by name."""
        return (
            self.db.query(ProductGroup, func.count(Product.id))
            .outerjoin(Product, Product.groupid == ProductGroup.id)
            .group_by(ProductGroup.id)
            .order_by(ProductGroup.groupname.asc())
            .all()
        )

    def toggle_active(self, id: int) -> bool:
        return self._toggle(id, "is_active", 1, 0)


# ============================================================
# ORDER REPOSITORY
# ============================================================

class OrderRepository(BaseRepository):
    model = Order

    def ordering(self) -> list:
        return [Order.created_date.desc(), Order.id.desc()]

    def find_by_customer(self, customer_code: str) -> List[Order]:
        return (
            self.query()
            .filter(Order.customer_code == str(customer_code))
            .order_by(*self.ordering())
            .all()
        )

    def update_status(self, id: int, status: str, from_statuses: Optional[Iterable[str]] = None) -> bool:
        return self.bulk_update_status([id], status, from_statuses) > 0

    def cancel(self, id: int, from_statuses: Optional[Iterable[str]] = None) -> bool:
        return self.bulk_cancel([id], from_statuses) > 0

    def bulk_update_status(self, ids: List[int], status: str, from_statuses: Optional[Iterable[str]] = None) -> int:
        """
        One UPDATE for every id. With `from_statuses`, rows in any
        other status are left alone. Empty `ids` issues nothing.
        """
        return self._bulk_set(ids, {"status": status}, from_statuses)

    def bulk_cancel(self, ids: List[int], from_statuses: Optional[Iterable[str]] = None) -> int:
        """Status and cancel flag move together in the same statement."""
        return self._bulk_set(ids, {"status": ORDER_CANCELLED, "cancel": 1}, from_statuses)

    def _bulk_set(self, ids: List[int], values: dict, from_statuses: Optional[Iterable[str]]) -> int:
        if not ids:
            return 0

        query = self.query().filter(Order.id.in_(list(ids)))
        if from_statuses is not None:
            query = query.filter(Order.status.in_(list(from_statuses)))

        with translate_db_errors("update orderfile"):
            return query.update(values, synchronize_session=False)


# ============================================================
# ORDER DETAIL REPOSITORY
# ============================================================

class OrderDetailRepository(BaseRepository):
    model = OrderDetail

    def ordering(self) -> list:
        return [OrderDetail.id.asc()]

    def find_by_order(self, order_id: int) -> List[OrderDetail]:
        return self.query().filter(OrderDetail.order_id == order_id).order_by(*self.ordering()).all()

    def find_by_order_with_products(self, order_id: int) -> list:
        """
        (detail, product name, price, description, image reference)
        rows. Product columns are None when the item no longer exists.
        """
        return (
            self.db.query(
                OrderDetail,
                Product.name,
                Product.price,
                Product.description,
                Product.image_url
            )
            .outerjoin(Product, OrderDetail.item_code == Product.id)
            .filter(OrderDetail.order_id == order_id)
            .order_by(OrderDetail.id.asc())
            .all()
        )

    def insert_many(self, order_id: int, details: List[Mapping[str, Any]]) -> List[OrderDetail]:
        rows = [
            OrderDetail(order_id=order_id, **build_insert_values(OrderDetail, detail))
            for detail in details
        ]
        with translate_db_errors("insert into orderdetail"):
            self.db.add_all(rows)
            self.db.flush()
        return rows

    def delete_by_order(self, order_id: int) -> int:
        with translate_db_errors("delete from orderdetail"):
            return self.query().filter(OrderDetail.order_id == order_id).delete()

    def order_total(self, order_id: int):
        return (
            self.db.query(func.coalesce(func.sum(OrderDetail.amount), 0))
            .filter(OrderDetail.order_id == order_id)
            .scalar()
        )
