# ============================================================
# services.py - Multi-table writes
# ============================================================
# Everything that touches more than one table, or a table plus
# image storage, goes through here as one unit:
#
#   ProductService       product + MOQ tiers + images + group
#   OrderService         order + order details, status changes
#   ProductGroupService  group deletion guarded by its products
#   UserService          registration / passwords (bcrypt)
#
# Every write opens exactly one transaction via
# Database.transaction(); image side effects are staged with
# ImageStaging so they are undone on rollback and only made
# final after commit.
# ============================================================

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from passlib.context import CryptContext

import config
from database import Database
from errors import Conflict, NotFound, ValidationFailed
from images import ImageStaging, ImageStore, ImageUpload
from models import (
    MOQ, Product, User, row_to_dict, statuses_leading_to,
    IMAGE_SLOTS, ORDER_CANCELLED, ORDER_PENDING, ORDER_STATUSES,
    PRODUCT_ACTIVE, PRODUCT_INACTIVE
)
from repositories import (
    MOQRepository, OrderDetailRepository, OrderRepository,
    ProductGroupRepository, ProductRepository, UserRepository
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__default_rounds=config.BCRYPT_ROUNDS
)


# ============================================================
# HELPERS: field normalization
# ============================================================

def to_decimal(value: Any, field: str) -> Decimal:
    """Non-negative Decimal, or ValidationFailed."""
    if value is None or value == "":
        raise ValidationFailed(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"{field} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed(f"{field} must be a non-negative number")
    return amount


def to_int(value: Any, field: str, minimum: int = 0) -> int:
    if value is None or value == "":
        raise ValidationFailed(f"{field} is required")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be a whole number")
    if number < minimum:
        raise ValidationFailed(f"{field} must be at least {minimum}")
    return number


def normalize_moqs(moqs: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """
    Validate MOQ tiers given as dicts (or objects with moq/rate).
    Order is preserved.
    """
    tiers = []
    for index, tier in enumerate(moqs or [], start=1):
        if not isinstance(tier, Mapping):
            tier = {"moq": getattr(tier, "moq", None), "rate": getattr(tier, "rate", None)}
        tiers.append({
            "moq": to_int(tier.get("moq"), f"MOQ tier {index}: moq", minimum=1),
            "rate": to_decimal(tier.get("rate"), f"MOQ tier {index}: rate")
        })
    return tiers


def normalize_ids(ids: Optional[List[Any]]) -> List[int]:
    """Distinct integer ids, first occurrence wins."""
    seen = []
    for value in ids or []:
        number = to_int(value, "id", minimum=1)
        if number not in seen:
            seen.append(number)
    return seen


def check_image_slots(images: Optional[Mapping[str, ImageUpload]]):
    for slot in images or {}:
        if slot not in IMAGE_SLOTS:
            raise ValidationFailed(f"Unknown image slot: {slot}")


# ============================================================
# PRODUCTS
# ============================================================

class ProductService:

    def __init__(self, database: Database, images: ImageStore):
        self.database = database
        self.images = images

    # ── Validation ───────────────────────────────────────────

    def _product_changes(self, fields: Mapping[str, Any], creating: bool) -> Dict[str, Any]:
        values = dict(fields)

        for slot in IMAGE_SLOTS:
            if slot in values:
                raise ValidationFailed(f"{slot} is set by uploading an image, not directly")

        if creating or "name" in values:
            name = values.get("name")
            if not name or not str(name).strip():
                raise ValidationFailed("Product name is required")
            values["name"] = str(name).strip()

        if creating or "price" in values:
            values["price"] = to_decimal(values.get("price"), "price")

        if values.get("specialprice") not in (None, ""):
            values["specialprice"] = to_decimal(values["specialprice"], "specialprice")
        elif "specialprice" in values:
            values["specialprice"] = None

        if "active" in values and values["active"] not in (PRODUCT_ACTIVE, PRODUCT_INACTIVE):
            raise ValidationFailed("active must be 'A' or 'I'")

        return values

    def _check_group(self, db, values: Mapping[str, Any]):
        group_id = values.get("groupid")
        if group_id is not None and not ProductGroupRepository(db).exists(group_id):
            raise NotFound(f"Product group {group_id} not found")

    def _replace_tiers(self, db, product_id: int, tiers: List[Dict[str, Any]]) -> List[MOQ]:
        moqs = MOQRepository(db)
        moqs.delete_by_product(product_id)
        moqs.insert_many(product_id, tiers)
        return moqs.find_by_product(product_id)

    # ── Composite writes ─────────────────────────────────────

    def create_product_with_moqs(
            self,
            product_fields: Mapping[str, Any],
            moqs: Optional[List[Any]] = None,
            images: Optional[Mapping[str, ImageUpload]] = None
    ) -> int:
        """
        Insert a product and its MOQ tiers in one transaction.

        Images are uploaded first; if anything afterwards fails the
        transaction is rolled back and the uploads are deleted again.
        """
        values = self._product_changes(product_fields, creating=True)
        tiers = normalize_moqs(moqs)
        check_image_slots(images)

        with ImageStaging(self.images) as staging:
            values.update(staging.upload(images))

            with self.database.transaction() as db:
                self._check_group(db, values)
                product_id = ProductRepository(db).create(values)
                MOQRepository(db).insert_many(product_id, tiers)

        logger.info("Created product %s with %d MOQ tier(s)", product_id, len(tiers))
        return product_id

    def replace_moqs(self, product_id: int, moqs: Optional[List[Any]]) -> List[MOQ]:
        """
        Delete every tier of the product and insert `moqs` instead.
        An empty list clears the tiers. NotFound for an unknown product.
        """
        tiers = normalize_moqs(moqs)

        with self.database.transaction() as db:
            if not ProductRepository(db).exists(product_id):
                raise NotFound(f"Product {product_id} not found")
            rows = self._replace_tiers(db, product_id, tiers)

        logger.info("Replaced MOQ tiers of product %s (%d tier(s))", product_id, len(rows))
        return rows

    def update_product_with_images(
            self,
            product_id: int,
            fields: Optional[Mapping[str, Any]] = None,
            moqs: Optional[List[Any]] = None,
            images: Optional[Mapping[str, ImageUpload]] = None
    ) -> bool:
        """
        Partial update of a product, optionally replacing some image
        slots and the whole MOQ set (moqs=None leaves tiers alone,
        moqs=[] clears them).

        New images are stored before the transaction; images they
        replace are deleted only after it commits.
        """
        values = self._product_changes(fields or {}, creating=False)
        tiers = normalize_moqs(moqs) if moqs is not None else None
        check_image_slots(images)

        with ImageStaging(self.images) as staging:
            references = staging.upload(images)

            with self.database.transaction() as db:
                products = ProductRepository(db)
                if not products.lock(product_id):
                    raise NotFound(f"Product {product_id} not found")
                current = products.get_images(product_id)

                self._check_group(db, values)
                products.update(product_id, {**values, **references})

                for slot in references:
                    staging.release(current[slot])

                if tiers is not None:
                    self._replace_tiers(db, product_id, tiers)

        logger.info(
            "Updated product %s (fields=%s, images=%s, moqs=%s)",
            product_id, sorted(values), sorted(references),
            "unchanged" if tiers is None else len(tiers)
        )
        return True

    def remove_product_image(self, product_id: int, slot: str) -> bool:
        """Clear one image slot; returns False if it was already empty."""
        check_image_slots({slot: None})

        with ImageStaging(self.images) as staging:
            with self.database.transaction() as db:
                products = ProductRepository(db)
                if not products.lock(product_id):
                    raise NotFound(f"Product {product_id} not found")
                current = products.get_images(product_id)
                if current[slot] is None:
                    return False

                products.update(product_id, {slot: None})
                staging.release(current[slot])

        return True

    def delete_product(self, product_id: int) -> bool:
        """
        Delete the MOQ tiers and the product row in one transaction,
        then release its stored images. A storage failure is logged
        and does not undo the deletion.
        """
        with ImageStaging(self.images) as staging:
            with self.database.transaction() as db:
                products = ProductRepository(db)
                products.lock(product_id)
                product = products.find_by_id(product_id)
                if product is None:
                    raise NotFound(f"Product {product_id} not found")

                removed = MOQRepository(db).delete_by_product(product_id)
                for reference in product.image_references().values():
                    staging.release(reference)
                products.delete(product_id)

        logger.info("Deleted product %s and %d MOQ tier(s)", product_id, removed)
        return True

    def assign_group(self, product_id: int, group_id: Optional[int]) -> bool:
        """Move a product into a group, or out of any with None."""
        with self.database.transaction() as db:
            products = ProductRepository(db)
            if not products.exists(product_id):
                raise NotFound(f"Product {product_id} not found")
            self._check_group(db, {"groupid": group_id})
            products.update(product_id, {"groupid": group_id})
        return True

    def toggle_active(self, product_id: int) -> bool:
        with self.database.transaction() as db:
            if not ProductRepository(db).toggle_active(product_id):
                raise NotFound(f"Product {product_id} not found")
        return True

    # ── Reads ────────────────────────────────────────────────

    def display_urls(self, product: Product, width: int = None, height: int = None) -> Dict[str, Optional[str]]:
        options = {
            "width": width or config.DISPLAY_WIDTH,
            "height": height or config.DISPLAY_HEIGHT
        }
        return {
            slot: self.images.resolve_display_url(getattr(product, slot), **options)
            if getattr(product, slot) else None
            for slot in IMAGE_SLOTS
        }

    def to_dict(self, product: Product, moqs: List[MOQ], group_name: Optional[str] = None) -> dict:
        data = row_to_dict(product)
        data["moqs"] = [row_to_dict(tier, exclude=("product_id",)) for tier in moqs]
        data["image_urls"] = self.display_urls(product)
        if group_name is not None:
            data["group_name"] = group_name
        return data

    def get_product_with_moqs(self, product_id: int) -> Optional[dict]:
        with self.database.session() as db:
            product = ProductRepository(db).find_by_id(product_id)
            if product is None:
                return None
            moqs = MOQRepository(db).find_by_product(product_id)
        return self.to_dict(product, moqs)

    def list_products_with_moqs(self, active_only: bool = False) -> List[dict]:
        with self.database.session() as db:
            products = ProductRepository(db)
            rows = products.find_active() if active_only else products.find_all()
            tiers = MOQRepository(db).find_by_products([p.id for p in rows])
        return [self.to_dict(p, tiers[p.id]) for p in rows]

    def list_products_with_groups(self) -> List[dict]:
        with self.database.session() as db:
            rows = ProductRepository(db).find_all_with_group_names()
            tiers = MOQRepository(db).find_by_products([p.id for p, _ in rows])
        return [self.to_dict(p, tiers[p.id], group_name or "") for p, group_name in rows]

    def list_products_in_group(self, group_id: int) -> List[dict]:
        with self.database.session() as db:
            if not ProductGroupRepository(db).exists(group_id):
                raise NotFound(f"Product group {group_id} not found")
            rows = ProductRepository(db).find_by_group(group_id)
            tiers = MOQRepository(db).find_by_products([p.id for p in rows])
        return [self.to_dict(p, tiers[p.id]) for p in rows]


# ============================================================
# ORDERS
# ============================================================

ORDER_DECIMAL_FIELDS = ("rate", "amount", "delivery_charge")


class OrderService:

    def __init__(self, database: Database):
        self.database = database

    # ── Validation ───────────────────────────────────────────

    def _check_status(self, status: Any) -> str:
        if status not in ORDER_STATUSES:
            raise ValidationFailed(f"status must be one of {', '.join(ORDER_STATUSES)}")
        return status

    def _order_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        values = {key: value for key, value in fields.items() if value is not None}

        customer = values.get("customer_code")
        if customer is None or not str(customer).strip():
            raise ValidationFailed("customer_code is required")
        values["customer_code"] = str(customer).strip()

        status = self._check_status(values.get("status", ORDER_PENDING))
        if status == ORDER_CANCELLED or values.get("cancel"):
            # cancel flag and cancelled status always travel together
            values["status"], values["cancel"] = ORDER_CANCELLED, 1
        else:
            values["status"], values["cancel"] = status, 0

        for key in ("item_code", "qty"):
            if key in values:
                values[key] = to_int(values[key], key)
        for key in ORDER_DECIMAL_FIELDS:
            if key in values:
                values[key] = to_decimal(values[key], key)

        if "amount" not in values and "qty" in values and "rate" in values:
            values["amount"] = values["qty"] * values["rate"]
        return values

    def _detail_fields(self, detail: Mapping[str, Any], index: int) -> Dict[str, Any]:
        values = {key: value for key, value in detail.items() if value is not None and key != "order_id"}
        label = f"Order detail {index}"

        values["item_code"] = to_int(values.get("item_code"), f"{label}: item_code")
        values["qty"] = to_int(values.get("qty"), f"{label}: qty", minimum=1)
        for key in ORDER_DECIMAL_FIELDS:
            if key in values:
                values[key] = to_decimal(values[key], f"{label}: {key}")

        values.setdefault("rate", Decimal("0"))
        values.setdefault("amount", values["qty"] * values["rate"])
        values.setdefault("delivery_charge", Decimal("0"))
        return values

    # ── Composite writes ─────────────────────────────────────

    def create_order_with_details(
            self,
            order_fields: Mapping[str, Any],
            details: Optional[List[Mapping[str, Any]]] = None
    ) -> int:
        """
        Insert the order row and every detail row bound to it, all or
        nothing. Without details the order's own item/qty/rate is its
        only line; with details and no explicit amount, the amount is
        the sum of the detail amounts.
        """
        explicit_amount = order_fields.get("amount") is not None
        values = self._order_fields(order_fields)
        lines = [self._detail_fields(detail, index) for index, detail in enumerate(details or [], start=1)]

        if lines and not explicit_amount:
            values["amount"] = sum((line["amount"] for line in lines), Decimal("0"))

        with self.database.transaction() as db:
            order_id = OrderRepository(db).create(values)
            OrderDetailRepository(db).insert_many(order_id, lines)

        logger.info("Created order %s with %d detail line(s)", order_id, len(lines))
        return order_id

    def delete_order(self, order_id: int) -> bool:
        with self.database.transaction() as db:
            orders = OrderRepository(db)
            if not orders.exists(order_id):
                raise NotFound(f"Order {order_id} not found")
            removed = OrderDetailRepository(db).delete_by_order(order_id)
            orders.delete(order_id)

        logger.info("Deleted order %s and %d detail line(s)", order_id, removed)
        return True

    # ── Status changes ───────────────────────────────────────

    def update_status(self, order_id: int, status: str) -> bool:
        """
        Move one order along pending → processing → shipped → delivered.
        The status check and the write are one conditional UPDATE.
        """
        status = self._check_status(status)
        if status == ORDER_CANCELLED:
            return self.cancel_order(order_id)

        with self.database.transaction() as db:
            orders = OrderRepository(db)
            if orders.update_status(order_id, status, statuses_leading_to(status)):
                return True
            self._explain_refusal(orders, order_id, status)

    def cancel_order(self, order_id: int) -> bool:
        """Sets status 'cancelled' and the cancel flag in one statement."""
        with self.database.transaction() as db:
            orders = OrderRepository(db)
            if orders.cancel(order_id, statuses_leading_to(ORDER_CANCELLED)):
                return True
            self._explain_refusal(orders, order_id, ORDER_CANCELLED)

    def _explain_refusal(self, orders: OrderRepository, order_id: int, status: str):
        order = orders.find_by_id(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        raise ValidationFailed(f"Order {order_id} cannot move from {order.status} to {status}")

    def bulk_update_status(self, order_ids: List[Any], status: str) -> int:
        """
        One UPDATE for all ids. Orders whose current status cannot
        legally move to `status` are skipped. Empty ids → 0, no query.
        """
        status = self._check_status(status)
        ids = normalize_ids(order_ids)
        if not ids:
            return 0
        if status == ORDER_CANCELLED:
            return self.bulk_cancel(ids, 1)

        with self.database.transaction() as db:
            count = OrderRepository(db).bulk_update_status(ids, status, statuses_leading_to(status))

        logger.info("Moved %d of %d order(s) to %s", count, len(ids), status)
        return count

    def bulk_cancel(self, order_ids: List[Any], cancel_flag: int = 1) -> int:
        ids = normalize_ids(order_ids)
        if not ids:
            return 0
        if not cancel_flag:
            raise ValidationFailed("Cancelled orders cannot be reinstated")

        with self.database.transaction() as db:
            count = OrderRepository(db).bulk_cancel(ids, statuses_leading_to(ORDER_CANCELLED))

        logger.info("Cancelled %d of %d order(s)", count, len(ids))
        return count

    # ── Reads ────────────────────────────────────────────────

    def get_order_full_details(self, order_id: int) -> Optional[dict]:
        with self.database.session() as db:
            order = OrderRepository(db).find_by_id(order_id)
            if order is None:
                return None
            details = OrderDetailRepository(db)
            rows = details.find_by_order_with_products(order_id)
            total = details.order_total(order_id)

        lines = []
        for detail, name, price, description, image in rows:
            line = row_to_dict(detail)
            line.update({
                "product_name": name,
                "product_price": float(price) if price is not None else None,
                "product_description": description,
                "product_image_url": image
            })
            lines.append(line)

        return {
            "order": row_to_dict(order),
            "details": lines,
            "total": float(total or 0)
        }


# ============================================================
# PRODUCT GROUPS
# ============================================================

class ProductGroupService:

    def __init__(self, database: Database):
        self.database = database

    def create_group(self, fields: Mapping[str, Any]) -> int:
        name = fields.get("groupname")
        if not name or not str(name).strip():
            raise ValidationFailed("groupname is required")

        with self.database.transaction() as db:
            return ProductGroupRepository(db).create({**fields, "groupname": str(name).strip()})

    def update_group(self, group_id: int, fields: Mapping[str, Any]) -> bool:
        if "groupname" in fields and not str(fields["groupname"] or "").strip():
            raise ValidationFailed("groupname cannot be empty")

        with self.database.transaction() as db:
            groups = ProductGroupRepository(db)
            if not groups.exists(group_id):
                raise NotFound(f"Product group {group_id} not found")
            return groups.update(group_id, fields)

    def delete_group(self, group_id: int) -> bool:
        """Refused with Conflict while any product is still in the group."""
        with self.database.transaction() as db:
            groups = ProductGroupRepository(db)
            if not groups.exists(group_id):
                raise NotFound(f"Product group {group_id} not found")

            in_use = ProductRepository(db).count_in_group(group_id)
            if in_use:
                raise Conflict(f"Product group {group_id} still has {in_use} product(s)")

            groups.delete(group_id)

        logger.info("Deleted product group %s", group_id)
        return True


# ============================================================
# USERS
# ============================================================

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def user_to_dict(user: User) -> dict:
    return row_to_dict(user, exclude=("password_hash",))


class UserService:

    def __init__(self, database: Database):
        self.database = database

    def register(self, name: str, email: str, password: str, age: int = 0, is_active: int = 1) -> int:
        if not name or not email or not password:
            raise ValidationFailed("Name, email and password are required")

        with self.database.transaction() as db:
            users = UserRepository(db)
            if users.find_by_email(email):
                raise Conflict("Email already registered")
            user_id = users.create({
                "name": name,
                "email": email,
                "age": age or 0,
                "password_hash": hash_password(password),
                "is_active": 1 if is_active is None else int(is_active)
            })

        logger.info("Registered user %s", user_id)
        return user_id

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """The user for valid credentials, None otherwise (inactive users included)."""
        with self.database.session() as db:
            user = UserRepository(db).find_by_email(email)

        if user is None or not user.is_active:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    def change_password(self, user_id: int, current_password: str, new_password: str) -> bool:
        if not current_password or not new_password:
            raise ValidationFailed("Current password and new password are required")

        with self.database.transaction() as db:
            users = UserRepository(db)
            user = users.find_by_id(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            if not verify_password(current_password, user.password_hash):
                raise ValidationFailed("Current password is incorrect")
            return users.update_password(user_id, hash_password(new_password))

    def update_profile(self, user_id: int, fields: Mapping[str, Any]) -> bool:
        values = dict(fields)
        for key in ("name", "email", "is_active"):
            if key in values and (values[key] is None or str(values[key]).strip() == ""):
                raise ValidationFailed(f"{key} cannot be empty")
        if "password" in values:
            password = values.pop("password")
            if not password:
                raise ValidationFailed("password cannot be empty")
            values["password_hash"] = hash_password(password)

        with self.database.transaction() as db:
            users = UserRepository(db)
            if not users.exists(user_id):
                raise NotFound(f"User {user_id} not found")

            email = values.get("email")
            if email:
                owner = users.find_by_email(email)
                if owner is not None and owner.id != user_id:
                    raise Conflict("Email already registered")

            return users.update(user_id, values)
