# ============================================================
# main.py — FastAPI Application
# ============================================================
# Endpoints:
#   /api/health                      → liveness + database check
#   /users/...                       → accounts, login, passwords
#   /products/...                    → products, MOQ tiers, images
#   /groups/...                      → product groups
#   /orders/...                      → orders, details, status changes
#   /uploads/products/<file>         → locally stored images
#
# Routes stay thin: single-table reads/writes use a repository,
# anything spanning tables or storage goes through a service.
# ShopError subclasses become JSON errors:
#   NotFound 404, ValidationFailed 400, Conflict 409,
#   StorageFailure 502, TransactionFailure 500
# ============================================================

import json
import logging
from typing import Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.orm import Session as DBSession

import config
from database import Database
from errors import (
    Conflict, NotFound, ShopError, StorageFailure, TransactionFailure, ValidationFailed
)
from images import ImageStore, ImageUpload, LocalImageStore, build_image_store
from models import IMAGE_SLOTS, row_to_dict
from repositories import (
    MOQRepository, OrderDetailRepository, OrderRepository, ProductGroupRepository, ProductRepository,
    UserRepository
)
from schemas import (
    BulkCancel, BulkStatusUpdate, GroupAssign, GroupCreate, GroupUpdate, LoginPayload,
    MOQIn, OrderCreate, PasswordChange, StatusUpdate, UserCreate, UserUpdate
)
from services import (
    OrderService, ProductGroupService, ProductService, UserService, user_to_dict
)

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (ValidationFailed, 400),
    (Conflict, 409),
    (StorageFailure, 502),
    (TransactionFailure, 500),
)

CLEARABLE_FIELDS = ("specialprice", "groupid")

router = APIRouter()


# ============================================================
# DEPENDENCIES
# ============================================================

def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(request: Request):
    """One session per request, closed afterwards."""
    yield from request.app.state.database.get_db()


def get_products(request: Request) -> ProductService:
    return request.app.state.products


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_groups(request: Request) -> ProductGroupService:
    return request.app.state.groups


def get_users(request: Request) -> UserService:
    return request.app.state.users


# ============================================================
# HELPERS
# ============================================================

def ok(data=None, status_code: int = 200, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    if status_code == 200:
        return body
    return JSONResponse(status_code=status_code, content=body)


def read_uploads(files: Dict[str, Optional[UploadFile]]) -> Dict[str, ImageUpload]:
    """Slot → ImageUpload for every file the client actually sent."""
    uploads = {}
    for slot, file in files.items():
        if file is None or not file.filename:
            continue
        uploads[slot] = ImageUpload(content=file.file.read(), filename=file.filename)
    return uploads


def parse_moqs(raw: Optional[str]) -> Optional[list]:
    """MOQ tiers arrive as a JSON array inside a form field."""
    if raw is None:
        return None
    try:
        tiers = json.loads(raw or "[]")
    except json.JSONDecodeError as e:
        raise ValidationFailed(f"moqs must be a JSON array: {e}") from e
    if not isinstance(tiers, list):
        raise ValidationFailed("moqs must be a JSON array")
    return tiers


def parse_clear(raw: Optional[str]) -> List[str]:
    """Comma-separated product fields to set to NULL."""
    keys = [key.strip() for key in (raw or "").split(",") if key.strip()]
    for key in keys:
        if key not in CLEARABLE_FIELDS:
            raise ValidationFailed(f"{key} cannot be cleared")
    return keys


def page_body(page: dict, serialize) -> dict:
    return {
        "success": True,
        "data": [serialize(item) for item in page["items"]],
        "pagination": {
            "page": page["page"],
            "total": page["total"],
            "total_pages": page["total_pages"]
        }
    }


# ============================================================
# ENDPOINT: Health
# ============================================================

@router.get("/api/health")
def health(db: DBSession = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


# ============================================================
# ENDPOINTS: Users
# ============================================================

@router.get("/users")
def list_users(db: DBSession = Depends(get_db)):
    return ok([user_to_dict(u) for u in UserRepository(db).find_all()])


@router.get("/users/stats")
def user_stats(db: DBSession = Depends(get_db)):
    users = UserRepository(db)
    return ok({
        "total": users.count(),
        "active": len(users.find_by_status(1)),
        "inactive": len(users.find_by_status(0))
    })


@router.get("/users/page/{page}")
def paginate_users(page: int, limit: int = 10, db: DBSession = Depends(get_db)):
    return page_body(UserRepository(db).paginate(page, limit), user_to_dict)


@router.get("/users/search/{name}")
def search_users(name: str, db: DBSession = Depends(get_db)):
    return ok([user_to_dict(u) for u in UserRepository(db).search_by_name(name)])


@router.get("/users/status/{is_active}")
def users_by_status(is_active: int, db: DBSession = Depends(get_db)):
    return ok([user_to_dict(u) for u in UserRepository(db).find_by_status(is_active)])


@router.get("/users/{user_id}")
def get_user(user_id: int, db: DBSession = Depends(get_db)):
    user = UserRepository(db).find_by_id(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return ok(user_to_dict(user))


@router.post("/users")
def create_user(payload: UserCreate, users: UserService = Depends(get_users)):
    user_id = users.register(**payload.model_dump())
    return ok({"id": user_id}, status_code=201)


@router.post("/users/login")
def login(payload: LoginPayload, users: UserService = Depends(get_users)):
    user = users.authenticate(payload.email, payload.password)
    if user is None:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "Invalid email or password"}
        )
    return ok(user_to_dict(user))


@router.put("/users/{user_id}")
def update_user(user_id: int, payload: UserUpdate, users: UserService = Depends(get_users)):
    users.update_profile(user_id, payload.model_dump(exclude_unset=True))
    return ok({"id": user_id})


@router.put("/users/{user_id}/change-password")
def change_password(user_id: int, payload: PasswordChange, users: UserService = Depends(get_users)):
    users.change_password(user_id, payload.current_password, payload.new_password)
    return ok({"id": user_id})


@router.put("/users/{user_id}/toggle-active")
def toggle_user(user_id: int, database: Database = Depends(get_database)):
    with database.transaction() as db:
        if not UserRepository(db).toggle_active(user_id):
            raise NotFound(f"User {user_id} not found")
    return ok({"id": user_id})


@router.delete("/users/{user_id}")
def deactivate_user(user_id: int, database: Database = Depends(get_database)):
    with database.transaction() as db:
        if not UserRepository(db).delete(user_id):
            raise NotFound(f"User {user_id} not found")
    return ok({"id": user_id})


# ============================================================
# ENDPOINTS: Products
# ============================================================

@router.get("/products")
def list_products(products: ProductService = Depends(get_products)):
    return ok(products.list_products_with_moqs())


@router.get("/products/active")
def list_active_products(products: ProductService = Depends(get_products)):
    return ok(products.list_products_with_moqs(active_only=True))


@router.get("/products/with-groups")
def list_products_with_groups(products: ProductService = Depends(get_products)):
    return ok(products.list_products_with_groups())


@router.get("/products/{product_id}")
def get_product(product_id: int, products: ProductService = Depends(get_products)):
    product = products.get_product_with_moqs(product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found")
    return ok(product)


@router.get("/products/{product_id}/moqs")
def get_product_moqs(product_id: int, db: DBSession = Depends(get_db)):
    if not ProductRepository(db).exists(product_id):
        raise NotFound(f"Product {product_id} not found")
    tiers = MOQRepository(db).find_by_product(product_id)
    return ok([row_to_dict(tier) for tier in tiers])


@router.get("/products/{product_id}/images")
def get_product_images(
    product_id: int,
    width: Optional[int] = None,
    height: Optional[int] = None,
    db: DBSession = Depends(get_db),
    products: ProductService = Depends(get_products)
):
    product = ProductRepository(db).find_by_id(product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found")
    return ok(products.display_urls(product, width, height))


@router.post("/products")
def create_product(
    name: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    description: str = Form(""),
    active: str = Form("A"),
    specialprice: Optional[str] = Form(None),
    groupid: Optional[int] = Form(None),
    moqs: str = Form("[]"),
    image_url: Optional[UploadFile] = File(None),
    image_url2: Optional[UploadFile] = File(None),
    image_url3: Optional[UploadFile] = File(None),
    image_url4: Optional[UploadFile] = File(None),
    products: ProductService = Depends(get_products)
):
    """
    Multipart form: product fields, `moqs` as a JSON array of
    {moq, rate}, and up to four image files.
    """
    fields = {
        "name": name,
        "price": price,
        "description": description,
        "active": active,
        "specialprice": specialprice,
        "groupid": groupid
    }
    images = read_uploads({
        "image_url": image_url,
        "image_url2": image_url2,
        "image_url3": image_url3,
        "image_url4": image_url4
    })
    product_id = products.create_product_with_moqs(fields, parse_moqs(moqs), images)
    return ok(products.get_product_with_moqs(product_id), status_code=201)


@router.put("/products/{product_id}")
def update_product(
    product_id: int,
    name: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    active: Optional[str] = Form(None),
    specialprice: Optional[str] = Form(None),
    groupid: Optional[int] = Form(None),
    moqs: Optional[str] = Form(None),
    clear: Optional[str] = Form(None),
    image_url: Optional[UploadFile] = File(None),
    image_url2: Optional[UploadFile] = File(None),
    image_url3: Optional[UploadFile] = File(None),
    image_url4: Optional[UploadFile] = File(None),
    products: ProductService = Depends(get_products)
):
    """
    Partial update. Only fields that were sent change; images replace
    their slot; `moqs`, when sent, replaces every tier ("[]" clears).
    `clear` names nullable fields to set to NULL, e.g. "specialprice,groupid".
    """
    sent = {
        "name": name,
        "price": price,
        "description": description,
        "active": active,
        "specialprice": specialprice,
        "groupid": groupid
    }
    fields = {key: value for key, value in sent.items() if value is not None}
    for key in parse_clear(clear):
        fields[key] = None
    images = read_uploads({
        "image_url": image_url,
        "image_url2": image_url2,
        "image_url3": image_url3,
        "image_url4": image_url4
    })
    products.update_product_with_images(product_id, fields, parse_moqs(moqs), images)
    return ok(products.get_product_with_moqs(product_id))


@router.put("/products/{product_id}/moqs")
def replace_product_moqs(
    product_id: int,
    tiers: List[MOQIn],
    products: ProductService = Depends(get_products)
):
    rows = products.replace_moqs(product_id, [tier.model_dump() for tier in tiers])
    return ok([row_to_dict(row) for row in rows])


@router.put("/products/{product_id}/toggle-active")
def toggle_product(product_id: int, products: ProductService = Depends(get_products)):
    products.toggle_active(product_id)
    return ok({"id": product_id})


@router.put("/products/{product_id}/group")
def assign_product_group(
    product_id: int,
    payload: GroupAssign,
    products: ProductService = Depends(get_products)
):
    products.assign_group(product_id, payload.groupid)
    return ok({"id": product_id, "groupid": payload.groupid})


@router.post("/products/{product_id}/images/{slot}")
def upload_product_image(
    product_id: int,
    slot: str,
    file: UploadFile = File(...),
    products: ProductService = Depends(get_products)
):
    if slot not in IMAGE_SLOTS:
        raise ValidationFailed(f"Unknown image slot: {slot}")
    products.update_product_with_images(product_id, images=read_uploads({slot: file}))
    return ok(products.get_product_with_moqs(product_id))


@router.delete("/products/{product_id}/images/{slot}")
def delete_product_image(product_id: int, slot: str, products: ProductService = Depends(get_products)):
    removed = products.remove_product_image(product_id, slot)
    return ok({"id": product_id, "slot": slot, "removed": removed})


@router.delete("/products/{product_id}")
def delete_product(product_id: int, products: ProductService = Depends(get_products)):
    products.delete_product(product_id)
    return ok({"id": product_id})


# ============================================================
# ENDPOINTS: Product groups
# ============================================================

def group_with_count(group, product_count: int) -> dict:
    data = row_to_dict(group)
    data["product_count"] = product_count
    return data


@router.get("/groups")
def list_groups(db: DBSession = Depends(get_db)):
    rows = ProductGroupRepository(db).find_with_product_count()
    return ok([group_with_count(group, count) for group, count in rows])


@router.get("/groups/active")
def list_active_groups(db: DBSession = Depends(get_db)):
    return ok([row_to_dict(g) for g in ProductGroupRepository(db).find_active()])


@router.get("/groups/page/{page}")
def paginate_groups(page: int, limit: int = 10, db: DBSession = Depends(get_db)):
    return page_body(ProductGroupRepository(db).paginate(page, limit), row_to_dict)


@router.get("/groups/search/{term}")
def search_groups(term: str, db: DBSession = Depends(get_db)):
    return ok([row_to_dict(g) for g in ProductGroupRepository(db).search(term)])


@router.get("/groups/{group_id}")
def get_group(group_id: int, db: DBSession = Depends(get_db)):
    groups = ProductGroupRepository(db)
    group = groups.find_by_id(group_id)
    if group is None:
        raise NotFound(f"Product group {group_id} not found")
    return ok(group_with_count(group, ProductRepository(db).count_in_group(group_id)))


@router.get("/groups/{group_id}/products")
def list_group_products(group_id: int, products: ProductService = Depends(get_products)):
    return ok(products.list_products_in_group(group_id))


@router.post("/groups")
def create_group(payload: GroupCreate, groups: ProductGroupService = Depends(get_groups)):
    group_id = groups.create_group(payload.model_dump())
    return ok({"id": group_id}, status_code=201)


@router.put("/groups/{group_id}")
def update_group(group_id: int, payload: GroupUpdate, groups: ProductGroupService = Depends(get_groups)):
    groups.update_group(group_id, payload.model_dump(exclude_unset=True))
    return ok({"id": group_id})


@router.put("/groups/{group_id}/toggle-active")
def toggle_group(group_id: int, database: Database = Depends(get_database)):
    with database.transaction() as db:
        if not ProductGroupRepository(db).toggle_active(group_id):
            raise NotFound(f"Product group {group_id} not found")
    return ok({"id": group_id})


@router.delete("/groups/{group_id}")
def delete_group(group_id: int, groups: ProductGroupService = Depends(get_groups)):
    groups.delete_group(group_id)
    return ok({"id": group_id})


# ============================================================
# ENDPOINTS: Orders
# ============================================================

@router.get("/orders")
def list_orders(db: DBSession = Depends(get_db)):
    return ok([row_to_dict(o) for o in OrderRepository(db).find_all()])


@router.get("/orders/page/{page}")
def paginate_orders(page: int, limit: int = 10, db: DBSession = Depends(get_db)):
    return page_body(OrderRepository(db).paginate(page, limit), row_to_dict)


@router.get("/customers/{customer_code}/orders")
def list_customer_orders(customer_code: str, db: DBSession = Depends(get_db)):
    return ok([row_to_dict(o) for o in OrderRepository(db).find_by_customer(customer_code)])


@router.post("/orders")
def create_order(payload: OrderCreate, orders: OrderService = Depends(get_orders)):
    order_id = orders.create_order_with_details(
        payload.order.model_dump(exclude_unset=True),
        [detail.model_dump(exclude_unset=True) for detail in payload.details]
    )
    return ok(orders.get_order_full_details(order_id), status_code=201)


# bulk routes first: "bulk" must not be taken for an order id
@router.put("/orders/bulk/status")
def bulk_update_status(payload: BulkStatusUpdate, orders: OrderService = Depends(get_orders)):
    affected = orders.bulk_update_status(payload.ids, payload.status)
    return ok({"affected": affected})


@router.put("/orders/bulk/cancel")
def bulk_cancel(payload: BulkCancel, orders: OrderService = Depends(get_orders)):
    affected = orders.bulk_cancel(payload.ids, payload.cancel)
    return ok({"affected": affected})


@router.get("/orders/{order_id}")
def get_order(order_id: int, orders: OrderService = Depends(get_orders)):
    order = orders.get_order_full_details(order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return ok(order)


@router.get("/orders/{order_id}/details")
def get_order_details(order_id: int, db: DBSession = Depends(get_db)):
    if not OrderRepository(db).exists(order_id):
        raise NotFound(f"Order {order_id} not found")
    return ok([row_to_dict(d) for d in OrderDetailRepository(db).find_by_order(order_id)])


@router.put("/orders/{order_id}/status")
def update_order_status(order_id: int, payload: StatusUpdate, orders: OrderService = Depends(get_orders)):
    orders.update_status(order_id, payload.status)
    return ok({"id": order_id, "status": payload.status})


@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: int, orders: OrderService = Depends(get_orders)):
    orders.cancel_order(order_id)
    return ok({"id": order_id})


@router.delete("/orders/{order_id}")
def delete_order(order_id: int, orders: OrderService = Depends(get_orders)):
    orders.delete_order(order_id)
    return ok({"id": order_id})


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(database: Database = None, image_store: ImageStore = None) -> FastAPI:
    """
    Build the app around one Database and one ImageStore.
    Both default to what config.py describes.
    """
    database = database or Database(config.DATABASE_URL, echo=config.DB_ECHO)
    image_store = image_store or build_image_store()

    app = FastAPI(title="Wholesale Shop API")

    app.state.database = database
    app.state.images = image_store
    app.state.products = ProductService(database, image_store)
    app.state.orders = OrderService(database)
    app.state.groups = ProductGroupService(database)
    app.state.users = UserService(database)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    # ── Serve locally stored images ───────────────────────────
    if isinstance(image_store, LocalImageStore):
        app.mount(
            config.UPLOAD_URL_PATH,
            StaticFiles(directory=image_store.directory, check_dir=False),
            name="uploads"
        )

    # ── Startup / shutdown ────────────────────────────────────
    @app.on_event("startup")
    def on_startup():
        config.configure_logging()
        database.init()
        logger.info("✅ Database initialized")

    @app.on_event("shutdown")
    def on_shutdown():
        database.close()

    # ── Errors → JSON ─────────────────────────────────────────
    @app.exception_handler(ShopError)
    async def shop_error_handler(request: Request, exc: ShopError):
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": exc.message}
        )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
