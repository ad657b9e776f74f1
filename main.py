import os
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
import logging
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from bson import ObjectId
from pymongo.database import Database

import catalog
import database
import orders
import users
from cart import CartService
from checkout import CheckoutService
from config import Settings, configure_logging, get_settings, load_settings
from database import get_db, create_document
from errors import ERROR_STATUS_CODES, DuplicateError, KoseliMartError, CartNotFoundError
from payments import StripeGateway
from users import hash_password, verify_password
from schemas import (
    UserCreate, UserLogin, User, TokenResponse,
    ProfileUpdate, PasswordChange, UserStatusUpdate, UserRoleUpdate,
    CategoryCreate, CategoryUpdate,
    ProductCreate, ProductUpdate, StockUpdate,
    CartAdd, CartQuantityUpdate, CartMerge,
    OrderStatusUpdate, TrackingUpdate,
    PaymentIntentCreate, PaymentIntentResponse, PaymentConfirm,
)

logger = logging.getLogger("koseli.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    db = database.connect(settings)
    if db is not None:
        database.ensure_indexes(db)
    logger.info("Koseli Mart API started (%s); sign-in providers: %s",
                settings.environment, ", ".join(settings.enabled_providers))
    yield


app = FastAPI(title="Koseli Mart API", lifespan=lifespan)

# middleware is fixed before startup, so origins are read here; validation runs in lifespan
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(load_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------- Error handling --------------------

@app.exception_handler(KoseliMartError)
async def koseli_error_handler(request: Request, exc: KoseliMartError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"detail": exc.message, **exc.extra()}),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation failed", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"detail": "Internal server error"}
    if get_settings().debug:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# -------------------- Helpers --------------------

def doc_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k in ("password_hash", "salt", "token", "token_expires"):
            continue
        if isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = doc_to_json(v)
        elif isinstance(v, list):
            out[k] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "user"


def get_user_by_token(db: Database, token: str) -> Optional[dict]:
    user = db["user"].find_one({"token": token})
    if not user or not user.get("token_expires"):
        return None
    expires = user["token_expires"]
    # stores without tz support hand back naive UTC datetimes
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return user if expires > datetime.now(timezone.utc) else None


def auth_dependency(authorization: Optional[str] = Header(None), db: Database = Depends(get_db)) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    token = authorization.split(" ", 1)[1]
    user = get_user_by_token(db, token)
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return AuthUser(id=str(user["_id"]), email=user["email"], name=user.get("name", ""),
                    role=user.get("role", "user"))


def admin_dependency(user: AuthUser = Depends(auth_dependency)) -> AuthUser:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway.from_settings(settings)


def get_cart_service(db: Database = Depends(get_db)) -> CartService:
    return CartService(db)


def get_checkout(db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway),
                 settings: Settings = Depends(get_settings)) -> CheckoutService:
    return CheckoutService(db, gateway, settings)


# -------------------- Health --------------------

@app.get("/")
def read_root():
    return {"message": "Koseli Mart API is running"}


@app.get("/api/health")
def health():
    response = {
        "status": "OK",
        "message": "Koseli Mart API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "❌ Not Available",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            try:
                response["collections"] = database.db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@app.post("/api/auth/register", response_model=dict, status_code=201)
def register(payload: UserCreate, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise DuplicateError("User already exists with this email")
    pw_hash, salt = hash_password(payload.password)
    user = User(name=payload.name, email=email, password_hash=pw_hash, salt=salt, phone=payload.phone)
    user_id = create_document(db, "user", user)
    return {"id": user_id, "email": email, "name": payload.name, "role": user.role}


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=7)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "token": token, "token_expires": expires, "last_login": datetime.now(timezone.utc),
    }})
    return TokenResponse(access_token=token)


@app.get("/api/auth/me", response_model=AuthUser)
def me(user: AuthUser = Depends(auth_dependency)):
    return user


@app.get("/api/auth/providers", response_model=dict)
def auth_providers(settings: Settings = Depends(get_settings)):
    return {"providers": settings.enabled_providers}


@app.put("/api/auth/profile", response_model=dict)
def update_profile(payload: ProfileUpdate, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    updated = users.update_profile(db, user.id, payload)
    return {"message": "Profile updated successfully", "user": doc_to_json(updated)}


@app.put("/api/auth/change-password", response_model=dict)
def change_password(payload: PasswordChange, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    users.change_password(db, user.id, payload.current_password, payload.new_password)
    return {"message": "Password changed successfully"}


@app.post("/api/auth/logout", response_model=dict)
def logout(user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    users.logout(db, user.id)
    return {"message": "Logged out successfully"}


# -------------------- Users --------------------

@app.get("/api/users/profile", response_model=dict)
def get_profile(user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    return {"user": doc_to_json(users.get_user(db, user.id))}


@app.put("/api/users/profile", response_model=dict)
def update_user_profile(payload: ProfileUpdate, user: AuthUser = Depends(auth_dependency),
                        db: Database = Depends(get_db)):
    return update_profile(payload, user, db)


@app.get("/api/users/admin/all", response_model=dict)
def list_users(
    search: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthUser = Depends(admin_dependency),
    db: Database = Depends(get_db),
):
    found, total = users.list_users(db, search=search, role=role, is_active=is_active,
                                    sort_by=sort_by, sort_order=sort_order, page=page, limit=limit)
    return {"users": [doc_to_json(u) for u in found], "pagination": catalog.pagination(page, limit, total)}


@app.get("/api/users/admin/{user_id}", response_model=dict)
def get_user_details(user_id: str, admin: AuthUser = Depends(admin_dependency), db: Database = Depends(get_db)):
    return doc_to_json(users.get_user_details(db, user_id))


@app.patch("/api/users/admin/{user_id}/status", response_model=dict)
def update_user_status(user_id: str, payload: UserStatusUpdate, admin: AuthUser = Depends(admin_dependency),
                       db: Database = Depends(get_db)):
    user = users.set_active(db, user_id, payload.is_active)
    state = "activated" if payload.is_active else "deactivated"
    return {"message": f"User {state} successfully", "user": doc_to_json(user)}


@app.patch("/api/users/admin/{user_id}/role", response_model=dict)
def update_user_role(user_id: str, payload: UserRoleUpdate, admin: AuthUser = Depends(admin_dependency),
                     db: Database = Depends(get_db)):
    user = users.set_role(db, admin.id, user_id, payload.role)
    return {"message": "User role updated successfully", "user": doc_to_json(user)}


# -------------------- Catalog --------------------

@app.get("/api/categories", response_model=dict)
def list_categories(db: Database = Depends(get_db)):
    return {"categories": [doc_to_json(c) for c in catalog.list_categories(db)]}


@app.get("/api/categories/{key}", response_model=dict)
def get_category(key: str, db: Database = Depends(get_db)):
    return {"category": doc_to_json(catalog.find_category_by_id_or_slug(db, key))}


@app.get("/api/products", response_model=dict)
def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    featured: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    products, total = catalog.list_products(db, q=q, category=category, featured=featured, page=page, limit=limit)
    return {
        "products": [doc_to_json(p) for p in products],
        "pagination": catalog.pagination(page, limit, total),
    }


@app.get("/api/products/{key}", response_model=dict)
def get_product(key: str, db: Database = Depends(get_db)):
    return {"product": doc_to_json(catalog.decorate(catalog.find_product_by_id_or_slug(db, key)))}


@app.post("/api/admin/products", response_model=dict, status_code=201)
def create_product(payload: ProductCreate, db: Database = Depends(get_db), admin: AuthUser = Depends(admin_dependency)):
    product = catalog.create_product(db, payload)
    logger.info("Admin %s created product %s", admin.email, product["slug"])
    return {"product": doc_to_json(catalog.decorate(product))}


@app.patch("/api/admin/products/{product_id}", response_model=dict)
def update_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db),
                   admin: AuthUser = Depends(admin_dependency)):
    return {"product": doc_to_json(catalog.decorate(catalog.update_product(db, product_id, payload)))}


@app.delete("/api/admin/products/{product_id}", response_model=dict)
def delete_product(product_id: str, db: Database = Depends(get_db), admin: AuthUser = Depends(admin_dependency)):
    catalog.delete_product(db, product_id)
    logger.info("Admin %s deleted product %s", admin.email, product_id)
    return {"ok": True}


@app.patch("/api/admin/products/{product_id}/stock", response_model=dict)
def update_stock(product_id: str, payload: StockUpdate, db: Database = Depends(get_db),
                 admin: AuthUser = Depends(admin_dependency)):
    product = catalog.adjust_stock(db, product_id, payload.quantity, payload.operation)
    return {
        "message": "Stock updated successfully",
        "product": doc_to_json({"_id": product["_id"], "name": product["name"], "stock": product["stock"]}),
    }


@app.post("/api/admin/categories", response_model=dict, status_code=201)
def create_category(payload: CategoryCreate, db: Database = Depends(get_db), admin: AuthUser = Depends(admin_dependency)):
    return {"category": doc_to_json(catalog.create_category(db, payload))}


@app.patch("/api/admin/categories/{category_id}", response_model=dict)
def update_category(category_id: str, payload: CategoryUpdate, db: Database = Depends(get_db),
                    admin: AuthUser = Depends(admin_dependency)):
    return {"category": doc_to_json(catalog.update_category(db, category_id, payload))}


@app.delete("/api/admin/categories/{category_id}", response_model=dict)
def delete_category(category_id: str, db: Database = Depends(get_db), admin: AuthUser = Depends(admin_dependency)):
    catalog.delete_category(db, category_id)
    return {"ok": True}


@app.patch("/api/admin/categories/{category_id}/toggle-status", response_model=dict)
def toggle_category(category_id: str, db: Database = Depends(get_db), admin: AuthUser = Depends(admin_dependency)):
    category = catalog.toggle_category(db, category_id)
    state = "activated" if category["is_active"] else "deactivated"
    return {
        "message": f"Category {state} successfully",
        "category": doc_to_json({"_id": category["_id"], "name": category["name"], "is_active": category["is_active"]}),
    }


# -------------------- Cart --------------------

@app.get("/api/cart", response_model=dict)
def get_cart(user: AuthUser = Depends(auth_dependency), carts: CartService = Depends(get_cart_service)):
    return {"cart": doc_to_json(carts.view(user.id))}


@app.get("/api/cart/count", response_model=dict)
def cart_count(user: AuthUser = Depends(auth_dependency), carts: CartService = Depends(get_cart_service)):
    return {"count": carts.count(user.id)}


@app.post("/api/cart/add", response_model=dict)
def add_to_cart(payload: CartAdd, user: AuthUser = Depends(auth_dependency),
                carts: CartService = Depends(get_cart_service)):
    cart = carts.add(user.id, payload.product_id, payload.quantity)
    return {"message": "Item added to cart successfully", "cart": doc_to_json(cart)}


@app.put("/api/cart/update/{product_id}", response_model=dict)
def update_cart_item(product_id: str, payload: CartQuantityUpdate, user: AuthUser = Depends(auth_dependency),
                     carts: CartService = Depends(get_cart_service)):
    cart = carts.update_quantity(user.id, product_id, payload.quantity)
    return {"message": "Cart updated successfully", "cart": doc_to_json(cart)}


@app.delete("/api/cart/remove/{product_id}", response_model=dict)
def remove_from_cart(product_id: str, user: AuthUser = Depends(auth_dependency),
                     carts: CartService = Depends(get_cart_service)):
    cart = carts.remove(user.id, product_id)
    return {"message": "Item removed from cart successfully", "cart": doc_to_json(cart)}


@app.delete("/api/cart/clear", response_model=dict)
def clear_cart(user: AuthUser = Depends(auth_dependency), carts: CartService = Depends(get_cart_service)):
    if not carts.clear(user.id):
        raise CartNotFoundError()
    return {"message": "Cart cleared successfully", "cart": {"items": [], "total_items": 0, "total_price": 0}}


@app.post("/api/cart/merge", response_model=dict)
def merge_cart(payload: CartMerge, user: AuthUser = Depends(auth_dependency),
               carts: CartService = Depends(get_cart_service)):
    cart = carts.merge(user.id, payload.guest_cart_items)
    return {"message": "Guest cart merged successfully", "cart": doc_to_json(cart)}


# -------------------- Orders --------------------

@app.get("/api/orders", response_model=dict)
def list_my_orders(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: AuthUser = Depends(auth_dependency),
    db: Database = Depends(get_db),
):
    found, total = orders.list_user_orders(db, user.id, status=status, page=page, limit=limit)
    return {"orders": [doc_to_json(o) for o in found], "pagination": catalog.pagination(page, limit, total)}


@app.get("/api/orders/admin/all", response_model=dict)
def list_all_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthUser = Depends(admin_dependency),
    db: Database = Depends(get_db),
):
    found, total = orders.list_all_orders(
        db, status=status, payment_status=payment_status, start_date=start_date, end_date=end_date,
        search=search, page=page, limit=limit,
    )
    return {"orders": [doc_to_json(o) for o in found], "pagination": catalog.pagination(page, limit, total)}


@app.get("/api/orders/{order_id}", response_model=dict)
def get_my_order(order_id: str, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    order = orders.get_user_order(db, user.id, order_id)
    return {"order": doc_to_json(orders.populate_items(db, order))}


@app.patch("/api/orders/{order_id}/cancel", response_model=dict)
def cancel_my_order(order_id: str, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    order = orders.cancel_order(db, user.id, order_id)
    return {
        "message": "Order cancelled successfully",
        "order": {"_id": str(order["_id"]), "order_number": order["order_number"], "status": order["status"]},
    }


@app.patch("/api/orders/{order_id}/status", response_model=dict)
def update_order_status(order_id: str, payload: OrderStatusUpdate, admin: AuthUser = Depends(admin_dependency),
                        db: Database = Depends(get_db)):
    order = orders.update_status(db, order_id, payload.status, payload.notes)
    return {
        "message": "Order status updated successfully",
        "order": {
            "_id": str(order["_id"]),
            "order_number": order["order_number"],
            "status": order["status"],
            "admin_notes": order.get("admin_notes"),
        },
    }


@app.patch("/api/orders/{order_id}/tracking", response_model=dict)
def update_order_tracking(order_id: str, payload: TrackingUpdate, admin: AuthUser = Depends(admin_dependency),
                          db: Database = Depends(get_db)):
    order = orders.update_tracking(db, order_id, payload.tracking_number, payload.carrier, payload.estimated_delivery)
    return {
        "message": "Tracking information updated successfully",
        "order": doc_to_json({
            "_id": order["_id"],
            "order_number": order["order_number"],
            "tracking_number": order["tracking_number"],
            "carrier": order["carrier"],
            "estimated_delivery": order.get("estimated_delivery"),
        }),
    }


# -------------------- Stripe --------------------

@app.post("/api/stripe/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(payload: PaymentIntentCreate, user: AuthUser = Depends(auth_dependency),
                          checkout: CheckoutService = Depends(get_checkout)):
    return checkout.create_payment_intent(
        user.id,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address,
        shipping_cost=payload.shipping_cost,
        tax_amount=payload.tax_amount,
        notes=payload.notes,
    )


@app.post("/api/stripe/confirm-payment", response_model=dict)
def confirm_payment(payload: PaymentConfirm, user: AuthUser = Depends(auth_dependency),
                    checkout: CheckoutService = Depends(get_checkout)):
    order = checkout.confirm_payment(user.id, payload.payment_intent_id, payload.order_id)
    return {"message": "Payment confirmed and order created successfully", "order": doc_to_json(order)}


@app.post("/api/stripe/webhook", response_model=dict)
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         checkout: CheckoutService = Depends(get_checkout)):
    payload = await request.body()
    return await run_in_threadpool(checkout.handle_webhook, payload, stripe_signature)


@app.get("/api/stripe/payment-methods", response_model=dict)
def payment_methods(user: AuthUser = Depends(auth_dependency)):
    return {"payment_methods": []}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
