import os
import math
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database
from sqlalchemy.engine import Engine

from auth import (
    TOKEN_COOKIE,
    USER,
    AdminAccounts,
    AuthService,
    UserAccounts,
    current_claims,
    require_admin,
    require_customer,
)
from carts import CartService
from catalog import DEFAULT_LIMIT, DEFAULT_PAGE, CatalogService, parse_direction, parse_positive_int
from config import Settings
from database import check_stores, connect_mongo, connect_sql, init_mongo, init_sql, make_session_factory
from errors import Forbidden, StoreError, ValidationFailed
from orders import OrderService
from schemas import Product as ProductSchema, ProductUpdate

logger = logging.getLogger(__name__)


# Request models

class SignUpRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    confirm_password: str = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        if len(v.encode()) > 72:
            raise ValueError("Password must be at most 72 bytes")
        return v


class SignInRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class AddToCartRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0)


class OrderLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    items: List[OrderLine] = Field(default_factory=list)
    shipping_address: Optional[Dict[str, Any]] = None


# Dependencies

def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_carts(request: Request) -> CartService:
    return request.app.state.carts


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def admin_claims(claims: dict = Depends(current_claims)) -> dict:
    return require_admin(claims)


def customer_claims(claims: dict = Depends(current_claims)) -> dict:
    return require_customer(claims)


def set_session_cookie(request: Request, response: Response, token: str) -> None:
    settings: Settings = request.app.state.settings
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        max_age=settings.token_ttl_days * 24 * 60 * 60,
    )


# Routes

root = APIRouter()


@root.get("/")
def read_root():
    return {"message": "Storefront API running"}


@root.get("/api/health")
def health():
    return {"status": "Server is running"}


@root.get("/test")
def test_database(request: Request):
    return check_stores(request.app.state.mongo, request.app.state.engine)


auth_routes = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_routes.post("/register", status_code=201)
def register(payload: SignUpRequest, request: Request, response: Response,
             auth: AuthService = Depends(get_auth)):
    user = auth.register(payload.name, payload.email, payload.password, payload.confirm_password)
    token = auth.issue_session(user)
    set_session_cookie(request, response, token)
    return {"message": "User registered successfully", "user": user, "token": token}


@auth_routes.post("/login")
def login(payload: SignInRequest, request: Request, response: Response,
          auth: AuthService = Depends(get_auth)):
    account = auth.login(payload.email, payload.password)
    token = auth.issue_session(account)
    set_session_cookie(request, response, token)
    return {"message": "Login successful", "user": account, "token": token}


@auth_routes.post("/logout")
def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE)
    return {"message": "Logout successful"}


@auth_routes.get("/me")
def me(claims: dict = Depends(current_claims), auth: AuthService = Depends(get_auth)):
    return auth.current_profile(claims)


products = APIRouter(prefix="/api/products", tags=["products"])


@products.get("")
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sort_dir: Optional[str] = Query(None, alias="sortDir"),
    x_sort_direction: Optional[str] = Header(None),
    catalog: CatalogService = Depends(get_catalog),
):
    page_n = parse_positive_int(page, DEFAULT_PAGE)
    limit_n = parse_positive_int(limit, DEFAULT_LIMIT)
    direction = parse_direction(sort_dir or x_sort_direction)
    items, total = catalog.search(search, category, direction, page_n, limit_n)
    return {
        "products": items,
        "pagination": {
            "total": total,
            "page": page_n,
            "limit": limit_n,
            "pages": max(1, math.ceil(total / limit_n)),
        },
        "sort_direction": direction,
    }


@products.get("/categories")
def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return {"categories": catalog.list_categories()}


@products.get("/sales-summary")
def sales_summary(catalog: CatalogService = Depends(get_catalog)):
    return {"summary": catalog.category_sales_summary()}


@products.get("/{product_id}")
def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_by_id(product_id)


@products.post("", status_code=201)
def create_product(product: ProductSchema, _: dict = Depends(admin_claims),
                   catalog: CatalogService = Depends(get_catalog)):
    return {"message": "Product created successfully", "product": catalog.create_product(product)}


@products.put("/{product_id}")
def update_product(product_id: str, changes: ProductUpdate, _: dict = Depends(admin_claims),
                   catalog: CatalogService = Depends(get_catalog)):
    return {"message": "Product updated successfully", "product": catalog.update_product(product_id, changes)}


@products.delete("/{product_id}")
def delete_product(product_id: str, _: dict = Depends(admin_claims),
                   catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return {"message": "Product deleted successfully"}


cart = APIRouter(prefix="/api/cart", tags=["cart"])


@cart.get("")
def get_cart(claims: dict = Depends(customer_claims), carts: CartService = Depends(get_carts)):
    return carts.get_cart_view(int(claims["id"]))


@cart.post("")
def add_to_cart(payload: AddToCartRequest, claims: dict = Depends(customer_claims),
                carts: CartService = Depends(get_carts)):
    line = carts.add_item(int(claims["id"]), payload.product_id, payload.quantity)
    return {"message": "Item added to cart", "cart_item": line}


@cart.put("/items/{item_id}")
def update_cart_item(item_id: int, payload: UpdateCartItemRequest, claims: dict = Depends(customer_claims),
                     carts: CartService = Depends(get_carts)):
    line = carts.update_item_quantity(int(claims["id"]), item_id, payload.quantity)
    if line is None:
        return {"message": "Cart item removed", "cart_item": None}
    return {"message": "Cart item updated", "cart_item": line}


@cart.delete("/items/{item_id}")
def remove_cart_item(item_id: int, claims: dict = Depends(customer_claims),
                     carts: CartService = Depends(get_carts)):
    carts.remove_item(int(claims["id"]), item_id)
    return {"message": "Item removed from cart"}


@cart.delete("")
def clear_cart(claims: dict = Depends(customer_claims), carts: CartService = Depends(get_carts)):
    carts.clear(int(claims["id"]))
    return {"message": "Cart cleared"}


orders = APIRouter(prefix="/api/orders", tags=["orders"])


@orders.post("", status_code=201)
def create_order(payload: CreateOrderRequest, claims: dict = Depends(current_claims),
                 service: OrderService = Depends(get_orders)):
    if claims.get("type") != USER:
        raise Forbidden("Only customer accounts can place orders")
    order = service.place_order(
        int(claims["id"]),
        [line.model_dump() for line in payload.items],
        shipping_address=payload.shipping_address,
    )
    return {"message": "Order created successfully", "order": order}


@orders.get("/my-orders")
def my_orders(claims: dict = Depends(current_claims), service: OrderService = Depends(get_orders)):
    if claims.get("type") != USER:
        return {"orders": []}
    return {"orders": service.get_all_for_user(int(claims["id"]))}


@orders.get("/reports/daily-revenue")
def daily_revenue(_: dict = Depends(admin_claims), service: OrderService = Depends(get_orders)):
    return {"daily_revenue": service.daily_revenue_report()}


@orders.get("/reports/top-customers")
def top_customers(_: dict = Depends(admin_claims), service: OrderService = Depends(get_orders)):
    return {"top_customers": service.top_customers_report()}


@orders.get("")
def all_orders(_: dict = Depends(admin_claims), service: OrderService = Depends(get_orders)):
    return {"orders": service.get_all()}


@orders.get("/{order_id}")
def get_order(order_id: int, claims: dict = Depends(current_claims),
              service: OrderService = Depends(get_orders)):
    return service.get_by_id(order_id, claims)


# Error rendering

def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path")),
            "message": e.get("msg", "Invalid value"),
        }
        for e in exc.errors()
    ]
    return store_error_handler(request, ValidationFailed(errors=errors))


# App

def build_services(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    sessions = make_session_factory(app.state.engine)
    catalog = CatalogService(app.state.mongo)
    app.state.catalog = catalog
    app.state.carts = CartService(sessions, catalog)
    app.state.orders = OrderService(sessions, catalog)
    app.state.auth = AuthService(
        sessions,
        [UserAccounts(sessions), AdminAccounts(app.state.mongo)],
        secret=settings.jwt_secret,
        ttl=timedelta(days=settings.token_ttl_days),
        bcrypt_rounds=settings.bcrypt_rounds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
    )
    owns_engine = app.state.engine is None
    if app.state.mongo is None:
        app.state.mongo = connect_mongo(settings.mongodb_uri, settings.mongodb_name)
    if owns_engine:
        app.state.engine = connect_sql(settings.sql_url)
    init_mongo(app.state.mongo)
    init_sql(app.state.engine)
    build_services(app)
    logger.info("Storefront API ready")
    yield
    if owns_engine:
        app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None, mongo_db: Optional[Database] = None,
               engine: Optional[Engine] = None) -> FastAPI:
    """Build the API. Stores passed in are used as-is, others are connected on startup."""
    settings = settings or Settings.from_env()
    app = FastAPI(title="Storefront API", lifespan=lifespan)
    app.state.settings = settings
    app.state.mongo = mongo_db
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    for router in (root, auth_routes, products, cart, orders):
        app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
