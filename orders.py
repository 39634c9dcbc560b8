"""
Order placement and sales reports

An order spans both stores: the order and its items are SQL rows while the
stock being sold sits on Mongo product documents. Checkout writes the SQL
rows inside one transaction and decrements stock with conditional updates
before that transaction commits. If a decrement or the commit fails, the
decrements already applied are given back and the SQL transaction is
rolled back, so an order never exists without its stock having been taken.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.errors import PyMongoError
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload, sessionmaker

from catalog import CatalogService
from errors import (
    EmptyOrder,
    Forbidden,
    InsufficientStock,
    NotFound,
    ProductNotFound,
    Unexpected,
    translate_store_errors,
)
from models import Order, OrderItem, User, isoformat

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
TOP_CUSTOMERS = 10


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS)


def unit_price(product: dict) -> Decimal:
    """The product's current price; a product without a usable one cannot be sold."""
    price = product.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float, Decimal)) or price < 0:
        logger.error("Product %s has no valid price: %r", product.get("_id"), price)
        raise Unexpected("Failed to create order")
    return money(price)


def as_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "total": float(order.total),
        "status": order.status,
        "shipping_address": order.shipping_address,
        "subtotal": as_float(order.subtotal),
        "tax": as_float(order.tax),
        "shipping": as_float(order.shipping),
        "created_at": isoformat(order.created_at),
        "items": [item.to_dict() for item in order.items],
    }


class OrderService:
    def __init__(self, sessions: sessionmaker, catalog: CatalogService):
        self.sessions = sessions
        self.catalog = catalog

    @translate_store_errors("Failed to create order")
    def place_order(self, user_id: int, items: List[Dict[str, Any]],
                    shipping_address: Optional[dict] = None) -> Dict[str, Any]:
        """Validate stock, write the order and its items, then take the stock.

        `items` is a list of {"product_id", "quantity"}. Prices are frozen from
        the products read during validation.
        """
        if not items:
            raise EmptyOrder()

        cache: Dict[str, dict] = {}
        requested: Dict[str, int] = {}
        total = Decimal("0")
        for line in items:
            product = self._product(cache, line["product_id"])
            if not product:
                raise ProductNotFound(line["product_id"])
            pid = str(product["_id"])
            requested[pid] = requested.get(pid, 0) + line["quantity"]
            stock = int(product.get("stock") or 0)
            if requested[pid] > stock:
                raise InsufficientStock(pid, stock, message=f"Insufficient stock for {product.get('name')}")
            total += unit_price(product) * line["quantity"]
        total = total.quantize(CENTS)

        reserved: List[Tuple[str, int]] = []
        try:
            with self.sessions.begin() as session:
                order = Order(user_id=user_id, total=total, status="completed",
                              shipping_address=shipping_address)
                for line in items:
                    product = cache[str(line["product_id"])]
                    order.items.append(OrderItem(
                        product_id=str(product["_id"]),
                        quantity=line["quantity"],
                        price_at_purchase=unit_price(product),
                    ))
                session.add(order)
                session.flush()

                for pid, quantity in requested.items():
                    if not self.catalog.reserve_stock(pid, quantity):
                        current = self.catalog.get_product(pid) or {}
                        raise InsufficientStock(
                            pid, current.get("stock", 0),
                            message=f"Insufficient stock for {cache[pid].get('name')}",
                        )
                    reserved.append((pid, quantity))
                view = order_to_dict(order)
        except Exception:
            self._release(reserved)
            raise

        logger.info("Order %s placed by user %s for %s", view["id"], user_id, total)
        return view

    def _product(self, cache: Dict[str, dict], product_id) -> Optional[dict]:
        key = str(product_id)
        product = cache.get(key)
        if product is None:
            product = self.catalog.get_product(key)
            if product:
                cache[key] = product
                cache[str(product["_id"])] = product
        return product

    def _release(self, reserved: Iterable[Tuple[str, int]]) -> None:
        for pid, quantity in reserved:
            try:
                self.catalog.release_stock(pid, quantity)
                logger.warning("Released %s unit(s) of product %s after a failed checkout", quantity, pid)
            except PyMongoError:
                logger.exception("Could not release %s unit(s) of product %s", quantity, pid)

    @translate_store_errors("Failed to fetch order")
    def get_by_id(self, order_id: int, claims: Dict[str, Any]) -> Dict[str, Any]:
        with self.sessions() as session:
            order = session.get(Order, order_id, options=[selectinload(Order.items)])
            is_admin = claims.get("role") == "admin"
            is_owner = (
                order is not None
                and claims.get("type") == "user"
                and str(order.user_id) == str(claims.get("id"))
            )
            if not (is_admin or is_owner):
                raise Forbidden("Unauthorized")
            if order is None:
                raise NotFound("Order not found")
            view = order_to_dict(order)
        for item in view["items"]:
            item["product"] = self.catalog.resolve(item["product_id"])
        return view

    def _list(self, *criteria) -> List[Dict[str, Any]]:
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(*criteria)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        with self.sessions() as session:
            return [order_to_dict(o) for o in session.scalars(stmt)]

    @translate_store_errors("Failed to fetch orders")
    def get_all_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        return self._list(Order.user_id == user_id)

    @translate_store_errors("Failed to fetch orders")
    def get_all(self) -> List[Dict[str, Any]]:
        return self._list()

    # Reports

    @translate_store_errors("Failed to fetch revenue data")
    def daily_revenue_report(self) -> List[Dict[str, Any]]:
        day = func.date(Order.created_at).label("date")
        stmt = select(day, func.sum(Order.total).label("revenue")).group_by(day).order_by(day.desc())
        with self.sessions() as session:
            return [
                {"date": str(row.date), "revenue": float(money(row.revenue))}
                for row in session.execute(stmt)
            ]

    @translate_store_errors("Failed to fetch customer data")
    def top_customers_report(self) -> List[Dict[str, Any]]:
        spent = func.coalesce(func.sum(Order.total), 0).label("total_spent")
        count = func.count(Order.id).label("order_count")
        stmt = (
            select(User.id, User.name, User.email, count, spent)
            .outerjoin(Order, Order.user_id == User.id)
            .group_by(User.id, User.name, User.email)
            .order_by(spent.desc(), User.id)
            .limit(TOP_CUSTOMERS)
        )
        with self.sessions() as session:
            return [
                {
                    "id": row.id,
                    "name": row.name,
                    "email": row.email,
                    "order_count": row.order_count,
                    "total_spent": float(money(row.total_spent)),
                }
                for row in session.execute(stmt)
            ]
