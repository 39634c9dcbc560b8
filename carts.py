"""
Cart service

Carts and their lines are SQL rows; the products they point at are Mongo
documents. Every view joins the two at read time and keeps a line even when
its product has gone (the line then carries `product: None`). Stock is
checked against the live product on every write.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from catalog import CatalogService, product_snapshot
from errors import InsufficientStock, NotFound, translate_store_errors
from models import Cart, CartItem, isoformat, utcnow

logger = logging.getLogger(__name__)


class CartService:
    def __init__(self, sessions: sessionmaker, catalog: CatalogService):
        self.sessions = sessions
        self.catalog = catalog

    @staticmethod
    def _find_cart(session: Session, user_id: int) -> Optional[Cart]:
        return session.scalars(select(Cart).where(Cart.user_id == user_id)).first()

    def _get_or_create(self, session: Session, user_id: int) -> Cart:
        cart = self._find_cart(session, user_id)
        if cart:
            return cart
        session.add(Cart(user_id=user_id))
        try:
            session.commit()
            logger.debug("Created cart for user %s", user_id)
        except IntegrityError:
            # another request created it first
            session.rollback()
        return session.scalars(select(Cart).where(Cart.user_id == user_id)).one()

    @staticmethod
    def _line(item: CartItem, snapshot: Optional[dict]) -> Dict[str, Any]:
        return {
            "id": item.id,
            "product_id": item.product_id,
            "quantity": item.quantity,
            "added_at": isoformat(item.added_at),
            "product": snapshot,
        }

    @translate_store_errors("Failed to fetch cart")
    def get_or_create_cart(self, user_id: int) -> Dict[str, Any]:
        with self.sessions() as session:
            return self._get_or_create(session, user_id).to_dict()

    @translate_store_errors("Failed to fetch cart")
    def get_cart_view(self, user_id: int) -> Dict[str, Any]:
        with self.sessions() as session:
            cart = self._get_or_create(session, user_id)
            rows = session.scalars(
                select(CartItem)
                .where(CartItem.cart_id == cart.id)
                .order_by(CartItem.added_at.desc(), CartItem.id.desc())
            ).all()
            items = [self._line(item, self.catalog.resolve(item.product_id)) for item in rows]
            return {"cart": cart.to_dict(), "items": items}

    @translate_store_errors("Failed to add item to cart")
    def add_item(self, user_id: int, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        product = self.catalog.get_product(product_id)
        if not product:
            raise NotFound("Product not found")
        product_id = str(product["_id"])
        stock = int(product.get("stock") or 0)
        if quantity > stock:
            raise InsufficientStock(product_id, stock, message="Insufficient stock")

        for attempt in range(2):
            with self.sessions() as session:
                cart = self._get_or_create(session, user_id)
                item = session.scalars(
                    select(CartItem).where(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
                ).first()
                if item:
                    if item.quantity + quantity > stock:
                        raise InsufficientStock(product_id, stock, cart_item_id=item.id)
                    session.execute(
                        update(CartItem)
                        .where(CartItem.id == item.id)
                        .values(quantity=CartItem.quantity + quantity)
                        .execution_options(synchronize_session=False)
                    )
                else:
                    item = CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity)
                    session.add(item)
                cart.updated_at = utcnow()
                try:
                    session.commit()
                except IntegrityError:
                    # a concurrent add inserted the same line; go again as an increment
                    session.rollback()
                    if attempt:
                        raise
                    continue
                session.refresh(item)
                return self._line(item, product_snapshot(product))

    @translate_store_errors("Failed to update cart item")
    def update_item_quantity(self, user_id: int, cart_item_id: int, quantity: int) -> Optional[Dict[str, Any]]:
        """Set a line's quantity. Returns None when the line was removed (quantity <= 0)."""
        with self.sessions() as session:
            cart, item = self._owned_item(session, user_id, cart_item_id)
            if quantity <= 0:
                session.delete(item)
                cart.updated_at = utcnow()
                session.commit()
                return None

            product = self.catalog.get_product(item.product_id)
            if product is None:
                if quantity > item.quantity:
                    raise NotFound("Product not found")
            else:
                stock = int(product.get("stock") or 0)
                if quantity > stock:
                    raise InsufficientStock(item.product_id, stock, cart_item_id=item.id)

            item.quantity = quantity
            cart.updated_at = utcnow()
            session.commit()
            return self._line(item, product_snapshot(product))

    @translate_store_errors("Failed to remove item from cart")
    def remove_item(self, user_id: int, cart_item_id: int) -> None:
        with self.sessions() as session:
            cart, item = self._owned_item(session, user_id, cart_item_id)
            session.delete(item)
            cart.updated_at = utcnow()
            session.commit()

    @translate_store_errors("Failed to clear cart")
    def clear(self, user_id: int) -> None:
        with self.sessions() as session:
            cart = self._find_cart(session, user_id)
            if not cart:
                return
            session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
            cart.updated_at = utcnow()
            session.commit()

    def _owned_item(self, session: Session, user_id: int, cart_item_id: int) -> Tuple[Cart, CartItem]:
        cart = self._find_cart(session, user_id)
        if not cart:
            raise NotFound("Cart not found")
        item = session.get(CartItem, cart_item_id)
        if not item or item.cart_id != cart.id:
            raise NotFound("Cart item not found")
        return cart, item
