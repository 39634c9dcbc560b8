"""
Error kinds surfaced by the services.

Every service failure is one of these; the app turns them into a JSON body
`{"message": ..., **extra}` with the matching status code.
"""

import logging
from functools import wraps
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, **self.extra}


class ValidationFailed(StoreError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, errors=errors or [])


class PasswordMismatch(ValidationFailed):
    def __init__(self):
        super().__init__(
            "Passwords do not match",
            errors=[{"field": "confirm_password", "message": "Passwords do not match"}],
        )


class EmptyOrder(StoreError):
    status_code = 400
    default_message = "Cart is empty"


class InsufficientStock(StoreError):
    status_code = 400

    def __init__(self, product_id: str, available: int, message: Optional[str] = None,
                 cart_item_id: Optional[int] = None):
        available = max(int(available or 0), 0)
        if message is None:
            message = f"Only {available} left in stock" if available > 0 else "Product is out of stock"
        extra = {"product_id": product_id, "available_stock": available}
        if cart_item_id is not None:
            extra["cart_item_id"] = cart_item_id
        super().__init__(message, **extra)
        self.product_id = product_id
        self.available = available
        self.cart_item_id = cart_item_id


class Unauthenticated(StoreError):
    status_code = 401
    default_message = "Access token required"


class InvalidCredentials(Unauthenticated):
    default_message = "Invalid email or password"


class Forbidden(StoreError):
    status_code = 403
    default_message = "Unauthorized"


class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class Conflict(StoreError):
    status_code = 409
    default_message = "Already exists"


class EmailTaken(Conflict):
    default_message = "Email already registered"


class Unexpected(StoreError):
    status_code = 500


def translate_store_errors(message: str):
    """Wrap a service method so raw driver errors surface as `Unexpected(message)`."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except (PyMongoError, SQLAlchemyError) as e:
                logger.exception("%s: %s", message, e)
                raise Unexpected(message) from e
        return wrapper
    return decorator
