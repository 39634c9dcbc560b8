"""
Catalog service: product search, lookup, admin CRUD and the stock primitives
checkout relies on. Products live in the Mongo "products" collection.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import PRODUCTS, create_document, serialize, to_object_id
from errors import Conflict, NotFound, translate_store_errors
from schemas import Product, ProductUpdate

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


def parse_positive_int(value, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return n if n > 0 else default


def parse_direction(value) -> str:
    return "asc" if str(value or "").strip().lower() == "asc" else "desc"


def product_snapshot(doc: Optional[dict]) -> Optional[dict]:
    """The product fields embedded in cart lines and order items."""
    if not doc:
        return None
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "price": doc.get("price"),
        "image": doc.get("image"),
        "sku": doc.get("sku"),
        "category": doc.get("category"),
        "stock": doc.get("stock"),
    }


class CatalogService:
    def __init__(self, db: Database):
        self.products = db[PRODUCTS]
        self.db = db

    # Reads

    def get_product(self, product_id) -> Optional[dict]:
        """Raw product document, or None when the id is malformed or unknown."""
        _id = to_object_id(product_id)
        if _id is None:
            return None
        return self.products.find_one({"_id": _id})

    def resolve(self, product_id) -> Optional[dict]:
        """Snapshot for a cross-store reference; a failed or empty lookup gives None."""
        try:
            doc = self.get_product(product_id)
        except PyMongoError as e:
            logger.error("Error fetching product %s: %s", product_id, e)
            return None
        if doc is None:
            logger.warning("Product %s not found in the document store", product_id)
        return product_snapshot(doc)

    @translate_store_errors("Failed to fetch product")
    def get_by_id(self, product_id: str) -> dict:
        doc = self.get_product(product_id)
        if not doc:
            raise NotFound("Product not found")
        return serialize(doc)

    @translate_store_errors("Failed to fetch products")
    def search(self, text: Optional[str] = None, category: Optional[str] = None,
               direction: str = "desc", page: int = DEFAULT_PAGE,
               limit: int = DEFAULT_LIMIT) -> Tuple[List[dict], int]:
        page = parse_positive_int(page, DEFAULT_PAGE)
        limit = parse_positive_int(limit, DEFAULT_LIMIT)
        filt = {}
        if text:
            pattern = {"$regex": re.escape(text), "$options": "i"}
            filt["$or"] = [{"name": pattern}, {"sku": pattern}]
        if category and category != "all":
            filt["category"] = category

        order = ASCENDING if parse_direction(direction) == "asc" else DESCENDING
        cursor = (
            self.products.find(filt)
            .sort([("price", order), ("_id", order)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items = [serialize(p) for p in cursor]
        total = self.products.count_documents(filt)
        return items, total

    @translate_store_errors("Failed to fetch categories")
    def list_categories(self) -> List[str]:
        return sorted(c for c in self.products.distinct("category") if c is not None)

    @translate_store_errors("Failed to fetch category summary")
    def category_sales_summary(self) -> List[dict]:
        pipeline = [
            {
                "$group": {
                    "_id": "$category",
                    "count": {"$sum": 1},
                    "avg_price": {"$avg": "$price"},
                    "min_price": {"$min": "$price"},
                    "max_price": {"$max": "$price"},
                }
            },
            {"$sort": {"_id": 1}},
        ]
        return [
            {
                "category": row["_id"],
                "count": row["count"],
                "avg_price": round(float(row["avg_price"] or 0), 2),
                "min_price": row["min_price"],
                "max_price": row["max_price"],
            }
            for row in self.products.aggregate(pipeline)
        ]

    # Admin CRUD

    @translate_store_errors("Failed to create product")
    def create_product(self, product: Product) -> dict:
        if self.products.find_one({"sku": product.sku}):
            raise Conflict("Product with this SKU already exists")
        try:
            pid = create_document(self.db, PRODUCTS, product)
        except DuplicateKeyError:
            raise Conflict("Product with this SKU already exists")
        logger.info("Created product %s (sku=%s)", pid, product.sku)
        return self.get_by_id(pid)

    @translate_store_errors("Failed to update product")
    def update_product(self, product_id: str, changes: ProductUpdate) -> dict:
        _id = to_object_id(product_id)
        if _id is None:
            raise NotFound("Product not found")
        fields = changes.model_dump(exclude_unset=True)
        if fields.get("sku"):
            clash = self.products.find_one({"sku": fields["sku"], "_id": {"$ne": _id}})
            if clash:
                raise Conflict("Product with this SKU already exists")
        fields["updated_at"] = datetime.now(timezone.utc)
        try:
            doc = self.products.find_one_and_update(
                {"_id": _id}, {"$set": fields}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise Conflict("Product with this SKU already exists")
        if not doc:
            raise NotFound("Product not found")
        return serialize(doc)

    @translate_store_errors("Failed to delete product")
    def delete_product(self, product_id: str) -> None:
        _id = to_object_id(product_id)
        if _id is None or self.products.delete_one({"_id": _id}).deleted_count == 0:
            raise NotFound("Product not found")
        logger.info("Deleted product %s", product_id)

    # Stock

    def reserve_stock(self, product_id, quantity: int) -> bool:
        """Take `quantity` units in one conditional update; False if the stock is not there."""
        _id = to_object_id(product_id)
        if _id is None:
            return False
        result = self.products.update_one(
            {"_id": _id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    def release_stock(self, product_id, quantity: int) -> None:
        self.products.update_one(
            {"_id": to_object_id(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        )
