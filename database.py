"""
Store connections and document helpers

Two stores back the API:
- MongoDB holds the "products" and "admins" collections
- a SQL database (PostgreSQL in production) holds users, carts and orders

Clients are created here at startup and handed to the services; nothing in
this module keeps a process-wide handle.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson.objectid import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from models import Base

logger = logging.getLogger(__name__)

PRODUCTS = "products"
ADMINS = "admins"


# Document store

def connect_mongo(url: str, name: str) -> Database:
    client = MongoClient(url)
    logger.info("Using MongoDB database %r", name)
    return client[name]


def init_mongo(db: Database) -> None:
    db[PRODUCTS].create_index([("sku", ASCENDING)], unique=True)
    db[PRODUCTS].create_index([("category", ASCENDING)])
    db[ADMINS].create_index([("email", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured")


def create_document(db: Database, collection_name: str, data: Any) -> str:
    """Insert a pydantic model or dict, stamping created_at/updated_at. Returns the new id."""
    if hasattr(data, "model_dump"):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def to_object_id(id_str: Any) -> Optional[ObjectId]:
    """Parse an id coming from a URL or a SQL row; malformed ids resolve to None."""
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[dict]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


# Relational store

def connect_sql(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(url, **kwargs)
    logger.info("Using SQL database %s", engine.url.render_as_string(hide_password=True))
    return engine


def init_sql(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.info("SQL tables ensured")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def check_stores(db: Database, engine: Engine) -> Dict[str, Any]:
    """Connectivity report used by the /test endpoint."""
    resp = {
        "backend": "✅ Running",
        "document_store": "❌ Not Available",
        "relational_store": "❌ Not Available",
        "collections": [],
    }
    try:
        resp["collections"] = db.list_collection_names()[:10]
        resp["document_store"] = "✅ Connected & Working"
    except Exception as e:
        resp["document_store"] = f"⚠️ Connected but error: {str(e)[:80]}"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        resp["relational_store"] = "✅ Connected & Working"
    except Exception as e:
        resp["relational_store"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp
