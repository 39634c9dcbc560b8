"""
Document Store Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection.

- Product -> "products"
- Admin -> "admins"

Users, carts and orders are relational and live in models.py.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class Product(BaseModel):
    """Products collection schema"""
    sku: str = Field(..., min_length=1, description="Stock keeping unit, unique")
    name: str = Field(..., min_length=1, description="Product name")
    price: float = Field(..., ge=0, description="Price in dollars")
    category: str = Field(..., min_length=1, description="Product category")
    description: Optional[str] = Field(None, description="Product description")
    stock: int = Field(0, ge=0, description="Units available")
    image: Optional[str] = Field(None, description="Primary image URL")


class ProductUpdate(BaseModel):
    """Partial update of a product; only the fields sent are written"""
    sku: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None

    @field_validator("sku", "name", "price", "category", "stock")
    @classmethod
    def required_not_null(cls, v):
        # may be omitted, never cleared
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class Admin(BaseModel):
    """Admins collection schema, an account space separate from SQL users"""
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., description="BCrypt password hash")
    role: str = Field("admin", description="Role")
    permissions: List[str] = Field(default_factory=list, description="Granted permissions")
    is_active: bool = Field(True, description="Whether the admin may sign in")
    last_login: Optional[datetime] = Field(None, description="Last successful sign in")
