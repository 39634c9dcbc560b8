"""
Runtime settings

Read once at startup from the environment (a local .env file is honoured).
The store clients themselves are built from these values by `database`.
"""

import os
import logging
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    mongodb_uri: str = Field("mongodb://localhost:27017", description="Document store connection string")
    mongodb_name: str = Field("storefront", description="Document store database name")
    sql_url: str = Field("sqlite:///./storefront.db", description="SQLAlchemy URL of the relational store")
    jwt_secret: str = Field("change-me", description="HMAC secret used to sign session tokens")
    token_ttl_days: int = Field(7, ge=1)
    bcrypt_rounds: int = Field(10, ge=4, le=31)
    environment: str = "development"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        secret = os.getenv("JWT_SECRET")
        if not secret:
            logger.warning("JWT_SECRET is not set, falling back to an insecure default")
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI") or os.getenv("DATABASE_URL") or "mongodb://localhost:27017",
            mongodb_name=os.getenv("MONGODB_NAME") or os.getenv("DATABASE_NAME") or "storefront",
            sql_url=os.getenv("POSTGRES_URL", "sqlite:///./storefront.db"),
            jwt_secret=secret or "change-me",
            token_ttl_days=int(os.getenv("TOKEN_TTL_DAYS", 7)),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", 10)),
            environment=os.getenv("ENV", "development"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
