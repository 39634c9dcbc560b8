"""
Authentication and sessions

Two account spaces exist: customers in the SQL "users" table and admins in the
Mongo "admins" collection. Login asks each provider in turn and stops at the
first one that knows the email. Sessions are HS256 JWTs carried either in the
"token" cookie or an `Authorization: Bearer` header.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from fastapi import Request
from pymongo.database import Database
from pymongo.errors import PyMongoError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import ADMINS, to_object_id
from errors import (
    EmailTaken,
    Forbidden,
    InvalidCredentials,
    NotFound,
    PasswordMismatch,
    Unauthenticated,
    translate_store_errors,
)
from models import User

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"
JWT_ALGORITHM = "HS256"
USER = "user"
MONGO_ADMIN = "mongo_admin"


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds)).decode()


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


# Account providers

class UserAccounts:
    """Customers (and SQL-side admins) in the relational store."""
    kind = USER

    def __init__(self, sessions: sessionmaker):
        self.sessions = sessions

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self.sessions() as session:
            user = session.scalars(select(User).where(User.email == email)).first()
            if not user:
                return None
            return {**user.to_dict(), "type": self.kind, "password_hash": user.password_hash}

    def profile(self, account_id) -> Optional[Dict[str, Any]]:
        try:
            account_id = int(account_id)
        except (TypeError, ValueError):
            return None
        with self.sessions() as session:
            user = session.get(User, account_id)
            return {**user.to_dict(), "type": self.kind} if user else None

    def touch_login(self, account: Dict[str, Any]) -> None:
        """SQL users keep no login stamp."""


class AdminAccounts:
    """Admins in the document store."""
    kind = MONGO_ADMIN

    def __init__(self, db: Database):
        self.admins = db[ADMINS]

    @classmethod
    def _public(cls, doc: dict) -> Dict[str, Any]:
        created = doc.get("created_at")
        return {
            "id": str(doc["_id"]),
            "name": doc.get("name"),
            "email": doc.get("email"),
            "role": doc.get("role", "admin"),
            "type": cls.kind,
            "created_at": created.isoformat() if created else None,
        }

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        doc = self.admins.find_one({"email": email})
        if not doc:
            return None
        return {**self._public(doc), "password_hash": doc.get("password"), "is_active": doc.get("is_active", True)}

    def profile(self, account_id) -> Optional[Dict[str, Any]]:
        _id = to_object_id(account_id)
        doc = self.admins.find_one({"_id": _id}) if _id else None
        return self._public(doc) if doc else None

    def touch_login(self, account: Dict[str, Any]) -> None:
        self.admins.update_one(
            {"_id": to_object_id(account["id"])},
            {"$set": {"last_login": datetime.now(timezone.utc)}},
        )


class AuthService:
    def __init__(self, sessions: sessionmaker, providers: List, secret: str,
                 ttl: timedelta = timedelta(days=7), bcrypt_rounds: int = 10):
        self.sessions = sessions
        self.providers = providers
        self.secret = secret
        self.ttl = ttl
        self.bcrypt_rounds = bcrypt_rounds

    @translate_store_errors("Registration failed")
    def register(self, name: str, email: str, password: str, confirm_password: str) -> Dict[str, Any]:
        if password != confirm_password:
            raise PasswordMismatch()
        with self.sessions.begin() as session:
            if session.scalars(select(User.id).where(User.email == email)).first() is not None:
                raise EmailTaken()
            user = User(
                name=name,
                email=email,
                password_hash=hash_password(password, self.bcrypt_rounds),
                role="customer",
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError:
                raise EmailTaken()
            account = {**user.to_dict(), "type": USER}
        logger.info("Registered user %s", account["id"])
        return account

    def _find_account(self, email: str) -> Optional[Dict[str, Any]]:
        for provider in self.providers:
            try:
                account = provider.find_by_email(email)
            except PyMongoError as e:
                # admins are optional; a relational failure still propagates
                logger.warning("Account lookup in %s failed: %s", provider.kind, e)
                continue
            if account:
                return account
        return None

    @translate_store_errors("Login failed")
    def login(self, email: str, password: str) -> Dict[str, Any]:
        account = self._find_account(email)
        if not account or not account.get("is_active", True):
            raise InvalidCredentials()
        if not check_password(password, account.get("password_hash")):
            raise InvalidCredentials()
        provider = self._provider(account["type"])
        try:
            provider.touch_login(account)
        except PyMongoError as e:
            logger.warning("Could not record login for %s: %s", account["id"], e)
        return {k: v for k, v in account.items() if k not in ("password_hash", "is_active")}

    def _provider(self, kind: str):
        for provider in self.providers:
            if provider.kind == kind:
                return provider
        raise Unauthenticated("Invalid token structure")

    def issue_session(self, account: Dict[str, Any]) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "id": account["id"],
            "email": account["email"],
            "role": account["role"],
            "type": account["type"],
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(claims, self.secret, algorithm=JWT_ALGORITHM)

    def verify_session(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise Unauthenticated()
        try:
            claims = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
        except jwt.PyJWTError:
            raise Unauthenticated("Invalid or expired token")
        if not claims.get("id"):
            raise Unauthenticated("Invalid token structure")
        return claims

    @translate_store_errors("Failed to fetch user")
    def current_profile(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        profile = self._provider(claims.get("type", USER)).profile(claims["id"])
        if not profile:
            raise NotFound("User not found")
        return profile


# Authorization predicates

def require_admin(claims: Dict[str, Any]) -> Dict[str, Any]:
    if claims.get("role") != "admin":
        raise Forbidden("Admin access required")
    return claims


def require_admin_or_self(claims: Dict[str, Any], target_id) -> Dict[str, Any]:
    if claims.get("role") != "admin" and str(claims.get("id")) != str(target_id):
        raise Forbidden("Unauthorized")
    return claims


def require_customer(claims: Dict[str, Any]) -> Dict[str, Any]:
    if claims.get("role") == "admin" or claims.get("type") != USER:
        raise Forbidden("Admins cannot access cart functionality")
    return claims


# Request dependencies

def token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(TOKEN_COOKIE)
    if not token:
        header = request.headers.get("authorization", "")
        if header.startswith("Bearer "):
            token = header[7:].strip()
    return token or None


def current_claims(request: Request) -> Dict[str, Any]:
    return request.app.state.auth.verify_session(token_from_request(request))
