import logging
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import DuplicateKeyError

from .config import JWT_ALG, JWT_SECRET, TOKEN_TTL_HOURS
from .db import get_db
from .errors import AuthenticationFailure, ValidationFailure
from .models import as_object_id, new_user, presence_user
from .schemas import ERROR_RESPONSES, LoginIn, RegisterIn, TokenOut

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"], responses=ERROR_RESPONSES)
security = HTTPBearer(auto_error=False)


def make_hash(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt()).decode()


def verify_hash(pw: str, ph: Optional[str]) -> bool:
    if not ph:
        return False
    return bcrypt.checkpw(pw.encode(), ph.encode())


def create_token(user_id: str) -> str:
    payload = {
        "sub": str(user_id),
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def authenticate_token(token: Optional[str]) -> dict:
    """Resolve a bearer token to its user document."""
    if not token:
        raise AuthenticationFailure("No token provided")
    try:
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        raise AuthenticationFailure("Invalid token")
    try:
        user_id = as_object_id(data.get("sub"))
    except ValidationFailure:
        raise AuthenticationFailure("Invalid token")
    user = get_db().users.find_one({"_id": user_id}, {"password_hash": 0})
    if not user:
        raise AuthenticationFailure("User not found")
    return user


def auth_required(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    return authenticate_token(creds.credentials if creds else None)


def _token_response(user: dict) -> dict:
    return {"token": create_token(user["_id"]), "user": presence_user(user)}


@router.post("/register", response_model=TokenOut, status_code=201)
def register(data: RegisterIn):
    db = get_db()
    doc = new_user(data.username, make_hash(data.password), data.avatar or "")
    try:
        db.users.insert_one(doc)
    except DuplicateKeyError:
        raise ValidationFailure.field("username", "username exists")
    log.info("Registered user %s (%s)", doc["username"], doc["_id"])
    return _token_response(doc)


@router.post("/login", response_model=TokenOut)
def login(data: LoginIn):
    user = get_db().users.find_one({"username": data.username})
    if not user or not verify_hash(data.password, user.get("password_hash")):
        raise AuthenticationFailure("invalid credentials")
    return _token_response(user)
