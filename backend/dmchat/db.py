import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from .config import DB_NAME, MONGO_URI

log = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def connect(uri: str = MONGO_URI, name: str = DB_NAME) -> Database:
    global _client, _db
    _client = MongoClient(uri)
    _client.admin.command("ping")
    _db = _client[name]
    log.info("MongoDB connection established (%s)", name)
    return _db


def use_database(db: Optional[Database]):
    """Point the app at an already-built database handle (tests, scripts)."""
    global _db
    _db = db


def get_db() -> Database:
    if _db is None:
        return connect()
    return _db


def close():
    """Close the client opened by :func:`connect`. A handle given to
    :func:`use_database` is left in place."""
    global _client, _db
    if _client is None:
        return
    _client.close()
    log.info("MongoDB connection closed")
    _client = None
    _db = None


def create_indexes(db: Optional[Database] = None):
    db = db if db is not None else get_db()
    db.users.create_index("username", unique=True)
    # pair uniqueness lives on the derived key; a unique index on the
    # participants array would cap every user at a single chat
    db.chats.create_index(
        "pair_key",
        name="pair_key_active_unique",
        unique=True,
        partialFilterExpression={"active": True},
    )
    db.chats.create_index("participants")
    db.messages.create_index([("chat_id", ASCENDING), ("created_at", DESCENDING)])
    db.messages.create_index([("sender", ASCENDING), ("receiver", ASCENDING)])
    db.audit_log.create_index("timestamp")
    log.info("MongoDB indexes verified/created")
