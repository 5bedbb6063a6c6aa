import asyncio
import json
import os
import tempfile

import mongomock
import pytest

os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="dmchat-uploads-"))
os.environ.setdefault("JWT_SECRET", "dmchat-test-secret-with-enough-bytes-for-hs256")

from dmchat import db as dbmod  # noqa: E402
from dmchat.models import new_user  # noqa: E402
from dmchat.presence import Connection  # noqa: E402


@pytest.fixture
def raw_db():
    """A store without indexes, like data imported before the pair-key constraint."""
    database = mongomock.MongoClient()["dmchat_test"]
    dbmod.use_database(database)
    yield database


@pytest.fixture
def db(raw_db):
    dbmod.create_indexes(raw_db)
    return raw_db


@pytest.fixture
def make_user(raw_db):
    def _make(username, avatar=""):
        doc = new_user(username, None, avatar)
        raw_db.users.insert_one(doc)
        return doc
    return _make


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    def events(self, kind=None):
        return [f for f in self.sent if kind is None or f["type"] == kind]


def connect(user, fail=False):
    return Connection(FakeSocket(fail=fail), user)


def run(coro):
    return asyncio.run(coro)
