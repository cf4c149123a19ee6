"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import copy
import hashlib
import hmac
import itertools
import re
import time
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from pymongo.errors import DuplicateKeyError, WriteError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from auth import create_access_token
from database import database
from services.admin_guard import reset_guard_state

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_ENV = {
    "STRIPE_PRICE_BASIC": "price_basic_monthly",
    "STRIPE_PRICE_BASIC_YEARLY": "price_basic_yearly",
    "STRIPE_PRICE_PRO": "price_pro_monthly",
    "STRIPE_PRICE_PRO_YEARLY": "price_pro_yearly",
}


# =============================================================================
# In-memory MongoDB stand-in
# =============================================================================

_MISSING = object()
_ids = itertools.count(1)


def _lookup(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value, arg, op):
    if value is _MISSING or value is None or arg is None:
        return False
    try:
        return op(value, arg)
    except TypeError:
        return False


def _match_value(value, cond):
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            plain = None if value is _MISSING else value
            if op == "$in" and plain not in arg:
                return False
            if op == "$nin" and plain in arg:
                return False
            if op == "$ne" and plain == arg:
                return False
            if op == "$lt" and not _compare(value, arg, lambda a, b: a < b):
                return False
            if op == "$lte" and not _compare(value, arg, lambda a, b: a <= b):
                return False
            if op == "$gt" and not _compare(value, arg, lambda a, b: a > b):
                return False
            if op == "$gte" and not _compare(value, arg, lambda a, b: a >= b):
                return False
            if op == "$exists" and (value is not _MISSING) != bool(arg):
                return False
            if op == "$regex":
                flags = re.I if "i" in cond.get("$options", "") else 0
                if not isinstance(plain, str) or not re.search(arg, plain, flags):
                    return False
        return True
    if cond is None:
        return value is _MISSING or value is None
    if isinstance(value, list) and not isinstance(cond, list):
        return cond in value
    return value == cond


def matches(doc, query):
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif not _match_value(_lookup(doc, key), cond):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


def apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        elif op == "$unset":
            for key in fields:
                doc.pop(key, None)
        elif op == "$inc":
            for key, amount in fields.items():
                if key in doc and not isinstance(doc[key], (int, float)):
                    raise WriteError(f"Cannot apply $inc to a value of non-numeric type: {key}", 14)
                doc[key] = doc.get(key, 0) + amount
        else:
            raise NotImplementedError(op)


def _seed_from_filter(query):
    return {
        k: copy.deepcopy(v)
        for k, v in query.items()
        if not k.startswith("$") and not (isinstance(v, dict) and any(str(x).startswith("$") for x in v))
    }


class FakeCursor:
    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._skip = 0
        self._limit = 0

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs.sort(
                key=lambda d: (0, None) if _lookup(d, field) in (_MISSING, None) else (1, _lookup(d, field)),
                reverse=order < 0,
            )
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        if length:
            docs = docs[:length]
        return [project(d, self._projection) for d in docs]


class FakeCollection:
    """The slice of the motor collection API the services use."""

    def __init__(self, name):
        self.name = name
        self.docs = []

    def seed(self, *docs):
        for doc in docs:
            doc = copy.deepcopy(doc)
            doc.setdefault("_id", f"oid{next(_ids)}")
            self.docs.append(doc)

    def _insert(self, doc):
        if any(d["_id"] == doc["_id"] for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        self.docs.append(doc)

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                return project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return FakeCursor([d for d in self.docs if matches(d, query)], projection)

    async def count_documents(self, query, **kwargs):
        return sum(1 for d in self.docs if matches(d, query))

    async def insert_one(self, doc, **kwargs):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", f"oid{next(_ids)}")
        self._insert(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def _update(self, query, update, upsert, many):
        matched = modified = 0
        for doc in self.docs:
            if not matches(doc, query):
                continue
            matched += 1
            before = copy.deepcopy(doc)
            apply_update(doc, update)
            if doc != before:
                modified += 1
            if not many:
                break
        upserted_id = None
        if not matched and upsert:
            new = _seed_from_filter(query)
            apply_update(new, update, inserting=True)
            new.setdefault("_id", f"oid{next(_ids)}")
            self._insert(new)
            upserted_id = new["_id"]
        return SimpleNamespace(matched_count=matched, modified_count=modified, upserted_id=upserted_id)

    async def update_one(self, query, update, upsert=False, **kwargs):
        return await self._update(query, update, upsert, many=False)

    async def update_many(self, query, update, upsert=False, **kwargs):
        return await self._update(query, update, upsert, many=True)

    async def find_one_and_update(self, query, update, projection=None, upsert=False, return_document=False, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                apply_update(doc, update)
                return project(doc if return_document else before, projection)
        if not upsert:
            return None
        new = _seed_from_filter(query)
        apply_update(new, update, inserting=True)
        new.setdefault("_id", f"oid{next(_ids)}")
        self._insert(new)
        return project(new, projection) if return_document else None

    async def delete_one(self, query, **kwargs):
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query, **kwargs):
        keep = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def stripe_env(monkeypatch):
    """Known price ids and webhook secret for every test."""
    for key, value in PRICE_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


@pytest.fixture(autouse=True)
def clean_guard_state():
    reset_guard_state()
    yield
    reset_guard_state()


@pytest.fixture
def fake_db():
    db = FakeDatabase()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def make_profile(fake_db):
    """Insert a profile and return it. Contractor without subscription unless overridden."""
    def _make(**fields):
        profile = {
            "id": str(uuid.uuid4()),
            "email": f"user-{uuid.uuid4().hex[:8]}@example.com",
            "name": "Test User",
            "role": "contractor",
            "subscription_status": "none",
            "plan_type": None,
            "offer_count_this_month": 0,
            "is_banned": False,
            "created_at": datetime.now(timezone.utc),
        }
        profile.update(fields)
        fake_db.profiles.seed(profile)
        return profile
    return _make


def bearer(profile, **claims):
    token = create_access_token({"sub": profile["id"], **claims})
    return {"Authorization": f"Bearer {token}"}


def mutation_headers(profile, key=None, **claims):
    headers = bearer(profile, **claims)
    headers["X-Idempotency-Key"] = key or uuid.uuid4().hex
    return headers


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header value for ``payload``."""
    ts = int(timestamp or time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def auth_headers():
    return bearer


@pytest.fixture
def admin_headers():
    return mutation_headers


@pytest.fixture
def sign():
    return stripe_signature
