"""
pytest configuration and shared fixtures for the OceanWatch API tests.

Tests must not require a live MongoDB. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops and
     setting db_client.client = None (health check reports "disconnected").
  2. Overriding the get_db dependency with an in-memory FakeDB that mimics
     the subset of the Motor API the app uses.
  3. Overriding get_hub with a fresh RealtimeHub per test, so realtime
     state never leaks between tests.
"""

import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STATS_TIMEZONE", "UTC")
# Auth routes are rate-limited; keep the limit out of the way of normal tests
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")


# ── In-memory MongoDB emulator ─────────────────────────────────────────────────

_MISSING = object()


def _compare(value, op: str, operand) -> bool:
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if op == "$ne":
        return value != operand
    if value is None or value is _MISSING:
        return False
    if op == "$gte":
        return value >= operand
    if op == "$gt":
        return value > operand
    if op == "$lte":
        return value <= operand
    if op == "$lt":
        return value < operand
    raise NotImplementedError(f"FakeCollection does not support {op}")


def matches(doc: dict, query: dict) -> bool:
    for key, expected in query.items():
        value = doc.get(key, _MISSING)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not all(_compare(value, op, operand) for op, operand in expected.items()):
                return False
        elif value is _MISSING:
            if expected is not None:
                return False
        elif value != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: list[dict]):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        # Stable sorts applied from the least significant key
        for key, dirn in reversed(keys):
            self._docs.sort(key=lambda d: d.get(key), reverse=dirn < 0)
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def __aiter__(self):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[: self._limit]
        for doc in docs:
            yield doc

    async def to_list(self, length=None):
        return [doc async for doc in self][:length]


# ── Aggregation pipeline subset ───────────────────────────────────────────────

def _resolve(doc: dict, path: str):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _evaluate(expr, doc: dict):
    """Evaluate the aggregation expressions the analytics pipelines use."""
    if isinstance(expr, str) and expr.startswith("$"):
        return _resolve(doc, expr[1:])
    if isinstance(expr, list):
        return [_evaluate(e, doc) for e in expr]
    if not isinstance(expr, dict):
        return expr
    if "$dateToString" in expr:
        spec = expr["$dateToString"]
        value = _evaluate(spec["date"], doc)
        if value is None:
            return None
        tz = ZoneInfo(spec.get("timezone", "UTC"))
        return _utc(value).astimezone(tz).strftime(spec["format"])
    if "$subtract" in expr:
        a, b = _evaluate(expr["$subtract"], doc)
        if a is None or b is None:
            return None
        if isinstance(a, datetime):
            return int((_utc(a) - _utc(b)).total_seconds() * 1000)
        return a - b
    if "$cond" in expr:
        condition, then, otherwise = expr["$cond"]
        return _evaluate(then, doc) if _evaluate(condition, doc) else _evaluate(otherwise, doc)
    return {key: _evaluate(value, doc) for key, value in expr.items()}


def _group(docs: list[dict], spec: dict) -> list[dict]:
    groups: dict = {}
    for doc in docs:
        key = _evaluate(spec["_id"], doc)
        hashable = tuple(sorted(key.items())) if isinstance(key, dict) else key
        bucket = groups.setdefault(hashable, {"_id": key, "_values": {}})
        for field, accumulator in spec.items():
            if field == "_id":
                continue
            [(op, arg)] = accumulator.items()
            bucket["_values"].setdefault(field, (op, []))[1].append(_evaluate(arg, doc))

    rows = []
    for bucket in groups.values():
        row = {"_id": bucket["_id"]}
        for field, (op, values) in bucket["_values"].items():
            present = [v for v in values if v is not None]
            if op == "$sum":
                row[field] = sum(present)
            elif op == "$avg":
                row[field] = sum(present) / len(present) if present else None
            else:
                raise NotImplementedError(f"FakeCollection does not support {op}")
        rows.append(row)
    return rows


def run_pipeline(docs: list[dict], pipeline: list[dict]) -> list[dict]:
    for stage in pipeline:
        [(op, spec)] = stage.items()
        if op == "$match":
            docs = [d for d in docs if matches(d, spec)]
        elif op == "$group":
            docs = _group(docs, spec)
        elif op == "$sort":
            for key, dirn in reversed(list(spec.items())):
                docs.sort(key=lambda d: _resolve(d, key), reverse=dirn < 0)
        elif op == "$limit":
            docs = docs[:spec]
        else:
            raise NotImplementedError(f"FakeCollection does not support {op}")
    return docs


class FakeCollection:
    """Minimal async-compatible replica of a Motor collection."""

    def __init__(self):
        self._docs: dict[ObjectId, dict] = {}

    async def find_one(self, query: dict, projection=None):
        for doc in self._docs.values():
            if matches(doc, query):
                return dict(doc)
        return None

    def find(self, query: dict | None = None, projection=None):
        return FakeCursor([dict(d) for d in self._docs.values() if matches(d, query or {})])

    async def insert_one(self, doc: dict):
        oid = doc.get("_id") or ObjectId()
        self._docs[oid] = {**doc, "_id": oid}
        result = MagicMock()
        result.inserted_id = oid
        return result

    async def update_one(self, query: dict, update: dict):
        result = MagicMock()
        result.matched_count = 0
        result.modified_count = 0
        for doc in self._docs.values():
            if matches(doc, query):
                doc.update(update.get("$set", {}))
                result.matched_count = 1
                result.modified_count = 1
                break
        return result

    async def delete_one(self, query: dict):
        result = MagicMock()
        result.deleted_count = 0
        for oid, doc in list(self._docs.items()):
            if matches(doc, query):
                del self._docs[oid]
                result.deleted_count = 1
                break
        return result

    async def count_documents(self, query: dict):
        return sum(1 for d in self._docs.values() if matches(d, query))

    def aggregate(self, pipeline: list[dict]):
        return FakeCursor(run_pipeline([dict(d) for d in self._docs.values()], pipeline))

    async def create_index(self, *_args, **_kwargs):
        return "fake_index"


class FakeDB:
    """Fake MongoDB database — lazily creates collections."""

    def __init__(self):
        self._cols: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


class BrokenCollection(FakeCollection):
    """Every read fails, as if MongoDB went away mid-request."""

    async def count_documents(self, query: dict):
        raise ConnectionError("mongo unreachable")

    def find(self, query=None, projection=None):
        raise ConnectionError("mongo unreachable")


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    Tests that need data use the fake_db fixture through api_client.
    """
    with (
        patch("oceanwatch.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("oceanwatch.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import oceanwatch.core.database as db_module

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 — mock_db must run first
    """HTTPX client against the app with no database at all."""
    from oceanwatch.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def fake_db():
    """Fresh in-memory DB for each test."""
    return FakeDB()


@pytest.fixture()
def hub():
    from oceanwatch.services.realtime import RealtimeHub

    return RealtimeHub(outbox_size=100)


@pytest.fixture()
async def api_client(fake_db, hub):
    """HTTPX client with get_db → FakeDB and get_hub → the test's hub."""
    from oceanwatch.core.database import get_db
    from oceanwatch.main import app
    from oceanwatch.services.realtime import get_hub

    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_hub] = lambda: hub
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(fake_db):
    """
    Factory: insert an active user straight into the FakeDB and return
    (user_id, bearer headers). Skips bcrypt since these users never log in.
    """
    from oceanwatch.core.security import create_access_token

    async def _make(role: str = "citizen", name: str | None = None, email: str | None = None):
        oid = ObjectId()
        now = datetime.now(tz=timezone.utc)
        await fake_db["users"].insert_one({
            "_id": oid,
            "name": name or f"{role.title()} User",
            "email": email or f"{role}-{oid}@example.com",
            "hashed_password": "not-a-real-hash",
            "role": role,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        })
        token = create_access_token(str(oid), role=role)
        return str(oid), {"Authorization": f"Bearer {token}"}

    return _make


def drain(session) -> list[dict]:
    """Pop every queued message from a realtime session's outbox."""
    messages = []
    while not session.outbox.empty():
        messages.append(session.outbox.get_nowait())
    return messages


@pytest.fixture()
def drain_outbox():
    return drain
