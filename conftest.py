# conftest.py
"""
Shared fixtures: an in-memory Firestore double, a recording event bus and a
fake Firebase Auth provider.

The Firestore double implements the slice of the client API the services use
(collection / document / add / where(filter=...) / order_by / limit / get,
and get / set / update / create / delete on documents). It applies the real
`google.cloud.firestore` transforms and raises the real api_core exceptions,
so service code runs unchanged against it.
"""
import copy
import datetime as _dt
import itertools
import threading
import uuid

import pytest
from google.api_core.exceptions import AlreadyExists, FailedPrecondition, NotFound, ServiceUnavailable
from google.cloud import firestore

from portal.services import events
from portal.services.identity import AuthError
from portal.services.session import GOOGLE_PROVIDER, PASSWORD_PROVIDER, Identity


# ───────────────────────── Firestore double ─────────────────────────
def _now():
    return _dt.datetime.now(_dt.timezone.utc)


def _apply(current, value):
    if value is firestore.SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, firestore.Increment):
        return (current or 0) + value.value
    if isinstance(value, firestore.ArrayUnion):
        out = list(current or [])
        out += [v for v in value.values if v not in out]
        return out
    if isinstance(value, firestore.ArrayRemove):
        return [v for v in (current or []) if v not in value.values]
    return copy.deepcopy(value)


_MISSING = object()

_OPS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "array_contains": lambda a, b: isinstance(a, list) and b in a,
    "in": lambda a, b: a in b,
}


class FakeSnapshot:
    def __init__(self, ref, data):
        self.reference = ref
        self.id = ref.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None

    def get(self, field):
        return (self._data or {}).get(field)


class FakeDocRef:
    def __init__(self, db, col, doc_id):
        self._db = db
        self._col = col
        self.id = doc_id

    @property
    def _key(self):
        return (self._col, self.id)

    def get(self, **_kw):
        self._db._maybe_fail("get", self._col, self.id)
        with self._db._lock:
            data = self._db._docs.get(self._key)
            return FakeSnapshot(self, copy.deepcopy(data) if data is not None else None)

    def _merge(self, base, data):
        out = dict(base or {})
        for k, v in data.items():
            out[k] = _apply(out.get(k), v)
        return out

    def set(self, data, merge=False):
        self._db._maybe_fail("write", self._col, self.id)
        with self._db._lock:
            base = self._db._docs.get(self._key) if merge else None
            self._db._docs[self._key] = self._merge(base, data)

    def create(self, data):
        self._db._maybe_fail("write", self._col, self.id)
        with self._db._lock:
            if self._key in self._db._docs:
                raise AlreadyExists(f"Document already exists: {self._col}/{self.id}")
            self._db._docs[self._key] = self._merge(None, data)

    def update(self, data):
        self._db._maybe_fail("write", self._col, self.id)
        with self._db._lock:
            if self._key not in self._db._docs:
                raise NotFound(f"No document to update: {self._col}/{self.id}")
            self._db._docs[self._key] = self._merge(self._db._docs[self._key], data)

    def delete(self):
        with self._db._lock:
            self._db._docs.pop(self._key, None)


class FakeQuery:
    def __init__(self, db, col, filters=(), order=None, limit_n=None):
        self._db = db
        self._col = col
        self._filters = tuple(filters)
        self._order = order
        self._limit = limit_n

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        f = (filter.field_path, filter.op_string, filter.value) if filter is not None else (field_path, op_string, value)
        return FakeQuery(self._db, self._col, self._filters + (f,), self._order, self._limit)

    def order_by(self, field, direction=firestore.Query.ASCENDING):
        return FakeQuery(self._db, self._col, self._filters, (field, direction), self._limit)

    def limit(self, n):
        return FakeQuery(self._db, self._col, self._filters, self._order, n)

    def _needs_composite_index(self):
        # equality-only queries are served by merging single-field indexes
        fields = {f[0] for f in self._filters}
        ranged = any(f[1] != "==" for f in self._filters)
        if self._order is not None:
            fields.add(self._order[0])
            ranged = True
        return ranged and len(fields) > 1

    def get(self, **_kw):
        self._db._maybe_fail("query", self._col)
        if self._db.missing_indexes and self._needs_composite_index():
            raise FailedPrecondition("The query requires an index.")
        with self._db._lock:
            rows = [(k[1], copy.deepcopy(v)) for k, v in self._db._docs.items() if k[0] == self._col]
        for field, op, value in self._filters:
            rows = [
                (i, d) for i, d in rows
                if d.get(field, _MISSING) is not _MISSING and _OPS[op](d[field], value)
            ]
        if self._order is not None:
            field, direction = self._order
            rows = [(i, d) for i, d in rows if field in d]
            rows.sort(key=lambda r: r[1][field], reverse=direction == firestore.Query.DESCENDING)
        if self._limit is not None:
            rows = rows[: self._limit]
        return [FakeSnapshot(FakeDocRef(self._db, self._col, i), d) for i, d in rows]

    def stream(self, **kw):
        return iter(self.get(**kw))


class FakeCollection(FakeQuery):
    def __init__(self, db, name):
        super().__init__(db, name)

    def document(self, doc_id=None):
        return FakeDocRef(self._db, self._col, doc_id or uuid.uuid4().hex[:20])

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return _now(), ref


class FakeFirestore:
    """
    `missing_indexes=True` makes multi-field queries fail the way Firestore
    does while a composite index is still building. `fail` is a set of
    operation kinds ("get", "query", "write") that raise. `fail_next` makes a
    single matching operation raise once.
    """

    def __init__(self, missing_indexes=False):
        self._docs = {}
        self._lock = threading.RLock()
        self.missing_indexes = missing_indexes
        self.fail = set()
        self._fail_next = []

    def fail_next(self, kind, col=None, doc_id=None):
        self._fail_next.append((kind, col, doc_id))

    def _maybe_fail(self, kind, col=None, doc_id=None):
        if kind in self.fail:
            raise ConnectionError(f"simulated {kind} failure")
        with self._lock:
            for i, (k, c, d) in enumerate(self._fail_next):
                if k == kind and c in (None, col) and d in (None, doc_id):
                    del self._fail_next[i]
                    raise ServiceUnavailable(f"simulated {kind} failure on {col}/{doc_id or ''}")

    def collection(self, name):
        return FakeCollection(self, name)

    # test helpers
    def docs(self, col):
        with self._lock:
            return {k[1]: copy.deepcopy(v) for k, v in self._docs.items() if k[0] == col}

    def put(self, col, doc_id, data):
        with self._lock:
            self._docs[(col, doc_id)] = copy.deepcopy(data)


class FakeBlob:
    def __init__(self, bucket, path):
        self.bucket = bucket
        self.name = path

    def upload_from_string(self, data, content_type=None):
        self.bucket.uploads[self.name] = (data, content_type)

    @property
    def public_url(self):
        return f"https://storage.googleapis.com/{self.bucket.name}/{self.name}"


class FakeBucket:
    def __init__(self, name="test-bucket"):
        self.name = name
        self.uploads = {}

    def blob(self, path):
        return FakeBlob(self, path)


# ───────────────────────── Events ─────────────────────────
class RecordingBus(events.EventBus):
    """Inline bus that also keeps every emitted event."""

    def __init__(self):
        super().__init__()
        self.emitted = []

    def emit(self, kind, **data):
        event = super().emit(kind, **data)
        self.emitted.append(event)
        return event

    def of(self, kind):
        return [e for e in self.emitted if e.kind == kind]


# ───────────────────────── Firebase Auth double ─────────────────────────
class FakeAuthProvider:
    def __init__(self):
        self._ids = itertools.count(1)
        self.users = {}         # uid -> Identity
        self.tokens = {}        # token -> uid
        self.links = []

    def add_user(self, email, verified=False, provider=PASSWORD_PROVIDER, uid=None):
        uid = uid or f"uid{next(self._ids):04d}abcdef"
        provider_ids = (GOOGLE_PROVIDER,) if provider == GOOGLE_PROVIDER else ()
        self.users[uid] = Identity(id=uid, email=email.lower(), email_verified=verified,
                                   provider=provider, provider_ids=provider_ids)
        return self.users[uid]

    def verify_email(self, uid):
        ident = self.users[uid]
        self.users[uid] = Identity(id=uid, email=ident.email, email_verified=True,
                                   provider=ident.provider, provider_ids=ident.provider_ids)

    def token_for(self, uid):
        token = f"tok-{uid}-{len(self.tokens)}"
        self.tokens[token] = uid
        return token

    def verify_id_token(self, id_token):
        uid = self.tokens.get(id_token)
        if uid is None:
            raise AuthError("auth/invalid-credential")
        return self.users[uid]

    def create_user(self, email, password, display_name=None):
        if any(u.email == email.lower() for u in self.users.values()):
            raise AuthError("auth/email-already-in-use")
        if len(password) < 6:
            raise AuthError("auth/weak-password")
        return self.add_user(email)

    def generate_verification_link(self, email, continue_url=None):
        link = f"https://auth.example.test/verify?email={email}"
        self.links.append(link)
        return link

    def generate_password_reset_link(self, email, continue_url=None):
        if not any(u.email == email for u in self.users.values()):
            raise AuthError("auth/user-not-found", "No account found with this email address.")
        link = f"https://auth.example.test/reset?email={email}"
        self.links.append(link)
        return link


class RecordingSender:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def __call__(self, params):
        if self.fail:
            raise RuntimeError("resend down")
        self.sent.append(params)
        return {"id": f"email_{len(self.sent)}"}


# ───────────────────────── fixtures ─────────────────────────
@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def provider():
    return FakeAuthProvider()


@pytest.fixture
def bucket():
    return FakeBucket()
