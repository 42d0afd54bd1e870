import copy
import uuid
import datetime

import pytest
from google.api_core.exceptions import NotFound as FirestoreNotFound
from firebase_admin import firestore as fb_firestore

from app import create_app
from Mapies.classes import GeocodingResult
from Mapies.plans import limits_for_plan


# -------------------------
# In-memory Firestore
# -------------------------
_last_timestamp = [datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)]


def _now():
    # strictly increasing, so ordering by server timestamps is deterministic
    now = max(datetime.datetime.now(datetime.timezone.utc),
              _last_timestamp[0] + datetime.timedelta(microseconds=1))
    _last_timestamp[0] = now
    return now


def _get_path(data, dotted):
    value = data
    for part in dotted.split('.'):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _resolve(value, current=None):
    if value is fb_firestore.SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, fb_firestore.ArrayUnion):
        existing = list(current or [])
        return existing + [v for v in value.values if v not in existing]
    if isinstance(value, fb_firestore.ArrayRemove):
        return [v for v in (current or []) if v not in value.values]
    if isinstance(value, fb_firestore.Increment):
        return (current or 0) + value.value
    if isinstance(value, dict):
        base = current if isinstance(current, dict) else {}
        return {k: _resolve(v, base.get(k)) for k, v in value.items() if v is not fb_firestore.DELETE_FIELD}
    if isinstance(value, list):
        return [_resolve(v) for v in value]
    return copy.deepcopy(value)


def _merge(target, data):
    for key, value in data.items():
        if value is fb_firestore.DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = _resolve(value, target.get(key))


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, db, path):
        self._db = db
        self._path = path
        self.id = path[-1]

    @property
    def parent(self):
        return FakeCollection(self._db, self._path[:-1])

    @property
    def path(self):
        return '/'.join(self._path)

    def collection(self, name):
        return FakeCollection(self._db, self._path + (name,))

    def get(self):
        return FakeSnapshot(self, self._db.docs.get(self._path))

    def set(self, data, merge=False):
        if merge and self._path in self._db.docs:
            _merge(self._db.docs[self._path], data)
        else:
            self._db.docs[self._path] = _resolve(data)

    def update(self, data):
        if self._path not in self._db.docs:
            raise FirestoreNotFound(f"No document to update: {self.path}")
        doc = self._db.docs[self._path]
        for key, value in data.items():
            parts = key.split('.')
            target = doc
            for part in parts[:-1]:
                if not isinstance(target.get(part), dict):
                    target[part] = {}
                target = target[part]
            if value is fb_firestore.DELETE_FIELD:
                target.pop(parts[-1], None)
            else:
                target[parts[-1]] = _resolve(value, target.get(parts[-1]))

    def delete(self):
        self._db.docs.pop(self._path, None)


class FakeQuery:
    def __init__(self, db, collection_path=None, group=None, filters=(), order=None, limit=None):
        self._db = db
        self._collection_path = collection_path
        self._group = group
        self._filters = list(filters)
        self._order = order
        self._limit = limit

    def _copy(self, **changes):
        args = dict(collection_path=self._collection_path, group=self._group,
                    filters=self._filters, order=self._order, limit=self._limit)
        args.update(changes)
        return FakeQuery(self._db, **args)

    def where(self, field, op, value):
        return self._copy(filters=self._filters + [(field, op, value)])

    def order_by(self, field, direction='ASCENDING'):
        return self._copy(order=(field, direction))

    def limit(self, count):
        return self._copy(limit=count)

    def _matches(self, data):
        for field, op, value in self._filters:
            actual = _get_path(data, field)
            if op == '==' and actual != value:
                return False
            if op == 'array_contains' and value not in (actual or []):
                return False
            if op == 'in' and actual not in value:
                return False
        return True

    def stream(self):
        results = []
        for path, data in list(self._db.docs.items()):
            if self._collection_path is not None:
                if path[:-1] != self._collection_path:
                    continue
            elif len(path) < 2 or path[-2] != self._group:
                continue
            if self._matches(data):
                results.append((path, data))

        if self._order:
            field, direction = self._order
            results.sort(key=lambda item: (_get_path(item[1], field) is None, _get_path(item[1], field) or 0),
                         reverse=direction == fb_firestore.Query.DESCENDING)
        if self._limit is not None:
            results = results[:self._limit]

        for path, data in results:
            yield FakeSnapshot(FakeDocument(self._db, path), copy.deepcopy(data))

    def get(self):
        return list(self.stream())


class FakeCollection(FakeQuery):
    def __init__(self, db, path):
        super().__init__(db, collection_path=path)
        self._path = path
        self.id = path[-1]

    @property
    def parent(self):
        return FakeDocument(self._db, self._path[:-1]) if len(self._path) > 1 else None

    def document(self, doc_id=None):
        return FakeDocument(self._db, self._path + (doc_id or uuid.uuid4().hex[:20],))

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return _now(), ref


# Firestore rejects larger batches
MAX_BATCH_WRITES = 500


class FakeBatch:
    def __init__(self, db):
        self._db = db
        self._ops = []

    def set(self, ref, data, merge=False):
        self._ops.append(lambda: ref.set(data, merge=merge))

    def update(self, ref, data):
        self._ops.append(lambda: ref.update(data))

    def delete(self, ref):
        self._ops.append(ref.delete)

    def commit(self):
        if len(self._ops) > MAX_BATCH_WRITES:
            raise ValueError(f"batch has {len(self._ops)} writes (max {MAX_BATCH_WRITES})")
        self._db.commits.append(len(self._ops))
        for op in self._ops:
            op()
        self._ops = []


class FakeFirestore:
    def __init__(self):
        self.docs = {}
        self.commits = []

    def collection(self, name):
        return FakeCollection(self, (name,))

    def collection_group(self, name):
        return FakeQuery(self, group=name)

    def batch(self):
        return FakeBatch(self)

    # test helper
    def data(self, path):
        return copy.deepcopy(self.docs.get(tuple(path.split('/'))))


class FakeGeocoder:
    """Answers from a dict of address -> (lat, lng); anything else fails."""

    def __init__(self, known=None):
        self.known = dict(known or {})
        self.calls = []

    def geocode_address(self, address):
        self.calls.append(address)
        if address in self.known:
            lat, lng = self.known[address]
            return GeocodingResult(lat, lng, True, provider='nominatim')
        return GeocodingResult.failure('Both geocoding services failed')


# -------------------------
# Fixtures
# -------------------------
PRICE_IDS = {
    'freemium': '',
    'starter': 'price_starter',
    'professional': 'price_professional',
    'enterprise': 'price_enterprise',
    'premium': 'price_legacy_premium',
    'pro': 'price_legacy_pro',
}


@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def seed_user(db):
    def seed(uid, plan='starter', email=None, **extra):
        data = {
            'email': email or f'{uid}@example.com',
            'subscription': {'plan': plan, 'status': 'active'},
            'limits': limits_for_plan(plan),
        }
        data.update(extra)
        db.collection('users').document(uid).set(data)
        return uid
    return seed


@pytest.fixture
def seed_map(db):
    def seed(uid, map_id='map-1', name='Shops', **extra):
        data = {
            'name': name,
            'description': '',
            'userId': uid,
            'settings': {},
            'sharing': {'isShared': False, 'sharedWith': [], 'permissions': {}},
            'sharedWithEmails': [],
            'stats': {'markerCount': 0},
        }
        data.update(extra)
        db.collection('users').document(uid).collection('maps').document(map_id).set(data)
        db.collection('publicMaps').document(map_id).set({'id': map_id, 'name': name, 'userId': uid})
        return map_id
    return seed


@pytest.fixture
def app(db, geocoder):
    app = create_app(db=db, config={
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'CSV_PROCESS_ASYNC': False,
        'STRIPE_SECRET_KEY': 'sk_test_123',
        'STRIPE_WEBHOOK_SECRET': 'whsec_test_secret',
        'STRIPE_PRICE_IDS': PRICE_IDS,
        'ADMIN_TOKEN': 'admin-secret',
    })
    app.csv_service.geocoder = geocoder
    app.csv_service.sleep = lambda seconds: None
    app.billing.sleep = lambda seconds: None
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def log_in(uid='owner-1', email='owner@example.com'):
        with client.session_transaction() as sess:
            sess['uid'] = uid
            sess['email'] = email
        return client
    return log_in
