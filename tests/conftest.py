"""
Shared fixtures: an in-memory Mongo (mongomock) per test, the engines wired
around it, and small factories for trucks, collectors, requests and bins.
"""
import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes
from dispatch import DispatchEngine
from main import create_app
from pairing import PairingManager
from performance import PerformanceAggregator
from store import EntityStore

_seq = itertools.count(1)


def request_payload(**overrides):
    payload = {
        "name": "Nimali Perera",
        "email": "nimali@mail.lk",
        "phone": "+94771234567",
        "address": "12 Lotus Ave, Galle",
        "category": "Recyclable",
        "description": "Two bags of plastic bottles",
        "type_price": 200,
        "delivery_fee": 50,
    }
    payload.update(overrides)
    return payload


def truck_payload(**overrides):
    n = next(_seq)
    payload = {"plate_number": f"wp-{n:04d}", "capacity": "5 tons", "capacity_kg": 5000}
    payload.update(overrides)
    return payload


def collector_payload(**overrides):
    n = next(_seq)
    payload = {
        "name": f"Driver {n}",
        "email": f"driver{n}@mail.lk",
        "phone": "0771234567",
        "city": "Galle",
        "driver_license": f"B{n:07d}",
    }
    payload.update(overrides)
    return payload


def bin_payload(**overrides):
    payload = {"location": "Main Street 4", "city": "Matara", "priority": "high"}
    payload.update(overrides)
    return payload


@pytest.fixture
def db():
    database = mongomock.MongoClient()["swm_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def store(db):
    return EntityStore(db)


@pytest.fixture
def performance(store):
    return PerformanceAggregator(store)


@pytest.fixture
def pairing(store):
    return PairingManager(store)


@pytest.fixture
def dispatch(store, performance):
    return DispatchEngine(store, performance)


@pytest.fixture
def client(db):
    app = create_app(database=db, use_transactions=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_truck(pairing):
    def _make(**overrides):
        return pairing.create_truck(truck_payload(**overrides))
    return _make


@pytest.fixture
def make_collector(pairing, make_truck):
    """Registered collector, paired with a fresh truck."""
    def _make(**overrides):
        truck = make_truck()
        return pairing.register_collector(collector_payload(truck_id=str(truck["_id"]), **overrides))
    return _make


@pytest.fixture
def make_unpaired_collector(store):
    """Collector record without a truck, written straight through the store."""
    def _make(**overrides):
        return store.create("collector", collector_payload(**overrides))
    return _make


@pytest.fixture
def make_bin(dispatch):
    def _make(**overrides):
        return dispatch.create_bin(bin_payload(**overrides))
    return _make
