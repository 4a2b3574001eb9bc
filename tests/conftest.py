"""Pytest configuration and shared fixtures."""

import itertools

import pytest
from fastapi.testclient import TestClient
from app import app, get_ledger
from database import init_db, make_engine, make_session_factory
from ledger import ProductLedger


# Accounts #0-#4 of the local development chain.
@pytest.fixture
def owner():
    return "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


@pytest.fixture
def farmer():
    return "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


@pytest.fixture
def shipper():
    return "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"


@pytest.fixture
def receiver():
    return "0x90F79bf6EB2c4f870365E785982E1f101E93b906"


@pytest.fixture
def stranger():
    return "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"


@pytest.fixture
def clock():
    """Deterministic clock: every call is one second later."""
    ticks = itertools.count(1_700_000_000)
    return lambda: next(ticks)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory, clock, owner, farmer, shipper, receiver):
    """Ledger with one farmer, one shipper and one receiver granted."""
    ledger = ProductLedger.open(session_factory, owner, clock=clock)
    ledger.set_farmer(farmer, True, caller=owner)
    ledger.set_shipper(shipper, True, caller=owner)
    ledger.set_receiver(receiver, True, caller=owner)
    return ledger


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def as_caller():
    """Headers identifying the acting wallet."""
    return lambda address: {"X-Caller-Address": address}
