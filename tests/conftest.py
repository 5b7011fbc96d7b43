"""Shared fixtures for database and funnel tests.

Provides a fresh temp-file SQLite DatabaseManager (seeded with the default
statuses) for each test, a frozen clock, and an in-memory booking system.
"""
import os
import shutil
import tempfile
from datetime import datetime

import pytest

from database import DatabaseManager
from funnel.booking import BookingSystemClient, ClientMetrics
from funnel.errors import UpstreamUnavailable
from funnel.ingestor import EventIngestor
from funnel.service import ClientService

NOW = datetime(2024, 5, 10, 12, 0, 0)


class FrozenClock:
    """Callable clock returning a fixed, adjustable naive UTC datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeBookingClient(BookingSystemClient):
    """In-memory booking system with call tracking and an outage switch."""

    def __init__(self):
        self.metrics = {}
        self.records = {}
        self.unavailable = False
        self.metric_calls = []
        self.record_calls = []

    def get_client_metrics(self, external_id):
        self.metric_calls.append(external_id)
        if self.unavailable:
            raise UpstreamUnavailable("booking system is down")
        return self.metrics.get(external_id, ClientMetrics())

    def get_client_records(self, external_id):
        self.record_calls.append(external_id)
        if self.unavailable:
            raise UpstreamUnavailable("booking system is down")
        return self.records.get(external_id, [])


@pytest.fixture
def temp_db():
    """Yield a fresh, seeded DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="funnel-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()
    manager.seed_defaults()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    """Frozen clock at NOW."""
    return FrozenClock(NOW)


@pytest.fixture
def booking_client():
    return FakeBookingClient()


@pytest.fixture
def service(temp_db, clock):
    """ClientService without a booking system (no metrics backfill)."""
    return ClientService(temp_db, clock=clock)


@pytest.fixture
def synced_service(temp_db, clock, booking_client):
    """ClientService wired to the fake booking system."""
    return ClientService(temp_db, booking_client=booking_client, clock=clock)


@pytest.fixture
def ingestor(temp_db, service, clock):
    return EventIngestor(temp_db, service=service, clock=clock)
