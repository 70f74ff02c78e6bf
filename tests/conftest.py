"""Shared fixtures: in-memory MongoDB collections and customer documents."""

from datetime import datetime, timedelta
from typing import Any, Dict

import mongomock
import pytest

from anonsync.anonymization import CustomerAnonymizer
from anonsync.config.settings import DATABASE_NAME
from anonsync.mongodb.connection import SyncCollections

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def make_customer(index: int, created_at: datetime = None, **overrides) -> Dict[str, Any]:
    """Customer document as the producer writes it."""
    customer = {
        "firstName": f"First{index}",
        "lastName": f"Last{index}",
        "email": f"customer.{index}@example.com",
        "address": {
            "line1": f"{index} Main Street",
            "line2": f"Apt. {index}",
            "postcode": f"{10000 + index}",
            "city": "Springfield",
            "state": "Oregon",
            "country": "United States",
        },
        "createdAt": created_at or BASE_TIME + timedelta(seconds=index),
    }
    customer.update(overrides)
    return customer


def anonymize_customer(document: Dict[str, Any]) -> Dict[str, Any]:
    """Anonymize with the default retention policy."""
    return CustomerAnonymizer()(document)


@pytest.fixture
def mongo_client():
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def collections(mongo_client):
    """Source, target and checkpoint collections of the fixed database."""
    return SyncCollections.from_database(mongo_client[DATABASE_NAME])


@pytest.fixture
def customer_factory():
    return make_customer
