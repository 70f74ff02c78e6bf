import logging
from dataclasses import dataclass

import pymongo
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from ..config.settings import (
    MongoSettings,
    DATABASE_NAME,
    SOURCE_COLLECTION,
    TARGET_COLLECTION,
    CHECKPOINT_COLLECTION,
)
from ..connectors.cdc.errors import StoreConnectionError

logger = logging.getLogger(__name__)


def _get_client(settings: MongoSettings) -> pymongo.MongoClient:
    """Create a MongoClient from settings. Caller is responsible for closing it.

    Looking up `pymongo.MongoClient` at call time allows tests to monkeypatch it
    (e.g., with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(
        settings.uri,
        connectTimeoutMS=settings.connect_timeout * 1000,
        serverSelectionTimeoutMS=settings.server_selection_timeout * 1000,
        tz_aware=False,
    )


def connect(settings: MongoSettings) -> pymongo.MongoClient:
    """Connect and verify the server answers a ping.

    Raises:
        StoreConnectionError: If the server cannot be reached
    """
    client = _get_client(settings)
    try:
        client.admin.command('ping')
    except PyMongoError as e:
        client.close()
        logger.error(f"Error connecting to MongoDB: {e}")
        raise StoreConnectionError(f"MongoDB unreachable: {e}") from e

    logger.info("Connected to MongoDB", extra={"database": DATABASE_NAME})
    return client


@dataclass
class SyncCollections:
    """The fixed source/target/checkpoint collection triple."""
    source: Collection
    target: Collection
    checkpoint: Collection

    @classmethod
    def from_database(cls, db: Database) -> "SyncCollections":
        return cls(
            source=db[SOURCE_COLLECTION],
            target=db[TARGET_COLLECTION],
            checkpoint=db[CHECKPOINT_COLLECTION],
        )

    @classmethod
    def from_client(cls, client: pymongo.MongoClient) -> "SyncCollections":
        return cls.from_database(client[DATABASE_NAME])
