#!/usr/bin/env python3
"""
Customer Generator - Continuously inserts (and optionally updates) customers.

Simulates the upstream producer so the sync engine has something to anonymize.
Every tick inserts a batch of 1-10 Faker-generated customers into the source
collection.
"""

import argparse
import logging
import random
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pymongo
from pymongo.errors import PyMongoError
from faker import Faker

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from anonsync.config.settings import DATABASE_NAME, SOURCE_COLLECTION  # noqa: E402
from anonsync.utils.timeutil import utcnow  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MAX_BATCH = 10


class CustomerGenerator:
    """Generate a continuous stream of customer inserts."""

    def __init__(
        self,
        mongo_uri: str,
        interval_ms: int = 200,
        update_ratio: float = 0.0,
        seed: Optional[int] = None
    ):
        """
        Args:
            mongo_uri: MongoDB connection URI
            interval_ms: Milliseconds between batches
            update_ratio: Chance per tick of also updating an existing customer
            seed: Optional seed for reproducible data
        """
        self.interval = interval_ms / 1000.0
        self.update_ratio = update_ratio
        self.faker = Faker()
        self.random = random.Random(seed)
        if seed is not None:
            self.faker.seed_instance(seed)

        self.client = pymongo.MongoClient(mongo_uri, serverSelectionTimeoutMS=5000)
        self.collection = self.client[DATABASE_NAME][SOURCE_COLLECTION]

        try:
            self.client.admin.command('ping')
            logger.info(f"Connected to MongoDB: {DATABASE_NAME}.{SOURCE_COLLECTION}")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

        self.stats = {'inserts': 0, 'updates': 0, 'errors': 0, 'start_time': None}

    def generate_customer(self) -> Dict[str, Any]:
        """Generate one random customer document."""
        return {
            "firstName": self.faker.first_name(),
            "lastName": self.faker.last_name(),
            "email": self.faker.email(),
            "address": {
                "line1": self.faker.street_address(),
                "line2": self.faker.secondary_address(),
                "postcode": self.faker.postcode(),
                "city": self.faker.city(),
                "state": self.faker.state(),
                "country": self.faker.country(),
            },
            "createdAt": utcnow(),
        }

    def insert_batch(self) -> int:
        """Insert a batch of 1-10 customers."""
        customers: List[Dict[str, Any]] = [
            self.generate_customer() for _ in range(self.random.randint(1, MAX_BATCH))
        ]
        try:
            result = self.collection.insert_many(customers)
        except PyMongoError as e:
            self.stats['errors'] += 1
            logger.error(f"INSERT failed: {e}")
            return 0

        self.stats['inserts'] += len(result.inserted_ids)
        logger.info(f"Inserted {len(result.inserted_ids)} customers")
        return len(result.inserted_ids)

    def update_random_customer(self) -> bool:
        """Change the email of a random existing customer."""
        try:
            sample = list(self.collection.aggregate([{"$sample": {"size": 1}}]))
            if not sample:
                return False
            result = self.collection.update_one(
                {"_id": sample[0]["_id"]},
                {"$set": {"email": self.faker.email()}}
            )
        except PyMongoError as e:
            self.stats['errors'] += 1
            logger.error(f"UPDATE failed: {e}")
            return False

        if result.modified_count:
            self.stats['updates'] += 1
            logger.info(f"Updated customer _id={sample[0]['_id']}")
        return bool(result.modified_count)

    def run_continuous(self, duration_seconds: int = 0):
        """
        Run until the duration elapses (0 = until Ctrl+C).
        """
        self.stats['start_time'] = time.time()
        end_time = time.time() + duration_seconds if duration_seconds > 0 else None
        logger.info(f"Starting customer generator (interval {self.interval * 1000:.0f} ms)")

        try:
            while end_time is None or time.time() < end_time:
                self.insert_batch()
                if self.update_ratio and self.random.random() < self.update_ratio:
                    self.update_random_customer()
                time.sleep(self.interval)

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.print_stats()
            self.client.close()

    def print_stats(self):
        duration = time.time() - self.stats['start_time'] if self.stats['start_time'] else 0
        logger.info("=" * 60)
        logger.info(f"Duration: {duration:.1f}s")
        logger.info(f"Inserts: {self.stats['inserts']}")
        logger.info(f"Updates: {self.stats['updates']}")
        logger.info(f"Errors: {self.stats['errors']}")
        logger.info("=" * 60)


def main():
    """Main entry point."""
    from anonsync.config.settings import MongoSettings

    parser = argparse.ArgumentParser(description="Synthetic customer producer for MongoDB")
    parser.add_argument(
        "--mongo-uri",
        default=None,
        help="MongoDB connection URI (defaults to DB_URI)"
    )
    parser.add_argument("--interval-ms", type=int, default=200, help="Milliseconds between batches")
    parser.add_argument("--update-ratio", type=float, default=0.0, help="Chance of an update per tick (0-1)")
    parser.add_argument("--duration", type=int, default=0, help="Duration in seconds (0 = infinite)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible data")

    args = parser.parse_args()
    mongo_uri = args.mongo_uri or MongoSettings().uri

    try:
        generator = CustomerGenerator(
            mongo_uri=mongo_uri,
            interval_ms=args.interval_ms,
            update_ratio=args.update_ratio,
            seed=args.seed
        )
    except Exception as e:
        logger.error(f"Error running generator: {e}")
        sys.exit(1)

    generator.run_continuous(duration_seconds=args.duration)


if __name__ == "__main__":
    main()
