"""Full reindex: rebuild the anonymized collection from the whole source."""

import logging
import time

from pymongo.collection import Collection

from .catchup import anonymize_into, find_created_between
from .models import Transform
from ...utils.timeutil import EPOCH_START, utcnow

logger = logging.getLogger(__name__)


class FullReindexRunner:
    """
    Destructive rebuild of the target collection.

    Deletes every anonymized document, then anonymizes every customer created
    up to a snapshot time taken when the scan starts. The checkpoint is neither
    read nor written; live sync is not resumed afterwards.

    A failure mid-scan leaves the target partially rebuilt. Re-running the
    reindex starts over from an empty target.
    """

    def __init__(self, source: Collection, target: Collection, transform: Transform):
        self.source = source
        self.target = target
        self.transform = transform

    def run(self) -> int:
        """
        Purge and rebuild the target.

        Returns:
            Number of anonymized records inserted

        Raises:
            PyMongoError: On any store failure
            TransformPreconditionError: On a malformed source record
        """
        start_time = time.time()
        logger.info("Starting full reindex")

        purged = self.target.delete_many({}).deleted_count
        logger.info(
            f"Cleared {purged} anonymized customers",
            extra={"purged": purged}
        )

        snapshot = utcnow()
        cursor = find_created_between(self.source, EPOCH_START, snapshot)
        try:
            count, _ = anonymize_into(cursor, self.target, self.transform, path="reindex")
        finally:
            cursor.close()

        logger.info(
            "Full reindex complete",
            extra={
                "records_processed": count,
                "snapshot": snapshot,
                "duration_seconds": time.time() - start_time
            }
        )
        return count
