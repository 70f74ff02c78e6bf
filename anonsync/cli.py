"""
Command line entry point.

    anonsync                  # catch up, then follow the change feed
    anonsync --full-reindex   # rebuild the anonymized collection and exit
"""

import argparse
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from .config.settings import get_settings
from .engine import SyncEngine
from .utils.logging import configure_logging
from .utils.metrics import start_metrics_server

logger = logging.getLogger(__name__)

FULL_REINDEX_FLAG = "--full-reindex"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anonsync",
        description="Continuously anonymize the customers collection"
    )
    parser.add_argument(
        FULL_REINDEX_FLAG,
        dest="full_reindex",
        action="store_true",
        help="Delete all anonymized customers, rebuild them from the source and exit"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the engine. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(settings.log_level, settings.log_format)

    engine = None
    try:
        start_metrics_server(settings.metrics_port)
        engine = SyncEngine.from_settings(settings)

        if args.full_reindex:
            count = engine.run_full_reindex()
            logger.info(f"Full reindex finished, {count} customers anonymized")
            return 0

        engine.run_forever()
        return 0

    except Exception as e:
        logger.exception(f"Error running sync script: {e}")
        return 1

    finally:
        if engine is not None:
            engine.close()


if __name__ == "__main__":
    sys.exit(main())
