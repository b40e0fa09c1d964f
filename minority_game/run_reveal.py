"""Run one reveal pass from the command line, outside the HTTP cron."""

import argparse
import json
import logging
import sys

from .config import ConfigurationError, Settings
from .coordinator import build_coordinator
from .database import SessionLocal, engine
from .models import Base

log = logging.getLogger("minority_game.run_reveal")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reveal time-locked votes whose voting window has closed.")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        try:
            coordinator = build_coordinator(Settings.from_env(), db)
        except (ConfigurationError, ValueError) as e:
            # ValueError: ADMIN_SECRET_KEY is not a decodable key
            log.error("Job failed: configuration error: %s", e)
            return 2
        report = coordinator.run()
    finally:
        db.close()

    print(json.dumps(report.model_dump(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
