#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from app import config  # noqa: E402
from app.services.confirmation_timer import expiration_sweep  # noqa: E402
from app.services.errors import StorageFailureError  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire lapsed quote confirmations and job locks.")
    parser.add_argument("--json", action="store_true", help="Print the sweep result as JSON.")
    args = parser.parse_args()

    try:
        result = expiration_sweep.run()
    except StorageFailureError as exc:
        print(f"Sweep failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.model_dump(), indent=2))
    else:
        print(
            f"Expiration sweep db={config.DB_PATH} quotes={result.expired_quotes} "
            f"appointments={result.expired_appointments} locks={result.released_locks} "
            f"failed={result.failed_quotes} notifications={result.notifications_attempted}"
        )
    # Partial failures are retried by the next scheduled run.
    return 1 if result.failed_quotes else 0


if __name__ == "__main__":
    raise SystemExit(main())
