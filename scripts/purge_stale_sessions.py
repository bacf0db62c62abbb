#!/usr/bin/env python3
"""Delete party quiz sessions that have been idle for too long."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Purge idle Party Quiz sessions and everything attached to them."
    )
    parser.add_argument(
        "--max-age-hours",
        type=float,
        default=12.0,
        help="Delete sessions whose last activity is older than this (default: 12).",
    )
    args = parser.parse_args()

    load_dotenv()

    from app import load_config_from_env  # Imported after env setup.
    from change_feed import ChangeFeed
    from party_quiz import PartyQuizError, PartyQuizService

    config = load_config_from_env()
    service = PartyQuizService(
        db_path=config.db_path,
        ai_worker=None,
        change_feed=ChangeFeed(db_path=config.db_path),
    )

    try:
        deleted = service.purge_stale_sessions(int(args.max_age_hours * 3600))
    except PartyQuizError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}, indent=2))
        return 2

    print(
        json.dumps(
            {
                "ok": True,
                "deleted_sessions": deleted,
                "db_path": config.db_path,
                "max_age_hours": args.max_age_hours,
            },
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
