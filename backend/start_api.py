#!/usr/bin/env python3
"""Run the StorePulse API with uvicorn.

Usage:
    python start_api.py [--host 0.0.0.0] [--port 8000] [--reload]

Requires DATABASE_URL (and optionally REDIS_URL) in the environment or .env.
"""

import argparse
import sys

import uvicorn
from pydantic import ValidationError

from storepulse.deps import get_settings


def main():
    parser = argparse.ArgumentParser(description="StorePulse webhook + analytics API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if not settings.REDIS_URL:
        print("REDIS_URL not set: metrics caching disabled", file=sys.stderr)

    uvicorn.run(
        "storepulse.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        reload_dirs=["storepulse"] if args.reload else None,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
