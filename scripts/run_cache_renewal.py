#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from grantflow.context import build_context_from_env
from grantflow.errors import ApiError
from grantflow.reconciliation import refresh_active, refresh_merged, renew_cache


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile the application cache with the canonical repository")
    parser.add_argument("--owner", required=True, help="repository owner")
    parser.add_argument("--repo", required=True, help="repository name")
    parser.add_argument(
        "--pass",
        dest="which",
        choices=("all", "active", "merged"),
        default="all",
        help="which partition to reconcile",
    )
    parser.add_argument("--verbose", action="store_true", help="log at INFO level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    ctx = build_context_from_env()
    try:
        if args.which == "active":
            result: dict = {"active": refresh_active(ctx, owner=args.owner, repo=args.repo)}
        elif args.which == "merged":
            result = {"merged": refresh_merged(ctx, owner=args.owner, repo=args.repo)}
        else:
            result = renew_cache(ctx, owner=args.owner, repo=args.repo)
    except ApiError as exc:
        print(json.dumps({"code": exc.code, "message": exc.message}, ensure_ascii=True, indent=2), file=sys.stderr)
        return 2
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
