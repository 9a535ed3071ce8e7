"""Command-line entry point.

    python -m entitlement_sync serve [--host ...] [--port ...]
    python -m entitlement_sync repair --uids=u1,u2 [--uids-file=path] [--allow-downgrade]
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from typing import Iterable, Optional

import uvicorn

from entitlement_sync import __version__


def _parse_uids(direct: Optional[str], uids_file: Optional[str]) -> list[str]:
    """Unique user IDs from a comma list and a whitespace-separated file, in order."""
    uids: list[str] = []
    if direct:
        uids.extend(uid.strip() for uid in direct.split(","))
    if uids_file:
        with open(uids_file, encoding="utf-8") as f:
            uids.extend(f.read().split())
    return list(dict.fromkeys(uid for uid in uids if uid))


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/settings.yaml"),
        help="Path to settings.yaml (default: config/settings.yaml)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entitlement-sync",
        description="Premium entitlement reconciliation for Google Play Billing",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    _add_common_arguments(serve)
    serve.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    serve.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development (default: false)",
    )

    repair = subparsers.add_parser(
        "repair", help="Re-verify stored purchase tokens for a list of users"
    )
    _add_common_arguments(repair)
    repair.add_argument("--uids", help="Comma-separated user IDs")
    repair.add_argument("--uids-file", help="File with whitespace-separated user IDs")
    repair.add_argument(
        "--allow-downgrade",
        action="store_true",
        help="Allow clearing premium when verification says access has ended",
    )
    return parser


def _serve(args: argparse.Namespace) -> int:
    if args.log_format == "console":
        print("=" * 60)
        print(f"Entitlement Sync v{__version__}")
        print("=" * 60)
        print(f"Host: {args.host}")
        print(f"Port: {args.port}")
        print(f"Log Level: {args.log_level}")
        print(f"Config: {args.config}")
        print("=" * 60)

    try:
        uvicorn.run(
            "entitlement_sync.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware logs requests
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
    except Exception as e:
        print(f"Failed to start service: {e}", file=sys.stderr)
        return 1
    return 0


async def run_repair(
    uids: Iterable[str], allow_downgrade: bool, orchestrator, store
) -> dict[str, int]:
    """Re-run the orchestrator for each user from its stored token.

    Users without a record, or without a stored token and no
    ``allow_downgrade``, are skipped. Prints one JSON line per user.
    """
    from entitlement_sync.models.sync import SyncStatus

    counts = {"repaired": 0, "skipped": 0, "failed": 0}
    for user_id in uids:
        snapshot = await store.read(user_id)
        record = snapshot.record
        line = {
            "action": "repair",
            "uidSuffix": user_id[-6:],
            "beforeIsPremium": snapshot.is_premium,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if record is None or record.product_id is None:
            counts["skipped"] += 1
            print(json.dumps({**line, "status": "skipped-no-record"}))
            continue
        if record.purchase_token is None and not allow_downgrade:
            counts["skipped"] += 1
            print(json.dumps({**line, "status": "skipped-no-token"}))
            continue

        outcome = await orchestrator.sync(
            user_id,
            record.product_id,
            purchase_token=record.purchase_token,
            allow_downgrade=allow_downgrade,
        )
        if outcome.failed:
            counts["failed"] += 1
            print(
                json.dumps({**line, "status": "failed", "errorKind": outcome.error.kind}),
                file=sys.stderr,
            )
            continue

        if outcome.status == SyncStatus.SYNCED:
            counts["repaired"] += 1
        else:
            counts["skipped"] += 1
        print(
            json.dumps(
                {
                    **line,
                    "status": outcome.status.value,
                    "verificationStatus": outcome.verification_status,
                    "afterIsPremium": outcome.is_premium,
                }
            )
        )
    return counts


async def _repair_async(uids: list[str], allow_downgrade: bool) -> dict[str, int]:
    from entitlement_sync.config import get_config
    from entitlement_sync.repositories.entitlement_store import get_entitlement_store
    from entitlement_sync.repositories.firestore_store import FirestoreEntitlementStore
    from entitlement_sync.services.billing_client import get_billing_client
    from entitlement_sync.services.firebase import get_firebase_context, reset_firebase_context
    from entitlement_sync.services.sync_orchestrator import build_sync_orchestrator

    config = get_config()
    try:
        if config.store.backend == "firestore":
            firebase = get_firebase_context()
            firebase.initialize()
            store = FirestoreEntitlementStore(firebase.firestore(), config.store.collection)
        else:
            store = get_entitlement_store()

        orchestrator = build_sync_orchestrator(store=store, config=config)
        try:
            return await run_repair(uids, allow_downgrade, orchestrator, store)
        finally:
            await get_billing_client().aclose()
    finally:
        reset_firebase_context()


def _repair(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    from entitlement_sync.logging_config import configure_logging

    try:
        uids = _parse_uids(args.uids, args.uids_file)
    except OSError as e:
        parser.error(f"cannot read --uids-file: {e}")
    if not uids:
        parser.error("missing user ids; pass --uids=<uid1,uid2> or --uids-file=<path>")

    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")
    counts = asyncio.run(_repair_async(uids, args.allow_downgrade))
    print(
        f"Repair completed. repaired={counts['repaired']} "
        f"skipped={counts['skipped']} failed={counts['failed']}"
    )
    return 1 if counts["failed"] else 0


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["serve"])

    # Read by the application and its configuration loader
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.command == "repair":
        sys.exit(_repair(args, parser))
    sys.exit(_serve(args))


if __name__ == "__main__":
    main()
