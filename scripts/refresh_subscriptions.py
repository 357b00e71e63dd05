from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from iapsync.config import get_settings
from iapsync.database import Base, create_db_engine, create_session_factory
from iapsync.domain import Platform, datetime_to_ms
from iapsync.errors import IAPError
from iapsync.google import GoogleProvider
from iapsync.providers import build_currency_converter, build_google_client, get_provider
from iapsync.repository import SqlDatabase
from iapsync.webhook import WebhookSender

from iapsync import models  # noqa: F401

logger = logging.getLogger("iapsync.refresh")


def parse_since(value: str) -> int:
    if value.isdigit():
        return int(value)
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Expected epoch milliseconds or ISO 8601 date") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return datetime_to_ms(moment)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Re-validate subscriptions that may still change and apply Google refunds."
    )
    parser.add_argument(
        "--platform",
        choices=[platform.value for platform in Platform],
        help="Only refresh purchases of this platform.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Refresh at most this many subscription chains (0 means all).",
    )
    parser.add_argument(
        "--voided-since",
        type=parse_since,
        metavar="TIME",
        help="Also sync Google voided purchases since TIME (epoch ms or ISO 8601).",
    )
    parser.add_argument(
        "--no-webhooks",
        action="store_true",
        help="Do not deliver resulting events to the outgoing webhook.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the purchases that would be refreshed.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(name)s %(message)s")

    engine = create_db_engine(settings.database_url)
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
    session = create_session_factory(engine)()
    db = SqlDatabase(session)

    converter = build_currency_converter(settings)
    google_client = build_google_client(settings)
    sender = WebhookSender(
        endpoint=None if args.no_webhooks else settings.webhook_outgoing_endpoint,
        auth_token=settings.webhook_auth_token,
        timeout_seconds=settings.webhook_timeout_seconds,
    )

    summary = {"refreshed": 0, "failed": 0, "events": {}, "voided": 0}
    try:
        purchases = db.get_purchases_to_refresh()
        if args.platform:
            purchases = [item for item in purchases if item.platform == Platform(args.platform)]
        if args.limit > 0:
            purchases = purchases[: args.limit]

        for purchase in purchases:
            receipt = db.get_receipt_by_id(purchase.receipt_id) if purchase.receipt_id else None
            if receipt is None:
                logger.warning("Order %s has no stored receipt, skipped", purchase.order_id)
                summary["failed"] += 1
                continue
            if args.dry_run:
                print(f"{purchase.platform.value} {purchase.order_id} {purchase.product_sku}")
                continue

            provider = get_provider(
                purchase.platform, settings, db, converter=converter, google_client=google_client
            )
            try:
                event = provider.process_token(
                    receipt.token, purchase.product_sku, include_newer=True
                )
            except IAPError as exc:
                logger.warning("Refreshing order %s failed: %s", purchase.order_id, exc)
                summary["failed"] += 1
                continue
            summary["refreshed"] += 1
            summary["events"][event.type.value] = summary["events"].get(event.type.value, 0) + 1
            sender.send(event)

        if args.voided_since is not None and not args.dry_run:
            if google_client is None:
                print("GOOGLE_SERVICE_ACCOUNT_JSON is required for --voided-since", file=sys.stderr)
                return 2
            google = get_provider(
                Platform.ANDROID, settings, db, converter=converter, google_client=google_client
            )
            if not isinstance(google, GoogleProvider):
                raise RuntimeError("Voided purchase sync needs the Google provider")
            for event in google.sync_voided_purchases(args.voided_since):
                summary["voided"] += 1
                sender.send(event)
    finally:
        session.close()

    if not args.dry_run:
        print(json.dumps(summary, ensure_ascii=False, separators=(",", ":")))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
