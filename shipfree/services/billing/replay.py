"""Operator CLI to inspect and replay dead-lettered webhook events."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from shipfree.config import Settings
from shipfree.services.billing.errors import BillingError
from shipfree.services.billing.processor import (
    BillingService,
    ProcessingStatus,
    build_billing_service,
)

logger = logging.getLogger("shipfree.billing.replay")


@dataclass
class ReplaySummary:
    resolved: list[str] = field(default_factory=list)
    still_failing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and replay dead-lettered billing events.")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="Print unresolved dead letters as JSON.")
    group.add_argument("--id", dest="dead_letter_id", help="Replay a single dead letter by id.")
    group.add_argument("--all", action="store_true", help="Replay every unresolved dead letter.")
    return parser.parse_args(argv)


def list_dead_letters(service: BillingService) -> list[dict]:
    return [
        {
            "id": entry.id,
            "provider": entry.provider,
            "event_id": entry.event_id,
            "reason": entry.reason,
            "error": entry.error,
            "attempts": entry.attempts,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in service.repository.list_dead_letters()
    ]


def replay_dead_letters(
    service: BillingService,
    *,
    dead_letter_id: str | None = None,
    replay_all: bool = False,
) -> ReplaySummary:
    if dead_letter_id:
        targets = [dead_letter_id]
    elif replay_all:
        targets = [entry.id for entry in service.repository.list_dead_letters()]
    else:
        raise ValueError("Either dead_letter_id or replay_all is required.")

    summary = ReplaySummary()
    for target in targets:
        try:
            outcome = service.processor.replay_dead_letter(target)
        except (BillingError, LookupError) as exc:
            logger.error("Replay of %s failed: %s", target, exc)
            summary.errors.append(f"{target}:{getattr(exc, 'code', 'E_NOT_FOUND')}")
            continue
        if outcome.status is ProcessingStatus.DEAD_LETTERED:
            summary.still_failing.append(target)
        else:
            summary.resolved.append(target)
    return summary


def main(argv: Sequence[str] | None = None, *, service: BillingService | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    args = parse_args(argv)
    owns_service = service is None
    service = service or build_billing_service(Settings())
    try:
        if args.list:
            print(json.dumps(list_dead_letters(service), indent=2))
            return 0
        summary = replay_dead_letters(
            service, dead_letter_id=args.dead_letter_id, replay_all=args.all
        )
    finally:
        if owns_service:
            service.close()

    logger.info(
        "Replay summary resolved=%s still_failing=%s errors=%s",
        len(summary.resolved),
        len(summary.still_failing),
        len(summary.errors),
    )
    return 1 if summary.still_failing or summary.errors else 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
