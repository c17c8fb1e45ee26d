#!/usr/bin/env python3
"""De-identify a cached clinical record or firewall-check an outbound payload.

Examples::

    python scripts/deidentify_record.py record.json --facility-id FAC-1
    python scripts/deidentify_record.py payload.json --check

Output is JSON on stdout. A firewall block exits with status 2 and prints the
reason and path only.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable, Optional

from priorauth.firewall import PHIDetectedError, assert_no_phi
from priorauth.observability import configure_logging
from priorauth.pipeline import build_case_packet


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build a de-identified packet from a local record, or check a payload for PHI.",
    )
    parser.add_argument("path", help="JSON file to read ('-' for stdin).")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only run the PHI firewall on the file instead of de-identifying it.",
    )
    parser.add_argument("--facility-id", default="", help="Facility identifier to stamp on the packet.")
    parser.add_argument("--service-key", help="Override the service key from the record.")
    parser.add_argument("--payer-key", help="Override the payer key from the record.")
    parser.add_argument("--request-id", help="Select a specific request from the record.")
    parser.add_argument("--coverage-id", help="Select a specific coverage from the record.")
    parser.add_argument(
        "--skip-key",
        action="append",
        default=[],
        help="Root-level key exempt from the firewall (repeatable, --check only).",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level for structured logs.")
    return parser.parse_args(list(argv) if argv is not None else None)


def _load(path: str) -> object:
    if path == "-":
        return json.load(sys.stdin)
    with Path(path).open(encoding="utf-8") as handle:
        return json.load(handle)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    data = _load(args.path)
    try:
        if args.check:
            assert_no_phi(data, skip_keys=args.skip_key)
            print(json.dumps({"ok": True}))
            return 0
        if not isinstance(data, dict):
            print("record must be a JSON object", file=sys.stderr)
            return 1
        packet = build_case_packet(
            args.facility_id,
            data,
            service_key=args.service_key,
            payer_key=args.payer_key,
            request_id=args.request_id,
            coverage_id=args.coverage_id,
        )
    except PHIDetectedError as exc:
        print(json.dumps({"ok": False, "reason": exc.reason, "path": exc.path}))
        return 2
    print(json.dumps(packet.to_payload(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
