#!/usr/bin/env python3
"""Dump everything pygp51 can fetch from a GP51 account.

Logs in, lists the monitored devices and queries their last known
positions, printing parsed model fields next to the raw vendor JSON so
unparsed fields are easy to spot.

Usage
-----
Install the package (``pip install -e .``), then::

    export GP51_USERNAME="fleet-admin"
    export GP51_PASSWORD="your-password"
    python scripts/dump_all.py

Options::

    --device ID     Only query positions for this device (repeatable)
    --sync          Also run a device sync into the configured store
    --json          Output as machine-readable JSON
    --output FILE   Write JSON output to FILE instead of stdout
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pygp51 import Gp51Client, Gp51Config
from pygp51.exceptions import Gp51Error


def _section(title: str) -> str:
    return f"\n{'=' * 60}\n  {title}\n{'=' * 60}"


def _model_lines(label: str, fields: dict[str, Any], out: list[str]) -> None:
    out.append(f"\n  {label}")
    for key, value in fields.items():
        if key == "raw":
            continue
        out.append(f"    {key:<24}: {value}")


async def dump(args: argparse.Namespace) -> dict[str, Any]:
    config = Gp51Config.from_env()
    result: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "base_url": config.base_url,
        "devices": [],
        "positions": [],
    }
    out: list[str] = [_section("pygp51 dump_all"), f"  time      : {result['timestamp']}"]

    async with Gp51Client(config) as client:
        session = await client.ensure_session()
        out.append(f"  username  : {session.username}")
        out.append(f"  expires   : {session.expires_at.isoformat()}")

        devices = await client.get_devices()
        out.append(_section(f"DEVICES ({len(devices)})"))
        for device in devices:
            fields = device.model_dump(mode="json")
            _model_lines(f"Device {device.device_id}", fields, out)
            result["devices"].append({"info": fields, "raw": device.raw})

        target_ids = args.device or [d.device_id for d in devices]
        positions = await client.get_last_positions(target_ids) if target_ids else []
        out.append(_section(f"LAST POSITIONS ({len(positions)})"))
        for position in positions:
            fields = position.model_dump(mode="json")
            _model_lines(f"Position {position.device_id}", fields, out)
            result["positions"].append({"info": fields, "raw": position.raw})

        if args.sync:
            report = await client.sync_devices()
            out.append(_section("SYNC"))
            out.append(f"  fetched={report.fetched} upserted={report.upserted} pruned={report.pruned}")
            result["sync"] = {
                "fetched": report.fetched,
                "upserted": report.upserted,
                "pruned": report.pruned,
                "pruned_ids": list(report.pruned_ids),
            }

    if not args.json_mode:
        print("\n".join(out))
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Dump all GP51 data pygp51 can fetch")
    parser.add_argument("--device", action="append", help="Only query this device id (repeatable)")
    parser.add_argument("--sync", action="store_true", help="Run a device sync into the configured store")
    parser.add_argument("--json", dest="json_mode", action="store_true", help="Output as JSON")
    parser.add_argument("--output", help="Write JSON output to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        result = asyncio.run(dump(args))
    except Gp51Error as exc:
        print(f"GP51 error: {exc}", file=sys.stderr)
        return 1

    payload = json.dumps(result, indent=2, default=str, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        print(f"JSON written to {args.output}", file=sys.stderr)
    elif args.json_mode:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
