#!/usr/bin/env python3
"""Live fleet watcher.

Connects with ``FLEET_*`` environment settings, seeds from the bulk read,
follows the change channel and prints the projected fleet whenever it
changes.  With ``--broadcast LAT LNG`` it also publishes a fixed position
for ``FLEET_SELF_ID`` (handy for checking the round trip through the
channel).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from fleetpulse import (  # noqa: E402
    FleetClient,
    FleetConfig,
    FleetStore,
    ProjectionFilter,
    StaticPositionSource,
    SubscriptionState,
    project,
)

_LOG = logging.getLogger("watch_fleet")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print the live fleet as it changes.")
    parser.add_argument("--route", default=None, help="Only show this route label.")
    parser.add_argument(
        "--include-inactive",
        action="store_true",
        help="Also show vehicles marked inactive.",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the JSON snapshot instead of a table.",
    )
    parser.add_argument(
        "--broadcast",
        nargs=2,
        type=float,
        metavar=("LAT", "LNG"),
        default=None,
        help="Publish this position for FLEET_SELF_ID while running.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _print_table(store: FleetStore, flt: ProjectionFilter) -> None:
    vehicles = project(store, flt)
    stamp = time.strftime("%H:%M:%S")
    print(f"[fleet] {stamp} {len(vehicles)} vehicle(s)")
    for snap in vehicles:
        flag = "" if snap.active else " (inactive)"
        print(
            f"[fleet]   {snap.id:<12} route={snap.route_label:<6} "
            f"lat={snap.latitude:.5f} lng={snap.longitude:.5f} "
            f"crowd={snap.crowd_level.value:<6} stop={snap.last_stop_label or '-'}{flag}"
        )


async def _run(args: argparse.Namespace) -> int:
    config = FleetConfig.from_env()
    flt = ProjectionFilter(route_label=args.route, include_inactive=args.include_inactive)

    async with FleetClient(config) as client:

        def _on_fleet(store: FleetStore) -> None:
            if args.json:
                print(client.snapshot_json(flt))
            else:
                _print_table(store, flt)

        def _on_state(state: SubscriptionState) -> None:
            suffix = " (showing last known fleet)" if client.is_stale else ""
            print(f"[fleet] state={state.value}{suffix}")

        client.add_state_listener(_on_state)
        client.add_listener(_on_fleet)

        if args.broadcast is not None:
            if config.self_id is None:
                print("[fleet] --broadcast needs FLEET_SELF_ID", file=sys.stderr)
                return 2
            lat, lng = args.broadcast
            client.start_broadcasting(StaticPositionSource(lat, lng))

        deadline = time.monotonic() + args.duration if args.duration > 0 else None
        while deadline is None or time.monotonic() < deadline:
            if client.fatal_error is not None:
                print(f"[fleet] Halted: {client.fatal_error}", file=sys.stderr)
                return 3
            await asyncio.sleep(0.5)
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        _LOG.info("Interrupted")
        return 0


if __name__ == "__main__":
    raise SystemExit(_main())
