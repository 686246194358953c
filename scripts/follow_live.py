"""Follow one car's live telemetry and print each completed lap.

Usage:
  python scripts/follow_live.py --car car-1
  python scripts/follow_live.py --car car-1 --backfill 30 --csv laps.csv

Settings (server URLs, units, buffer size) come from ``ECHOOK_*`` variables
or a ``.env`` file.  Ctrl+C stops; ``--csv`` then writes the buffered history.
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from echook_telemetry.config import load_settings
from echook_telemetry.history.client import BackfillError
from echook_telemetry.session import TelemetrySession
from echook_telemetry.telemetry.keys import format_value


def _print_lap(lap) -> None:
    stats = lap.stats
    print(
        f"{lap.lap_number:>4}  "
        f"{format_value('LL_Time', stats.get('LL_Time')):>8}  "
        f"{format_value('LL_V', stats.get('LL_V')):>7}  "
        f"{format_value('LL_I', stats.get('LL_I')):>7}  "
        f"{format_value('LL_Ah', stats.get('LL_Ah')):>7}"
    )


def main() -> None:
    ap = argparse.ArgumentParser(description="Follow live eChook telemetry")
    ap.add_argument("--car", required=True, help="Car id to follow")
    ap.add_argument("--backfill", type=float, default=0, help="Minutes of history to load first")
    ap.add_argument("--csv", type=Path, help="Write buffered history here on exit")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = load_settings()
    session = TelemetrySession(args.car, settings=settings)

    if args.backfill > 0:
        try:
            loaded = session.reset_to_live(minutes=args.backfill)
            print(f"Loaded {loaded} historic points")
        except BackfillError as exc:
            print(f"History unavailable: {exc}")

    print(f"Connecting to {settings.ws_url} for {args.car}. Ctrl+C to stop.\n")
    print(f"{'Lap':>4}  {'Time(s)':>8}  {'V':>7}  {'A':>7}  {'Ah':>7}")
    print("-" * 42)

    printed: set[tuple[int, int]] = set()
    session.connect()
    try:
        while True:
            for race in session.races.values():
                for lap in race.sorted_laps():
                    if (race.id, lap.lap_number) not in printed:
                        printed.add((race.id, lap.lap_number))
                        _print_lap(lap)
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("\nStopped.")
    finally:
        session.disconnect()

    status = session.status()
    print(f"{status['buffer_size']} points buffered, {status['race_count']} race(s), "
          f"{status['dropped_frames']} frame(s) dropped")

    if args.csv:
        text = session.export_csv()
        if text is None:
            print("Nothing to export.")
        else:
            args.csv.write_text(text, encoding="utf-8")
            print(f"Wrote {args.csv}")


if __name__ == "__main__":
    main()
