from __future__ import annotations

import argparse
import asyncio
import json

from clinicbilling.core.logging import configure_logging
from clinicbilling.services.sweep import run_lifecycle_sweep_cycle, run_lifecycle_sweep_loop


def main() -> None:
    # One-shot sweep for cron hosts; --loop runs it continuously without arq.
    parser = argparse.ArgumentParser(description="Advance due subscriptions through the lifecycle")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--loop", action="store_true")
    args = parser.parse_args()
    configure_logging()
    if args.loop:
        asyncio.run(run_lifecycle_sweep_loop())
        return
    stats = asyncio.run(run_lifecycle_sweep_cycle(limit=args.limit))
    print(json.dumps(stats, sort_keys=True))


if __name__ == "__main__":
    main()
