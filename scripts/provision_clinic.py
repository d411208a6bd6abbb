from __future__ import annotations

import argparse
import asyncio

from clinicbilling.core.logging import configure_logging
from clinicbilling.persistence.db import SessionLocal
from clinicbilling.services.subscriptions import provision_subscription


async def _provision(clinic_id: str, billing_cycle: str | None, trial_days: int | None) -> None:
    async with SessionLocal() as session:
        subscription = await provision_subscription(
            session,
            clinic_id,
            billing_cycle=billing_cycle,
            trial_days=trial_days,
        )
        print(f"subscription_id={subscription.id}")
        print(f"status={subscription.status}")
        print(f"tier={subscription.tier}")
        print(f"trial_ends_at={subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else ''}")


def main() -> None:
    # Create the TRIALING/CAPTURE record for a new clinic; safe to re-run.
    parser = argparse.ArgumentParser(description="Provision a clinic subscription")
    parser.add_argument("--clinic-id", required=True)
    parser.add_argument("--billing-cycle", default=None, choices=["MONTHLY", "YEARLY"])
    parser.add_argument("--trial-days", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_provision(args.clinic_id, args.billing_cycle, args.trial_days))


if __name__ == "__main__":
    main()
