"""Run billing background sweeps manually.

Usage:
    cd backend
    python -m scripts.run_billing_tasks
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from researchhub.core.logging import setup_logging
from researchhub.modules.billing.tasks import run_all_billing_sweeps


async def main():
    """Run every billing sweep once."""
    setup_logging(level="INFO", json_format=False)

    print("\n" + "=" * 60)
    print("Running Billing Background Sweeps")
    print("=" * 60)

    results = await run_all_billing_sweeps()

    print("\nResults:")
    for sweep, stats in results.items():
        summary = ", ".join(f"{key}={value}" for key, value in stats.items())
        print(f"  {sweep}: {summary}")


if __name__ == "__main__":
    asyncio.run(main())
