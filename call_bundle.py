"""Convenience runner that sends mixed-priority eth_callBundle traffic to a local node."""

import asyncio
import random
from pathlib import Path

from bundle_load_core import BundleLoadGenerator, LoadTestConfig, load_fixtures, setup_logging


async def main() -> None:
    config = LoadTestConfig(
        url="http://localhost:8080",
        fixtures_path="transactions.json",
        workers=10,
        high_priority_probability=0.5,
        duration=60,
        summary_interval=10,
    )

    setup_logging("INFO")
    fixtures = load_fixtures(Path(config.fixtures_path))
    generator = BundleLoadGenerator(config, fixtures, rng=random.Random())
    await generator.run()


if __name__ == "__main__":
    asyncio.run(main())
