from __future__ import annotations

import asyncio

from docsync.core.logging import configure_logging
from docsync.persistence.db import SessionLocal
from docsync.services.sweeper import build_sweeper


async def sweep() -> None:
    configure_logging()
    report = await build_sweeper(session_factory=SessionLocal).run_once()
    for name, value in report.as_dict().items():
        print(f"swept_{name}={value}")


if __name__ == "__main__":
    asyncio.run(sweep())
