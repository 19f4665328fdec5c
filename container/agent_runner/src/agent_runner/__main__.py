"""Entry point for `python -m agent_runner`."""

from __future__ import annotations

import asyncio

from agent_runner.main import main

asyncio.run(main())
