"""Entry point for `python -m eternalstash`.

Usage:
    python -m eternalstash
    uv run python -m eternalstash
"""

from __future__ import annotations

import asyncio

from eternalstash.app import main

asyncio.run(main())
