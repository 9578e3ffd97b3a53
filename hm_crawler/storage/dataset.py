"""Append-only JSON Lines dataset for product records."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class JsonlDataset:
    """Writes one JSON object per line; existing content is never rewritten."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def push(self, items: Iterable[dict[str, Any]]) -> int:
        lines = [json.dumps(item, ensure_ascii=False) for item in items]
        if not lines:
            return 0
        async with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write("\n".join(lines) + "\n")
        logger.debug(f"Appended {len(lines)} records to {self.path}")
        return len(lines)

    def read(self) -> list[dict[str, Any]]:
        """All records written so far."""
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
