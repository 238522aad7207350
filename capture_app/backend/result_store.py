"""Transient store holding the latest analysis for the results view."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

RESULT_KEY = "analysisResult"
TIMESTAMP_KEY = "analysisTimestamp"


class ResultStore:
    """Best-effort key/value files under a directory. A missing directory disables the store."""

    def __init__(self, directory: Optional[Path]) -> None:
        self.directory = Path(directory).expanduser() if directory else None

    @property
    def available(self) -> bool:
        return self.directory is not None

    async def save(self, result: Dict[str, Any], timestamp: str) -> bool:
        """Write result and timestamp; failures are logged and reported as False."""
        if self.directory is None:
            logger.info("Result store not configured; skipping persist")
            return False

        directory = self.directory

        def _write_files() -> None:
            directory.mkdir(parents=True, exist_ok=True)
            with open(directory / f"{RESULT_KEY}.json", "w", encoding="utf-8") as f:
                json.dump(result, f)
            with open(directory / f"{TIMESTAMP_KEY}.json", "w", encoding="utf-8") as f:
                json.dump(timestamp, f)

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _write_files)
        except Exception:
            logger.exception("Failed to persist analysis result")
            return False
        logger.info("Saved analysis result to %s", directory)
        return True

    async def load(self) -> Optional[Dict[str, Any]]:
        """Return `{analysisResult, analysisTimestamp}` or None when nothing is stored."""
        if self.directory is None:
            return None

        directory = self.directory

        def _read_files() -> Optional[Dict[str, Any]]:
            result_path = directory / f"{RESULT_KEY}.json"
            if not result_path.exists():
                return None
            with open(result_path, encoding="utf-8") as f:
                result = json.load(f)
            timestamp = None
            timestamp_path = directory / f"{TIMESTAMP_KEY}.json"
            if timestamp_path.exists():
                with open(timestamp_path, encoding="utf-8") as f:
                    timestamp = json.load(f)
            return {RESULT_KEY: result, TIMESTAMP_KEY: timestamp}

        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, _read_files)
        except Exception:
            logger.exception("Failed to read stored analysis result")
            return None


__all__ = ["ResultStore", "RESULT_KEY", "TIMESTAMP_KEY"]
