"""
SPARQL Gateway - Failure store.
Append-only sink for updates that exhausted redelivery. Each body is written
verbatim to `<ISO-8601 timestamp>.sparql`; nothing here is ever read back or
resubmitted automatically.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

logger = logging.getLogger("sparql_gateway.failures")

__all__ = ["FailureStore"]


class FailureStore:
    def __init__(self, directory: Path | str,
                 clock: Callable[[], datetime] = datetime.now):
        self._dir = Path(directory)
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def persist(self, body: str) -> Path:
        """Write *body* to a new timestamp-named record and return its path."""
        stamp = self._clock().isoformat()
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            target = self._dir / f"{stamp}.sparql"
            n = 1
            while target.exists():
                target = self._dir / f"{stamp}-{n}.sparql"
                n += 1
            tmp = target.with_name(f".{target.name}.tmp")
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(target)
        logger.error("Update moved to failure store: %s", target)
        return target

    def records(self) -> list[Path]:
        """Persisted records, oldest name first. For operators and tests."""
        if not self._dir.exists():
            return []
        return sorted(self._dir.glob("*.sparql"))
