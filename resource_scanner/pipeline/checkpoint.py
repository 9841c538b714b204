"""
Durable record of the domains whose results have been committed.

The file holds ``{"processed": [...], "timestamp": "..."}``.  It only
grows, is mutated from the writer stage alone, and is rewritten
atomically (temp file in the same directory, then ``os.replace``) so a
kill mid-write never leaves a truncated checkpoint behind.
"""

from __future__ import annotations

import json
import os
import pathlib
import tempfile
from datetime import UTC, datetime

import pydantic

from resource_scanner.models import scan
from resource_scanner.utils import errors, logger

log = logger.create_logger("Checkpoint")

DEFAULT_FLUSH_EVERY = 10


class Checkpoint:
    """Set of processed domains backed by a JSON file."""

    def __init__(self, path: str | os.PathLike[str], flush_every: int = DEFAULT_FLUSH_EVERY) -> None:
        self.path = pathlib.Path(path)
        self._flush_every = max(1, flush_every)
        self._processed: set[str] = set()
        # Insertion order, for a stable file layout.
        self._order: list[str] = []
        self._unflushed = 0

    def load(self, resume: bool) -> int:
        """Load previously processed domains when *resume* is set.

        A missing or unreadable file is logged and treated as empty.

        Returns:
            The number of domains loaded.
        """
        if not resume:
            return 0
        if not self.path.exists():
            log.warn("No checkpoint to resume from, starting fresh", {"path": str(self.path)})
            return 0
        try:
            snapshot = scan.CheckpointSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, pydantic.ValidationError) as exc:
            log.warn(
                "Invalid checkpoint, starting fresh",
                {"path": str(self.path), "error": errors.get_error_message(exc)},
            )
            return 0

        for domain in snapshot.processed:
            if domain not in self._processed:
                self._processed.add(domain)
                self._order.append(domain)
        log.info("Resuming from checkpoint", {"processed": len(self._processed), "savedAt": snapshot.timestamp})
        return len(self._processed)

    def __contains__(self, domain: object) -> bool:
        return domain in self._processed

    def __len__(self) -> int:
        return len(self._processed)

    def add(self, domain: str) -> None:
        """Mark *domain* processed, flushing every ``flush_every`` additions."""
        if domain in self._processed:
            return
        self._processed.add(domain)
        self._order.append(domain)
        self._unflushed += 1
        if self._unflushed >= self._flush_every:
            self.flush()

    def flush(self) -> None:
        """Atomically rewrite the checkpoint file."""
        snapshot = scan.CheckpointSnapshot(
            processed=list(self._order),
            timestamp=datetime.now(UTC).isoformat(),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot.model_dump(), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
            raise
        self._unflushed = 0
        log.debug("Checkpoint saved", {"processed": len(self._order)})
