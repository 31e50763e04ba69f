"""
Build ledger — append-only NDJSON record of finished builds.

One line per terminal transition (completed or failed), written by the
orchestrator.  The ledger survives record-store resets and is the
history ``installforge build history`` reads.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "builds.ndjson"


class BuildLedgerEntry(BaseModel):
    """One finished build."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    build_id: str
    name: str = ""
    owner: str = ""
    build_type: str = ""          # project, direct
    project_id: str | None = None
    status: str = ""              # completed, failed
    duration_ms: int = 0

    modules: list[str] = Field(default_factory=list)   # name@version
    images: int = 0
    archive: str = ""
    archive_sha256: str = ""

    error_stage: str = ""
    error: str = ""
    warnings: int = 0

    context: dict[str, Any] = Field(default_factory=dict)


class BuildLedger:
    """Appends and reads ledger entries.  Safe to share between workers."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: BuildLedgerEntry) -> None:
        """Append *entry*.  A write failure is logged, never raised."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as e:
                logger.error("Failed to append build %s to ledger: %s", entry.build_id, e)
                return
        logger.debug("Ledger entry written: %s (%s)", entry.build_id, entry.status)

    def read_all(self) -> list[BuildLedgerEntry]:
        """All entries, oldest first.  Corrupt lines are skipped with a warning."""
        if not self._path.is_file():
            return []

        entries: list[BuildLedgerEntry] = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(BuildLedgerEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping corrupt ledger line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[BuildLedgerEntry]:
        return self.read_all()[-n:]
