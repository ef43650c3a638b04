from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from stylesafe.models.jobs import utcnow
from stylesafe.services.errors import JobStorageError


logger = logging.getLogger(__name__)


class ManifestLedger:
    """
    Append-only JSON Lines record of every terminal outcome.

    Each line is one entry: id, timestamp, operation, input, output, status
    ("success" or "failed"), and optional metadata. Appends are serialized by
    a lock and fsynced so a crash never leaves a half-written entry behind a
    complete one.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        line = json.dumps(entry, ensure_ascii=False, separators=(",", ":"))
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                logger.error("Manifest write failed for %s: %s", self.path, exc)
                raise JobStorageError(f"Cannot append to manifest {self.path}: {exc}") from exc
        return entry

    def _entry(
        self,
        operation: str,
        input_ref: str,
        output_ref: str,
        status: str,
        metadata: Dict[str, Any] | None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "id": str(uuid4()),
            "timestamp": utcnow().isoformat(),
            "operation": operation,
            "input": input_ref,
            "output": output_ref,
            "status": status,
        }
        if metadata:
            entry["metadata"] = metadata
        return entry

    def record_success(
        self,
        operation: str,
        input_ref: str,
        output_ref: str,
        metadata: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        return self.append(self._entry(operation, input_ref, output_ref, "success", metadata))

    def record_problem(
        self,
        operation: str,
        input_ref: str,
        problem: Dict[str, Any],
        metadata: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        merged = dict(metadata or {})
        merged["problem"] = problem
        return self.append(self._entry(operation, input_ref, "", "failed", merged))

    def read_entries(self, limit: int | None = None) -> List[Dict[str, Any]]:
        """Return entries oldest first; with `limit`, only the most recent ones."""
        if not self.path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with self._lock:
            try:
                with self.path.open("r", encoding="utf-8") as handle:
                    for line_number, line in enumerate(handle, start=1):
                        if not line.strip():
                            continue
                        try:
                            entries.append(json.loads(line))
                        except json.JSONDecodeError:
                            logger.warning("Skipping corrupt manifest line %d in %s", line_number, self.path)
            except OSError as exc:
                raise JobStorageError(f"Cannot read manifest {self.path}: {exc}") from exc
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

