"""Append-only log of executed install, upgrade and remove actions."""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class ActionHistory:
    """JSON-lines history file, one record per executed action."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, action: str, packages: Iterable[str], success: bool) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "packages": list(packages),
            "success": bool(success),
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        return entry

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Recorded actions, oldest first; unreadable lines are skipped."""
        if not self.path.is_file():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed history line %d in %s", lineno, self.path)
        return records[-limit:] if limit else records
