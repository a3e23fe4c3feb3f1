"""Blob stores for the serialized ConversationStore.

Both expose save(serialized: dict) and load() -> dict | None.  The store
never touches files itself.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from common import StateValidationError


class MemoryBlobStore:
    """In-process blob; used in stateless mode and tests."""

    def __init__(self, initial: Dict[str, Any] | None = None):
        self._blob = copy.deepcopy(initial) if initial is not None else None
        self.saves = 0

    def save(self, serialized: Dict[str, Any]) -> None:
        self._blob = copy.deepcopy(serialized)
        self.saves += 1

    def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._blob) if self._blob is not None else None


class FileBlobStore:
    """JSON file blob with size and symlink guardrails."""

    def __init__(self, path: Path, *, max_bytes: int | None = None, reject_symlinks: bool = False):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.reject_symlinks = reject_symlinks

    def load(self) -> Optional[Dict[str, Any]]:
        """Parsed blob, or None when the file is absent or empty."""
        path = self.path
        if self.reject_symlinks and path.is_symlink():
            raise StateValidationError("State file cannot be a symlink")
        if not path.exists():
            return None
        if self.max_bytes is not None and path.stat().st_size > self.max_bytes:
            raise StateValidationError(f"State file exceeds MAX_STATE_BYTES ({self.max_bytes})")

        data = path.read_text(encoding="utf-8")
        if not data.strip():
            return None
        try:
            obj = json.loads(data)
        except json.JSONDecodeError as exc:
            raise StateValidationError(f"State file is not valid JSON: {exc}") from exc
        if not isinstance(obj, dict):
            raise StateValidationError("State file must hold a JSON object")
        return obj

    def save(self, serialized: Dict[str, Any]) -> None:
        """Write atomically: temp file in the same directory, then os.replace."""
        path = self.path
        if self.reject_symlinks and path.exists() and path.is_symlink():
            raise StateValidationError("Refusing to write symlink state file")

        content = json.dumps(serialized, ensure_ascii=False, indent=2) + "\n"
        if self.max_bytes is not None and len(content.encode("utf-8")) > self.max_bytes:
            raise StateValidationError(f"Serialized state exceeds MAX_STATE_BYTES ({self.max_bytes})")

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, str(path))
        finally:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
