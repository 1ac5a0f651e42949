"""Key-value persistence used to save and restore wallet state."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from .types import StorageError


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store, mostly for tests."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers can't share mutable state with us
        self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """All keys in one JSON document, rewritten atomically on every set."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._data: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise StorageError(
                f"Could not read wallet data from {self.path}", {"message": str(e)}
            ) from e

    def _write(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(
                f"Could not write wallet data to {self.path}", {"message": str(e)}
            ) from e

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._write()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._write()
