# careplan/adapters/file_store.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

from careplan.core.logging_utils import kv

SUFFIX = ".json"


class FileStore:
    """
    One file per key under a data directory.
    Writes go to a temp file in the same directory and are moved into place with
    os.replace, so a reader never sees a half-written record. Blocking file I/O runs
    in a worker thread. OSError propagates to the caller.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.log = logging.getLogger("careplan.store.file")

    def _path(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + SUFFIX)

    # -- blocking helpers (run via asyncio.to_thread) -------------------------------
    def _read(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path(key))
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise

    def _delete(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path(key).unlink()

    def _keys(self, prefix: str) -> List[str]:
        out: List[str] = []
        for p in self.root.iterdir():
            if not p.name.endswith(SUFFIX) or p.name.startswith(".tmp-"):
                continue
            key = unquote(p.name[: -len(SUFFIX)])
            if key.startswith(prefix):
                out.append(key)
        return sorted(out)

    # -- KeyValueStore --------------------------------------------------------------
    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._write, key, value)
        self.log.debug("file.set " + kv(key=key, size=len(value)))

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def keys(self, prefix: str) -> List[str]:
        return await asyncio.to_thread(self._keys, prefix)

