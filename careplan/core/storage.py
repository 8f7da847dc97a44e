# careplan/core/storage.py
from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from careplan.core.logging_utils import kv


class KeyValueStore(Protocol):
    """Persistence primitive. Every method may raise; errors reach the caller unchanged."""

    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> List[str]: ...


# -------------------------------------------------------------------------------------------------
# Key layout (one namespace per patient)
# -------------------------------------------------------------------------------------------------
class Keys:
    PREFIX = "careplan"

    @staticmethod
    def config(patient_id: str) -> str:
        return f"careplan:config:{patient_id}"

    @staticmethod
    def plan(patient_id: str) -> str:
        return f"careplan:plan:{patient_id}"

    @staticmethod
    def items(plan_id: str) -> str:
        return f"careplan:items:{plan_id}"

    @staticmethod
    def instances(patient_id: str, day_iso: str) -> str:
        return f"careplan:instances:{patient_id}:{day_iso}"

    @staticmethod
    def instances_index(patient_id: str) -> str:
        return f"careplan:instances_index:{patient_id}"

    @staticmethod
    def logs(patient_id: str) -> str:
        return f"careplan:logs:{patient_id}"

    @staticmethod
    def logs_index(patient_id: str) -> str:
        return f"careplan:logs_index:{patient_id}"

    @staticmethod
    def overrides(patient_id: str) -> str:
        return f"careplan:overrides:{patient_id}"

    @staticmethod
    def snapshot(patient_id: str) -> str:
        return f"careplan:snapshot:{patient_id}"

    @staticmethod
    def journal(scope: str) -> str:
        return f"careplan:journal:{scope}"


def encode(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class CorruptRecord(Exception):
    """A stored record exists but cannot be decoded into the expected shape."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"corrupt record {key!r}: {reason}")
        self.key = key
        self.reason = reason


class PendingJournal(RuntimeError):
    """A commit was attempted while an earlier, unfinished commit of the scope is still journaled."""

    def __init__(self, scope: str):
        super().__init__(f"unfinished commit pending for scope {scope!r}")
        self.scope = scope


class RecordStore:
    """
    JSON records on top of a KeyValueStore.

    - read(): a record that fails to decode is treated as absent on read paths.
      The caller gets the default and a warning is logged. Write paths read with
      strict=True and get CorruptRecord instead, so a "repaired" empty value is
      never built on and written back over the raw bytes.
    - commit(): multi-key writes go through a per-scope journal record first. An
      interrupted commit stays journaled until replay_pending() (before the next
      operation on the scope) or recover() (at startup) finishes it.
    """

    def __init__(self, kv_store: KeyValueStore, logger: Optional[logging.Logger] = None):
        self.kv = kv_store
        self.log = logger or logging.getLogger("careplan.storage")

    def _corrupt(self, key: str, reason: str, default: Any, strict: bool) -> Any:
        self.log.warning("store.read.corrupt " + kv(key=key, error=reason, strict=strict))
        if strict:
            raise CorruptRecord(key, reason)
        return copy.deepcopy(default)

    async def read(
        self,
        key: str,
        default: Any = None,
        *,
        expect: type | None = None,
        strict: bool = False,
    ) -> Any:
        raw = await self.kv.get(key)
        if raw is None:
            return copy.deepcopy(default)
        try:
            value = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return self._corrupt(key, str(e), default, strict)
        if expect is not None and not isinstance(value, expect):
            reason = f"expected {expect.__name__}, got {type(value).__name__}"
            return self._corrupt(key, reason, default, strict)
        return value

    async def write(self, key: str, value: Any) -> None:
        await self.kv.set(key, encode(value))

    async def delete(self, key: str) -> None:
        await self.kv.delete(key)

    async def commit(self, scope: str, writes: Dict[str, Any]) -> None:
        """
        Write several keys as one unit. A crash part-way is finished by
        replay_pending() or recover(). Raises PendingJournal if the scope still has
        an unfinished commit: the new write set was computed without it.
        """
        if not writes:
            return
        jkey = Keys.journal(scope)
        if await self.kv.get(jkey) is not None:
            raise PendingJournal(scope)
        if len(writes) == 1:
            (key, value), = writes.items()
            await self.write(key, value)
            return
        await self.write(jkey, {"writes": writes})
        for key, value in writes.items():
            await self.write(key, value)
        await self.kv.delete(jkey)
        self.log.debug("store.commit " + kv(scope=scope, keys=len(writes)))

    async def _replay(self, jkey: str, *, strict: bool) -> bool:
        record = await self.read(jkey, None, expect=dict, strict=strict)
        writes = record.get("writes") if record else None
        if not isinstance(writes, dict):
            if strict:
                raise CorruptRecord(jkey, "journal without a 'writes' mapping")
            # left in place for inspection; read() already logged it
            self.log.warning("store.journal.skipped " + kv(journal=jkey))
            return False
        for key, value in writes.items():
            await self.write(key, value)
        await self.kv.delete(jkey)
        self.log.info("store.journal.replayed " + kv(journal=jkey, keys=len(writes)))
        return True

    async def replay_pending(self, scope: str) -> bool:
        """Finish an unfinished commit of `scope`, if any. Call before reading the scope."""
        jkey = Keys.journal(scope)
        if await self.kv.get(jkey) is None:
            return False
        return await self._replay(jkey, strict=True)

    async def recover(self) -> int:
        """Replay every journal left by an interrupted commit. Returns the number replayed."""
        replayed = 0
        for jkey in await self.kv.keys(f"{Keys.PREFIX}:journal:"):
            if await self._replay(jkey, strict=False):
                replayed += 1
        return replayed


__all__ = ["CorruptRecord", "KeyValueStore", "Keys", "PendingJournal", "RecordStore", "encode"]
