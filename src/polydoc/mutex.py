"""Named, time-bounded exclusive scopes used to serialize table operations."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
import uuid
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Protocol, runtime_checkable
from urllib.parse import quote

from polydoc.errors import MutexTimeoutError, StorageBackendError

logger = logging.getLogger(__name__)


@runtime_checkable
class MutexProvider(Protocol):
    """At most one holder per (scope_id, entity_id); released when the scope exits."""

    def acquire(
        self,
        scope_id: str,
        entity_id: str,
        ttl_s: float,
    ) -> AbstractAsyncContextManager[None]: ...


class InProcessMutexProvider:
    """asyncio locks keyed by (scope_id, entity_id); exclusive within one event loop."""

    def __init__(self, *, timeout_s: float = 60.0) -> None:
        self.timeout_s = timeout_s
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        # Holders plus waiters per entry; the entry is dropped when this reaches zero.
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def acquire(self, scope_id: str, entity_id: str, ttl_s: float) -> AsyncIterator[None]:
        name = (scope_id, entity_id)
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._users[name] = self._users.get(name, 0) + 1
        try:
            try:
                async with asyncio.timeout(self.timeout_s):
                    await lock.acquire()
            except TimeoutError as e:
                raise MutexTimeoutError(scope_id, entity_id, self.timeout_s) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[name] -= 1
            if self._users[name] == 0:
                del self._users[name]
                del self._locks[name]


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


class FileMutexProvider:
    """Cross-process lease locks stored as files under ``root``.

    A lease file records its owner and expiry. Leases past their expiry are
    taken over, so a crashed holder blocks others for at most ``ttl_s``.
    """

    def __init__(self, root: str | os.PathLike[str], *, timeout_s: float = 60.0) -> None:
        self.root = Path(root)
        self.timeout_s = timeout_s

    def _lock_path(self, scope_id: str, entity_id: str) -> Path:
        return self.root / quote(scope_id, safe="") / f"{quote(entity_id, safe='')}.lock"

    def _read_lease(self, path: Path) -> dict | None:
        try:
            obj = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return obj if isinstance(obj, dict) else {}

    def _lease_expired(self, path: Path, lease: dict, ttl_s: float) -> bool:
        try:
            expires_at = _parse_iso(str(lease["expires_at"]))
        except (KeyError, ValueError):
            # Unreadable lease: fall back to file age so a half-written lease is not stolen.
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age >= ttl_s
        return datetime.now(timezone.utc) >= expires_at

    def _try_acquire(self, path: Path, owner_id: str, ttl_s: float) -> bool:
        now = datetime.now(timezone.utc)
        payload = {
            "owner_id": owner_id,
            "acquired_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl_s)).isoformat(),
            "lease_ttl_ms": int(ttl_s * 1000),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            lease = self._read_lease(path)
            if lease is None or not self._lease_expired(path, lease, ttl_s):
                return False
            return self._take_over(path, lease, payload)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)
            fh.flush()
            os.fsync(fh.fileno())
        return True

    def _take_over(self, path: Path, stale: dict, payload: dict) -> bool:
        tomb = path.with_name(f"{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            return False
        moved = self._read_lease(tomb)
        if moved != stale:
            # Lost a race and moved a fresh lease; put it back if nobody replaced it.
            try:
                os.link(tomb, path)
            except FileExistsError:
                pass
            tomb.unlink(missing_ok=True)
            return False
        tomb.unlink(missing_ok=True)
        logger.info(f"Took over expired lease {path} held by {stale.get('owner_id')!r}")
        return self._try_acquire(path, payload["owner_id"], payload["lease_ttl_ms"] / 1000.0)

    def _release(self, path: Path, owner_id: str) -> None:
        lease = self._read_lease(path)
        if lease is not None and lease.get("owner_id") == owner_id:
            path.unlink(missing_ok=True)

    @asynccontextmanager
    async def acquire(self, scope_id: str, entity_id: str, ttl_s: float) -> AsyncIterator[None]:
        path = self._lock_path(scope_id, entity_id)
        owner_id = uuid.uuid4().hex
        deadline = time.monotonic() + self.timeout_s
        while True:
            try:
                acquired = await asyncio.to_thread(self._try_acquire, path, owner_id, ttl_s)
            except OSError as e:
                raise StorageBackendError("acquire_mutex", str(e)) from e
            if acquired:
                break
            if time.monotonic() >= deadline:
                raise MutexTimeoutError(scope_id, entity_id, self.timeout_s)
            await asyncio.sleep(0.01 + random.uniform(0.0, 0.02))
        try:
            yield
        finally:
            await asyncio.to_thread(self._release, path, owner_id)
