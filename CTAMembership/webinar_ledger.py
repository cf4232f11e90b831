"""
Webinar ledger: CSV table of promotional (lifetime) activation codes.

The whole file is read and rewritten under an exclusive lock, so a resolve -> mark used
-> persist sequence is one critical section across coroutines and processes.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import List, Optional, Protocol

from CTAMembership.models import WEBINAR_COLUMNS, WebinarRecord

log = logging.getLogger("cta-membership")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_POLL_SECONDS = 0.1


class LedgerLockTimeout(Exception):
    """The ledger lock could not be acquired in time (request is aborted, not retried)."""
    pass


class HeldLock(Protocol):
    def release(self) -> None: ...


class LedgerLock(Protocol):
    async def acquire(self) -> HeldLock: ...


class _FlockHandle:
    def __init__(self, fh):
        self._fh = fh

    def release(self) -> None:
        if self._fh is None:
            return
        import fcntl  # Only available on Linux/Unix
        fh, self._fh = self._fh, None
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()


class FileLedgerLock:
    """Advisory exclusive lock on a sidecar lock file (flock), polled until timeout."""

    def __init__(
        self,
        lock_path: Path | str,
        timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_LOCK_POLL_SECONDS,
    ):
        self.lock_path = Path(lock_path)
        self.timeout = float(timeout)
        self.poll_interval = float(poll_interval)

    async def acquire(self) -> HeldLock:
        import fcntl  # Only available on Linux/Unix

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Each acquisition gets its own open file description, so coroutines in this
        # process contend exactly like separate processes do.
        fh = open(self.lock_path, "a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return _FlockHandle(fh)
                except BlockingIOError:
                    if loop.time() >= deadline:
                        raise LedgerLockTimeout(
                            f"Timed out after {self.timeout:.1f}s waiting for {self.lock_path}"
                        )
                    await asyncio.sleep(self.poll_interval)
        except BaseException:
            fh.close()
            raise


class _MutexHandle:
    def __init__(self, lock: asyncio.Lock):
        self._lock: Optional[asyncio.Lock] = lock

    def release(self) -> None:
        if self._lock is not None:
            lock, self._lock = self._lock, None
            lock.release()


class MutexLedgerLock:
    """In-process mutual exclusion (no filesystem) with the same timeout contract."""

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.timeout = float(timeout)
        self._lock = asyncio.Lock()

    async def acquire(self) -> HeldLock:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise LedgerLockTimeout(f"Timed out after {self.timeout:.1f}s waiting for ledger mutex")
        return _MutexHandle(self._lock)


class LedgerSession:
    """Rows loaded under the lock; `commit()` rewrites the file, `release()` drops the lock."""

    def __init__(self, ledger: "WebinarLedger", held: HeldLock, fieldnames: List[str], records: List[WebinarRecord]):
        self.ledger = ledger
        self.fieldnames = fieldnames
        self.records = records
        self._held: Optional[HeldLock] = held

    @property
    def active(self) -> bool:
        return self._held is not None

    def find(self, code: str) -> Optional[WebinarRecord]:
        code = str(code or "").strip()
        for rec in self.records:
            if rec.activation_uuid == code:
                return rec
        return None

    def mark_used(self, record: WebinarRecord, discord_id: str, discord_username: str) -> None:
        if record.is_used:
            raise ValueError(f"Webinar code already used: {record.activation_uuid}")
        record.is_used = True
        record.discord_id = str(discord_id)
        record.discord_username = str(discord_username)

    async def commit(self) -> None:
        if not self.active:
            raise RuntimeError("Ledger session already released")
        self.ledger.write_rows(self.fieldnames, self.records)

    async def release(self) -> None:
        if self._held is None:
            return
        held, self._held = self._held, None
        held.release()

    async def __aenter__(self) -> "LedgerSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class WebinarLedger:
    def __init__(self, path: Path | str, lock: Optional[LedgerLock] = None):
        self.path = Path(path)
        self.lock = lock or FileLedgerLock(self.path.with_suffix(self.path.suffix + ".lock"))

    def read_rows(self) -> tuple[List[str], List[WebinarRecord]]:
        """Load the table; a missing or empty file is an empty ledger."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            return list(WEBINAR_COLUMNS), []
        with open(self.path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            fieldnames = [c for c in (reader.fieldnames or []) if c]
            records = [WebinarRecord.from_row(row) for row in reader]
        for col in WEBINAR_COLUMNS:
            if col not in fieldnames:
                fieldnames.append(col)
        return fieldnames, records

    def write_rows(self, fieldnames: List[str], records: List[WebinarRecord]) -> None:
        """Atomic whole-file rewrite (tmp + replace)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        try:
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
                writer.writeheader()
                for rec in records:
                    writer.writerow(rec.to_row())
            os.replace(tmp, self.path)
        except Exception:
            with suppress(OSError):
                tmp.unlink()
            raise

    async def open_session(self) -> LedgerSession:
        """Acquire the exclusive lock and load rows (raises LedgerLockTimeout)."""
        held = await self.lock.acquire()
        try:
            fieldnames, records = self.read_rows()
        except BaseException:
            held.release()
            raise
        log.debug(f"Webinar ledger opened: {len(records)} rows")
        return LedgerSession(self, held, fieldnames, records)
