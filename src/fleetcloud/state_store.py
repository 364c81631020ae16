"""Durable state storage and advisory locking.

One record per provider, so providers apply concurrently without sharing a
lock or a file. Writers must hold the provider's lock; readers (plan,
status) read the last persisted snapshot without it and treat it as
possibly stale.

ATOMICITY:
Records are written to a temp file in the target directory, fsynced and
renamed over the previous file. A crash mid-write leaves either the old or
the new record visible, never a torn one. The previous record is kept as
`<provider>.json.backup`.

STALE LOCKS:
A lock carries its owner, host, PID, token and acquisition time. It is
stale when older than the TTL, or when its PID no longer exists on this
host. Stale locks are broken with a warning and acquisition is retried
once; a live owner raises LockError. Breaking and releasing compare the
lock token under an exclusive flock on `locks/<provider>.guard`, so a
lock taken over between the read and the delete is left alone.

Layout under the state directory:
    state/<provider>.json
    state/<provider>.json.backup
    locks/<provider>.lock
    locks/<provider>.guard
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import socket
import tempfile
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import DEFAULT_LOCK_TTL_SECONDS
from .errors import LockError, StateError
from .state import STATE_VERSION, GlobalState, ProviderRecord, utcnow

logger = logging.getLogger(__name__)

LOCK_ACQUIRE_ATTEMPTS = 2


def current_host() -> str:
    return os.environ.get("HOSTNAME") or os.environ.get("HOST") or socket.gethostname()


def default_owner() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return f"{user}@{current_host()}:{os.getpid()}"


def pid_alive(pid: int) -> bool:
    """Check whether a process exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OverflowError:
        return False
    return True


@dataclass(frozen=True)
class LockInfo:
    """Contents of a lock: who holds it and since when."""

    owner: str
    host: str
    pid: int
    token: str
    acquired_at: datetime

    @classmethod
    def new(cls, owner: str | None, now: datetime) -> LockInfo:
        return cls(
            owner=owner or default_owner(),
            host=current_host(),
            pid=os.getpid(),
            token=uuid.uuid4().hex,
            acquired_at=now,
        )

    def age_seconds(self, now: datetime) -> float:
        return (now - self.acquired_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "host": self.host,
            "pid": self.pid,
            "token": self.token,
            "acquired_at": self.acquired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo:
        return cls(
            owner=str(data["owner"]),
            host=str(data.get("host", "")),
            pid=int(data.get("pid", 0)),
            token=str(data["token"]),
            acquired_at=datetime.fromisoformat(str(data["acquired_at"]).replace("Z", "+00:00")),
        )


@dataclass
class StateLock:
    """A held lock. Release is idempotent; usable as a context manager."""

    provider: str
    info: LockInfo
    store: StateStore = field(repr=False)
    released: bool = False

    @property
    def token(self) -> str:
        return self.info.token

    @property
    def owner(self) -> str:
        return self.info.owner

    def release(self) -> None:
        if self.released:
            return
        self.store.release_lock(self)
        self.released = True

    def __enter__(self) -> StateLock:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class StateStore(ABC):
    """Per-provider record storage with an advisory lock per provider."""

    def __init__(
        self,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock

    # Backend primitives

    @abstractmethod
    def load(self, provider: str) -> ProviderRecord:
        """Last persisted record; an empty serial-0 record if none exists."""

    @abstractmethod
    def list_providers(self) -> list[str]:
        """Names of providers with a persisted record."""

    @abstractmethod
    def _write_record(self, record: ProviderRecord) -> None: ...

    @abstractmethod
    def _create_lock(self, provider: str, info: LockInfo) -> bool:
        """Create the lock only if absent. Returns False when one exists."""

    @abstractmethod
    def _read_lock(self, provider: str) -> LockInfo | None: ...

    @abstractmethod
    def _delete_lock(self, provider: str, token: str | None = None) -> bool:
        """Remove the lock if it still carries `token` (any lock when None).

        The check and the removal must be atomic. Returns whether a lock
        was removed.
        """

    # Shared behaviour

    def is_stale(self, info: LockInfo) -> bool:
        if info.age_seconds(self._clock()) > self.lock_ttl_seconds:
            return True
        return info.host == current_host() and not pid_alive(info.pid)

    def acquire_lock(self, provider: str, owner: str | None = None) -> StateLock:
        """Take the provider's lock, breaking it first if stale.

        Raises:
            LockError: Held by a live owner, or its state is ambiguous.
        """
        info = LockInfo.new(owner, self._clock())
        for _ in range(LOCK_ACQUIRE_ATTEMPTS):
            if self._create_lock(provider, info):
                logger.info(
                    "Acquired state lock",
                    extra={"provider": provider, "owner": info.owner},
                )
                return StateLock(provider=provider, info=info, store=self)

            existing = self._read_lock(provider)
            if existing is None:
                continue
            if self.is_stale(existing):
                # Someone else may have broken or retaken it since the read
                if self._delete_lock(provider, existing.token):
                    logger.warning(
                        "Breaking stale state lock",
                        extra={
                            "provider": provider,
                            "stale_owner": existing.owner,
                            "acquired_at": existing.acquired_at.isoformat(),
                            "age_seconds": int(existing.age_seconds(self._clock())),
                        },
                    )
                continue
            raise LockError(
                f"State for provider '{provider}' is locked by {existing.owner} "
                f"since {existing.acquired_at.isoformat()}",
                {"provider": provider, "holder": existing.owner},
            )
        raise LockError(
            f"Could not acquire state lock for provider '{provider}'",
            {"provider": provider},
        )

    def release_lock(self, lock: StateLock) -> None:
        if not self._delete_lock(lock.provider, lock.token):
            logger.warning(
                "State lock no longer held by this owner; not releasing",
                extra={"provider": lock.provider, "owner": lock.owner},
            )
            return
        logger.info("Released state lock", extra={"provider": lock.provider})

    def lock_info(self, provider: str) -> LockInfo | None:
        return self._read_lock(provider)

    def force_unlock(self, provider: str) -> LockInfo | None:
        """Remove a lock regardless of owner. Returns what was removed."""
        existing = self._read_lock(provider)
        if existing is not None:
            logger.warning(
                "Force-unlocking state",
                extra={"provider": provider, "holder": existing.owner},
            )
            self._delete_lock(provider)
        return existing

    def save(self, record: ProviderRecord, lock: StateLock) -> ProviderRecord:
        """Persist a record under `lock`, bumping its serial.

        Raises:
            LockError: `lock` is not the current holder for the provider.
        """
        if lock.provider != record.provider:
            raise LockError(
                f"Lock for '{lock.provider}' cannot save state of '{record.provider}'"
            )
        current = self._read_lock(record.provider)
        if lock.released or current is None or current.token != lock.token:
            raise LockError(
                f"State lock for provider '{record.provider}' is not held by {lock.owner}",
                {"provider": record.provider},
            )
        previous = self.load(record.provider)
        saved = ProviderRecord(
            provider=record.provider,
            state=record.state.copy(),
            serial=previous.serial + 1,
            updated_at=self._clock(),
        )
        self._write_record(saved)
        logger.info(
            "Saved state",
            extra={
                "provider": saved.provider,
                "serial": saved.serial,
                "resource_count": len(saved.state),
            },
        )
        return saved

    def load_all(self) -> GlobalState:
        """Aggregate of every persisted record. Takes no lock."""
        providers: dict[str, ProviderRecord] = {}
        for name in self.list_providers():
            record = self.load(name)
            lock = self._read_lock_quietly(name)
            record.lock_holder = lock.owner if lock else None
            providers[name] = record
        stamps = [r.updated_at for r in providers.values() if r.updated_at]
        return GlobalState(
            version=STATE_VERSION,
            updated_at=max(stamps) if stamps else None,
            providers=providers,
        )

    def _read_lock_quietly(self, provider: str) -> LockInfo | None:
        try:
            return self._read_lock(provider)
        except LockError:
            return None


class FileStateStore(StateStore):
    """State store backed by a local directory."""

    def __init__(
        self,
        root: Path,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(lock_ttl_seconds, clock)
        self.root = Path(root)
        self.state_dir = self.root / "state"
        self.lock_dir = self.root / "locks"

    def state_path(self, provider: str) -> Path:
        return self.state_dir / f"{provider}.json"

    def lock_path(self, provider: str) -> Path:
        return self.lock_dir / f"{provider}.lock"

    def load(self, provider: str) -> ProviderRecord:
        path = self.state_path(provider)
        if not path.exists():
            return ProviderRecord(provider=provider)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(
                f"Cannot read state file {path}: {e}. "
                f"A previous version may be available at {path}.backup",
                {"path": str(path)},
            ) from e
        record = ProviderRecord.from_dict(data)
        if record.provider != provider:
            raise StateError(
                f"State file {path} belongs to provider '{record.provider}'",
                {"path": str(path)},
            )
        return record

    def list_providers(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(p.stem for p in self.state_dir.glob("*.json"))

    def _write_record(self, record: ProviderRecord) -> None:
        path = self.state_path(record.provider)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            if path.exists():
                shutil.copy2(path, path.with_name(path.name + ".backup"))
            self._atomic_write(path, json.dumps(record.to_dict(), indent=2, sort_keys=True))
        except OSError as e:
            raise StateError(f"Cannot write state file {path}: {e}", {"path": str(path)}) from e

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _create_lock(self, provider: str, info: LockInfo) -> bool:
        path = self.lock_path(provider)
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise LockError(f"Cannot create lock file {path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        return True

    def _read_lock(self, provider: str) -> LockInfo | None:
        path = self.lock_path(provider)
        try:
            raw = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        try:
            return LockInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            acquired_at = datetime.fromtimestamp(mtime, tz=self._clock().tzinfo)
            if (self._clock() - acquired_at).total_seconds() <= self.lock_ttl_seconds:
                raise LockError(
                    f"Lock file {path} is unreadable and not yet stale; "
                    "remove it with 'fleetcloud unlock --force' if no run is active",
                    {"path": str(path)},
                ) from e
            # Old enough to be broken by TTL
            return LockInfo(
                owner="<unreadable>", host="", pid=0, token="", acquired_at=acquired_at
            )

    def guard_path(self, provider: str) -> Path:
        return self.lock_dir / f"{provider}.guard"

    @contextmanager
    def _lock_guard(self, provider: str) -> Iterator[None]:
        """Serialize compare-and-delete on a provider's lock file.

        The guard file is never removed; unlinking it would let two
        processes hold flocks on different inodes.
        """
        path = self.guard_path(provider)
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            guard = open(path, "a+b")
        except OSError as e:
            raise LockError(f"Cannot open lock guard {path}: {e}") from e
        with guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _delete_lock(self, provider: str, token: str | None = None) -> bool:
        path = self.lock_path(provider)
        with self._lock_guard(provider):
            if token is not None:
                try:
                    current = self._read_lock(provider)
                except LockError:
                    # Half-written by a new holder
                    return False
                if current is None or current.token != token:
                    return False
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise LockError(f"Cannot remove lock file {path}: {e}") from e
            return True


class InMemoryStateStore(StateStore):
    """Process-local store with the same semantics, used in tests."""

    def __init__(
        self,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(lock_ttl_seconds, clock)
        self._records: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, LockInfo] = {}
        self.save_count = 0

    def load(self, provider: str) -> ProviderRecord:
        data = self._records.get(provider)
        if data is None:
            return ProviderRecord(provider=provider)
        return ProviderRecord.from_dict(json.loads(json.dumps(data)))

    def list_providers(self) -> list[str]:
        return sorted(self._records)

    def _write_record(self, record: ProviderRecord) -> None:
        self._records[record.provider] = record.to_dict()
        self.save_count += 1

    def _create_lock(self, provider: str, info: LockInfo) -> bool:
        if provider in self._locks:
            return False
        self._locks[provider] = info
        return True

    def _read_lock(self, provider: str) -> LockInfo | None:
        return self._locks.get(provider)

    def _delete_lock(self, provider: str, token: str | None = None) -> bool:
        current = self._locks.get(provider)
        if current is None or (token is not None and current.token != token):
            return False
        del self._locks[provider]
        return True

    def put_lock(self, provider: str, info: LockInfo) -> None:
        """Install a lock directly, simulating another holder."""
        self._locks[provider] = info
