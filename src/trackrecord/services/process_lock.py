from __future__ import annotations

import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

if os.name == "nt":
    import msvcrt
else:
    import fcntl

LOCK_DIR_ENV = "TRACKRECORD_LOCK_DIR"


@dataclass(frozen=True)
class ChainLock:
    path: str
    chain_key: str
    pid: int


def lock_dir() -> Path:
    configured = os.getenv(LOCK_DIR_ENV)
    if configured:
        directory = Path(configured).expanduser()
    elif os.name == "nt":
        directory = Path(os.getenv("LOCALAPPDATA") or tempfile.gettempdir()) / "trackrecord"
    else:
        directory = Path(tempfile.gettempdir()) / "trackrecord-locks"
    directory.mkdir(parents=True, exist_ok=True)
    return directory.resolve()


def chain_lock_key(state_dir: str | Path, chain_key: str) -> str:
    """Identity of one chain on this machine: resolved state directory plus slot key."""
    return f"{Path(state_dir).expanduser().resolve()}::{chain_key}"


def chain_lock_path(state_dir: str | Path, chain_key: str) -> Path:
    digest = hashlib.sha256(chain_lock_key(state_dir, chain_key).encode("utf-8")).hexdigest()
    return lock_dir() / f"chain-{digest[:16]}.lock"


def _owner_pid(pid_path: Path) -> int | None:
    try:
        raw = pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(raw) if raw.isdigit() else None


def _pid_alive(pid: int) -> bool:
    if os.name == "nt":
        # no portable liveness probe; assume the recorded owner still runs
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _lock(handle: BinaryIO) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(handle: BinaryIO) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _write_pid(pid_path: Path, pid: int) -> None:
    tmp_path = pid_path.with_suffix(f".pid.{pid}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(f"{pid}\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, pid_path)


def _locked_error(chain_key: str, path: Path, pid_path: Path) -> RuntimeError:
    owner = _owner_pid(pid_path)
    owner_text = "" if owner is None else f" owner_pid={owner} owner_alive={_pid_alive(owner)}"
    return RuntimeError(
        "LOCKED: another process already owns this chain "
        f"chain_key={chain_key} lock_path={path}.{owner_text}"
    )


@contextmanager
def single_instance_lock(*, state_dir: str | Path, chain_key: str) -> Iterator[ChainLock]:
    """Hold the one-writer lock for a chain.

    Two writers on one chain would fork it, so a second holder fails fast with
    a ``LOCKED:`` error. Uses OS file locks and is meant for local filesystems.
    """
    path = chain_lock_path(state_dir, chain_key)
    pid_path = path.with_suffix(".pid")
    pid = os.getpid()
    handle: BinaryIO = os.fdopen(os.open(path, os.O_CREAT | os.O_RDWR), "r+b")
    try:
        try:
            _lock(handle)
        except OSError as exc:
            raise _locked_error(chain_key, path, pid_path) from exc
        try:
            _write_pid(pid_path, pid)
            yield ChainLock(path=str(path), chain_key=chain_key, pid=pid)
        finally:
            if _owner_pid(pid_path) == pid:
                with suppress(OSError):
                    pid_path.unlink()
            with suppress(OSError):
                _unlock(handle)
    finally:
        with suppress(OSError):
            handle.close()
