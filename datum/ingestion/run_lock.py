"""
ingestion/run_lock.py
Single-instance advisory lock: one lock file per scan name under the lock dir.

The file is created with O_CREAT | O_EXCL, so a second process sees the file
and backs off. Release deletes it; a lock file that has already vanished on
release is tolerated.
"""

from __future__ import annotations

import json
import os
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from types import FrameType

import structlog

from datum.errors import RunLockError

log = structlog.get_logger(__name__)

SIGNAL_EXIT_CODES = {signal.SIGINT: 130, signal.SIGTERM: 143}


def acquire_lock(lock_dir: str | os.PathLike, name: str) -> Path | None:
    """Return the lock token (its path), or None when another instance holds it."""
    lock_dir = Path(lock_dir)
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RunLockError(f"cannot create lock dir {lock_dir}: {exc}") from exc

    lock_path = lock_dir / f"{name}.lock"
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        log.warning("lock.contended", lock=str(lock_path))
        return None
    except OSError as exc:
        raise RunLockError(f"cannot create lock file {lock_path}: {exc}") from exc

    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        payload = {"pid": os.getpid(), "created_at": datetime.now(timezone.utc).isoformat()}
        fh.write(json.dumps(payload) + "\n")
    log.debug("lock.acquired", lock=str(lock_path))
    return lock_path


def release_lock(token: Path | None) -> None:
    if token is None:
        return
    try:
        Path(token).unlink()
        log.debug("lock.released", lock=str(token))
    except FileNotFoundError:
        log.debug("lock.already_gone", lock=str(token))
    except OSError as exc:
        log.warning("lock.release_failed", lock=str(token), error=str(exc))


class RunLock:
    """
    Context manager around acquire/release that also releases on SIGINT/SIGTERM.

        with RunLock(settings.lock_dir, "scan-loans") as lock:
            if not lock.acquired:
                return 0
            ...

    On a signal the lock is released and SystemExit(130 / 143) is raised.
    Previous signal handlers are restored on exit.
    """

    def __init__(self, lock_dir: str | os.PathLike, name: str, handle_signals: bool = True):
        self.lock_dir = Path(lock_dir)
        self.name = name
        self.handle_signals = handle_signals
        self.token: Path | None = None
        self._previous: dict[int, object] = {}

    @property
    def acquired(self) -> bool:
        return self.token is not None

    def __enter__(self) -> "RunLock":
        self.token = acquire_lock(self.lock_dir, self.name)
        if self.token is not None and self.handle_signals:
            self._install_handlers()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def release(self) -> None:
        self._restore_handlers()
        token, self.token = self.token, None
        release_lock(token)

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        log.warning("lock.signal_received", signal=signal.Signals(signum).name, lock=self.name)
        self.release()
        raise SystemExit(SIGNAL_EXIT_CODES.get(signum, 1))

    def _install_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in SIGNAL_EXIT_CODES:
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._on_signal)

    def _restore_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous.clear()
