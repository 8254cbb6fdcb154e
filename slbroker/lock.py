"""Named cross-process locks for expensive fetches.

BASE_DIR/locks/<name>.lock, held with a non-blocking flock. The kernel
drops a flock when its holder dies, so a crashed process never wedges a
lock. A holder that hangs while still alive has to be cleared by hand
with force_release() (statusline.py --force-unlock NAME): that unlinks
the file, and the lock checks below make the next acquirer lock a fresh
inode. There is no age-based expiry.
"""

import fcntl
import os
import time

from slbroker import config, log

logger = log.get("lock")

RETRY_S = 0.05
MAX_RACES = 3


class Lock:
    """Token returned by acquire(); pass it back to release()."""

    def __init__(self, name, path, fd):
        self.name = name
        self.path = path
        self.fd = fd

    def __repr__(self):
        return f"<Lock {self.name} fd={self.fd}>"


def lock_path(name):
    safe = "".join(c if c.isalnum() or c in "-_.@" else "_" for c in name)
    return config.locks_dir() / f"{safe}.lock"


def _same_file(fd, path):
    try:
        return os.fstat(fd).st_ino == os.stat(path).st_ino
    except OSError:
        return False


def _try_lock(path):
    """Non-blocking exclusive lock. Returns (fd or None, raced)."""
    try:
        fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o600)
    except OSError:
        return None, False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        return None, False
    # Unlinked (released or forced) between our open() and flock()
    if not _same_file(fd, path):
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        return None, True
    return fd, False


def stamp(lk):
    """Record this process as the holder (pid is informational only)."""
    try:
        os.ftruncate(lk.fd, 0)
        os.pwrite(lk.fd, str(os.getpid()).encode(), 0)
    except OSError:
        pass


def acquire(name, wait_ms=None):
    """Take the lock, retrying for up to wait_ms. Returns a Lock or None."""
    wait_ms = config.LOCK_WAIT_MS if wait_ms is None else wait_ms
    path = lock_path(name)
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    except OSError:
        logger.debug("lock dir unavailable for %s", name, exc_info=True)
        return None

    deadline = time.monotonic() + max(0, wait_ms) / 1000
    races = 0
    while True:
        fd, raced = _try_lock(path)
        if fd is not None:
            lk = Lock(name, path, fd)
            stamp(lk)
            logger.debug("acquired %s", name)
            return lk
        if raced and races < MAX_RACES:
            races += 1
            continue
        left = deadline - time.monotonic()
        if left <= 0:
            logger.debug("lock %s busy (holder %s)", name, holder(name))
            return None
        time.sleep(min(RETRY_S, left))


def release(lk):
    """Release a lock from acquire(). Leaves a successor's lock file alone."""
    if lk is None or lk.fd is None:
        return
    try:
        if _same_file(lk.fd, lk.path):
            lk.path.unlink(missing_ok=True)
        fcntl.flock(lk.fd, fcntl.LOCK_UN)
    except OSError:
        logger.debug("release %s failed", lk.name, exc_info=True)
    finally:
        try:
            os.close(lk.fd)
        except OSError:
            pass
        lk.fd = None


def detach(lk):
    """Close this process's handle without unlocking.

    Used after fork: the child shares the flock and releases it.
    """
    if lk is None or lk.fd is None:
        return
    try:
        os.close(lk.fd)
    except OSError:
        pass
    lk.fd = None


def with_lock(name, fn, default=None, wait_ms=None):
    """Run fn() holding the lock; return default without running it if busy."""
    lk = acquire(name, wait_ms)
    if lk is None:
        return default
    try:
        return fn()
    finally:
        release(lk)


def holder(name):
    """pid recorded by the current holder, or None."""
    try:
        return int(lock_path(name).read_text().strip())
    except (OSError, ValueError):
        return None


def force_release(name):
    """Drop a lock whoever holds it. Operator escape hatch for wedged holders."""
    path = lock_path(name)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError:
        logger.debug("force release %s failed", name, exc_info=True)
        return False
    logger.debug("force released %s", name)
    return True
