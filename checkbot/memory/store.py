"""File-backed key/value store.

Each namespace ("users", "jobs", ...) is one JSON file under the store root,
guarded by one exclusive lock. Every access goes through acquire():

    with store.acquire("jobs") as h:
        job = h.get(job_id)
        ...
        h.set(job_id, job)
        h.save()

The lock is held for the whole block (in-process via threading.Lock, across
processes via flock on a sidecar .lock file) and released on every exit path.
"""
import errno
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager

from checkbot.core.errors import LockTimeout, StoreError

log = logging.getLogger(__name__)

LOCK_POLL_SECONDS = 0.05


def write_json_atomic(path, data):
    """Write data to path so readers see either the old file or the new one."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class Handle:
    """In-memory copy of one namespace, valid only inside Store.acquire()."""

    def __init__(self, namespace, path, records):
        self.namespace = namespace
        self._path = path
        self._records = records
        self._open = True

    def _check(self):
        if not self._open:
            raise RuntimeError(f"Handle for '{self.namespace}' used after release")

    def get(self, key, default=None):
        self._check()
        return self._records.get(key, default)

    def set(self, key, value):
        self._check()
        self._records[key] = value

    def delete(self, key):
        self._check()
        self._records.pop(key, None)

    def items(self):
        self._check()
        return list(self._records.items())

    def save(self):
        self._check()
        try:
            write_json_atomic(self._path, self._records)
        except OSError as e:
            raise StoreError(f"Could not save '{self.namespace}': {e}") from e


class Store:
    def __init__(self, root, lock_timeout=10.0):
        self.root = root
        self.lock_timeout = lock_timeout
        self._locks = {}
        self._locks_guard = threading.Lock()
        os.makedirs(root, exist_ok=True)

    def path_for(self, namespace):
        return os.path.join(self.root, f"{namespace}.json")

    def _thread_lock(self, namespace):
        with self._locks_guard:
            if namespace not in self._locks:
                self._locks[namespace] = threading.Lock()
            return self._locks[namespace]

    def _flock(self, namespace, deadline):
        """Take the cross-process lock, polling until deadline. Returns the open fd."""
        try:
            fd = os.open(os.path.join(self.root, f"{namespace}.lock"), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StoreError(f"Could not open '{namespace}' lock file: {e}") from e
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EACCES):
                    os.close(fd)
                    raise StoreError(f"Could not lock '{namespace}': {e}") from e
            if time.monotonic() >= deadline:
                os.close(fd)
                raise LockTimeout(namespace, self.lock_timeout)
            time.sleep(LOCK_POLL_SECONDS)

    def _load(self, namespace):
        path = self.path_for(namespace)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning(f"Unreadable store file {path}, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            log.warning(f"Store file {path} is not a mapping, starting empty")
            return {}
        return data

    @contextmanager
    def acquire(self, namespace):
        deadline = time.monotonic() + self.lock_timeout
        lock = self._thread_lock(namespace)
        if not lock.acquire(timeout=self.lock_timeout):
            raise LockTimeout(namespace, self.lock_timeout)
        try:
            fd = self._flock(namespace, deadline)
            handle = Handle(namespace, self.path_for(namespace), self._load(namespace))
            try:
                yield handle
            finally:
                handle._open = False
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
        finally:
            lock.release()
