"""Scratch space: a directory-backed key/value byte store with path access."""

import hashlib
import logging
import os
import tempfile
import threading
import weakref
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

# Longest percent-encoded key stored under its own name; NAME_MAX is 255 on
# common filesystems and the hashed form must stay well below it too
MAX_NAME_LENGTH = 200
# quote() never emits "%" followed by non-hex characters, so no encoded key
# can collide with this directory
HASHED_DIR = "%hashed"
KEY_SUFFIX = ".key"


class FileScratch:
    """Store byte blobs as files under a root directory, one file per key.

    Keys are arbitrary strings. They are percent-encoded into file names, so a
    key such as "extracted_docs/../a.txt" stays a single file inside root.
    Keys whose encoded form is too long for a file name are stored under
    HASHED_DIR as their SHA-256 digest, next to a ".key" file holding the key.
    """

    def __init__(self, root: str):
        self.root = root
        os.makedirs(root, exist_ok=True)
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _hashed(self, key: str) -> str | None:
        """Return the digest file name for key, or None if it fits as-is."""
        if len(quote(key, safe="")) <= MAX_NAME_LENGTH:
            return None
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def path(self, key: str) -> str:
        """Return the filesystem path for key (the file may not exist yet)."""
        digest = self._hashed(key)
        if digest is not None:
            return os.path.join(self.root, HASHED_DIR, digest)
        return os.path.join(self.root, quote(key, safe=""))

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path(key))

    def read(self, key: str) -> bytes:
        with open(self.path(key), "rb") as f:
            return f.read()

    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""
        path = self.path(key)
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        if self._hashed(key) is not None:
            try:
                os.unlink(path + KEY_SUFFIX)
            except FileNotFoundError:
                pass

    def keys(self) -> list[str]:
        names = []
        for entry in os.listdir(self.root):
            # Temp files from an in-flight populate start with a dot
            if entry.startswith(".") or entry == HASHED_DIR:
                continue
            names.append(unquote(entry))

        hashed_dir = os.path.join(self.root, HASHED_DIR)
        if os.path.isdir(hashed_dir):
            for entry in os.listdir(hashed_dir):
                if not entry.endswith(KEY_SUFFIX):
                    continue
                if not os.path.isfile(os.path.join(hashed_dir, entry[:-len(KEY_SUFFIX)])):
                    continue
                with open(os.path.join(hashed_dir, entry), encoding="utf-8") as f:
                    names.append(f.read())
        return sorted(names)

    def write(self, key: str, populate) -> None:
        """Replace key with whatever populate(dest) writes into dest."""
        self._populate(key, populate)

    def fetch(self, key: str, populate) -> bytes:
        """Return the bytes for key, calling populate(dest) first if it is cold.

        populate runs at most once per key among concurrent callers. It must
        write the complete content into the binary file object it receives;
        if it raises, nothing is stored under key and the error propagates.
        """
        with self._lock_for(key):
            if not self.exists(key):
                self._populate(key, populate)
            else:
                logger.debug("scratch hit for %r", key)
            return self.read(key)

    def _lock_for(self, key: str) -> threading.Lock:
        # Locks live only while some caller holds a reference to them
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _populate(self, key: str, populate) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w+b") as dest:
                populate(dest)
            path = self.path(key)
            if self._hashed(key) is not None:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path + KEY_SUFFIX, "w", encoding="utf-8") as f:
                    f.write(key)
            os.replace(tmp_path, path)
        except BaseException:
            logger.warning("populate for %r failed, discarding partial data", key)
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("scratch populated %r", key)
