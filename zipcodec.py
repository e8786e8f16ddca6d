"""Thin read/write layer over zipfile for entry-level access to a container.

zipfile cannot rewrite an entry in place, so ArchiveWriter collects pending
adds and replacements and commits them by copying the container into a
temporary file next to it, then renaming that over the original.
"""

import logging
import os
import shutil
import struct
import tempfile
import time
import zipfile
from contextlib import contextmanager

logger = logging.getLogger(__name__)

COPY_CHUNK = 1 << 16
ZIP64_EXTRA_ID = 0x0001
DATA_DESCRIPTOR_FLAG = 0x08
DATA_DESCRIPTOR_SIGNATURE = 0x08074B50
# Field positions in zipfile.structFileHeader
FH_FILENAME_LENGTH = 10
FH_EXTRA_FIELD_LENGTH = 11


@contextmanager
def open_reader(path: str):
    """Open the container at path for lookups and entry streams."""
    with zipfile.ZipFile(path, "r") as zf:
        yield zf


def iter_entries(reader: zipfile.ZipFile):
    """Yield ZipInfo records in container order."""
    yield from reader.infolist()


def find_entry(reader: zipfile.ZipFile, name: str) -> zipfile.ZipInfo | None:
    """Return the first entry named exactly name, or None."""
    for info in reader.infolist():
        if info.filename == name:
            return info
    return None


def open_stream(reader: zipfile.ZipFile, info: zipfile.ZipInfo):
    """Return a readable stream of the entry's decompressed bytes."""
    return reader.open(info, "r")


def open_writer(path: str, create: bool = True) -> "ArchiveWriter":
    return ArchiveWriter(path, create=create)


def _clone_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    clone = zipfile.ZipInfo(info.filename, info.date_time)
    clone.compress_type = info.compress_type
    clone.comment = info.comment
    clone.create_system = info.create_system
    clone.external_attr = info.external_attr
    return clone


def _new_info(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, time.localtime(time.time())[:6])
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    return info


class ArchiveWriter:
    """Pending modifications to a zip container, written out on commit.

    Use as a context manager: the changes are committed when the block exits
    without an exception and discarded otherwise.
    """

    def __init__(self, path: str, create: bool = True):
        self.path = path
        if os.path.exists(path):
            # Opening validates the container before any change is queued
            with zipfile.ZipFile(path, "r") as zf:
                self._existing = [info.filename for info in zf.infolist()]
        elif create:
            self._existing = []
        else:
            raise FileNotFoundError(f"No archive at {path}")
        # name -> bytes or readable stream, in the order they were queued
        self._replacements: dict = {}
        self._additions: dict = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            self.commit()

    def names(self) -> list[str]:
        return self._existing + [n for n in self._additions if n not in self._existing]

    def add_bytes(self, name: str, data: bytes):
        self._queue_add(name, data)

    def add_stream(self, name: str, stream):
        self._queue_add(name, stream)

    def replace_bytes(self, name: str, data: bytes):
        self._queue_replace(name, data)

    def replace_stream(self, name: str, stream):
        self._queue_replace(name, stream)

    def _queue_add(self, name: str, content):
        if name in self.names():
            raise KeyError(f"Entry already exists: {name}")
        self._additions[name] = content

    def _queue_replace(self, name: str, content):
        if name in self._additions:
            self._additions[name] = content
        elif name in self._existing:
            self._replacements[name] = content
        else:
            raise KeyError(f"No such entry: {name}")

    def commit(self):
        """Write the container with all queued changes applied."""
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=".zip.tmp")
        os.close(fd)
        try:
            with zipfile.ZipFile(tmp_path, "w") as dst:
                if self._existing:
                    self._copy_existing(dst)
                for name, content in self._additions.items():
                    _write_entry(dst, _new_info(name), content)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(
            "rewrote %s: %d replaced, %d added",
            self.path, len(self._replacements), len(self._additions),
        )
        self._existing = self.names()
        self._replacements = {}
        self._additions = {}

    def _copy_existing(self, dst: zipfile.ZipFile):
        replaced = set()
        with zipfile.ZipFile(self.path, "r") as src:
            for info in src.infolist():
                name = info.filename
                # Only the first of several same-named entries is replaced
                if name in self._replacements and name not in replaced:
                    replaced.add(name)
                    _write_entry(dst, _clone_info(info), self._replacements[name])
                else:
                    _copy_raw(src, dst, info)


def _write_entry(dst: zipfile.ZipFile, info: zipfile.ZipInfo, content):
    if isinstance(content, bytes):
        dst.writestr(info, content)
    else:
        with dst.open(info, "w") as out:
            shutil.copyfileobj(content, out)


def _strip_zip64(extra: bytes) -> bytes:
    """Drop the ZIP64 extra field; zipfile writes its own when needed."""
    kept = []
    i = 0
    while i + 4 <= len(extra):
        header_id, size = struct.unpack("<HH", extra[i:i + 4])
        if header_id != ZIP64_EXTRA_ID:
            kept.append(extra[i:i + 4 + size])
        i += 4 + size
    return b"".join(kept)


def _copy_raw(src: zipfile.ZipFile, dst: zipfile.ZipFile, info: zipfile.ZipInfo):
    """Copy an entry's compressed bytes as they are, without decoding them.

    Entries using methods zipfile cannot decompress, or encrypted ones,
    survive a rewrite unchanged. zipfile has no public raw-copy call, so the
    local header and data go straight to dst.fp the way writestr does it.
    """
    clone = _clone_info(info)
    clone.flag_bits = info.flag_bits
    clone.internal_attr = info.internal_attr
    clone.extra = _strip_zip64(info.extra)
    clone.CRC = info.CRC
    clone.compress_size = info.compress_size
    clone.file_size = info.file_size

    src.fp.seek(info.header_offset)
    header = src.fp.read(zipfile.sizeFileHeader)
    if len(header) != zipfile.sizeFileHeader:
        raise zipfile.BadZipFile(f"Truncated header for {info.filename!r}")
    fields = struct.unpack(zipfile.structFileHeader, header)
    if fields[0] != zipfile.stringFileHeader:
        raise zipfile.BadZipFile(f"Bad local header for {info.filename!r}")
    src.fp.seek(fields[FH_FILENAME_LENGTH] + fields[FH_EXTRA_FIELD_LENGTH], os.SEEK_CUR)

    with dst._lock:
        dst.fp.seek(dst.start_dir)
        clone.header_offset = dst.fp.tell()
        dst._didModify = True
        dst.fp.write(clone.FileHeader())
        remaining = info.compress_size
        while remaining > 0:
            chunk = src.fp.read(min(remaining, COPY_CHUNK))
            if not chunk:
                raise zipfile.BadZipFile(f"Truncated data for {info.filename!r}")
            dst.fp.write(chunk)
            remaining -= len(chunk)
        if clone.flag_bits & DATA_DESCRIPTOR_FLAG:
            # The local header carries zeros; sizes follow the data
            if clone.file_size > zipfile.ZIP64_LIMIT or clone.compress_size > zipfile.ZIP64_LIMIT:
                fmt = "<LLQQ"
            else:
                fmt = "<LLLL"
            dst.fp.write(struct.pack(
                fmt, DATA_DESCRIPTOR_SIGNATURE, clone.CRC, clone.compress_size, clone.file_size,
            ))
        dst.filelist.append(clone)
        dst.NameToInfo[clone.filename] = clone
        dst.start_dir = dst.fp.tell()
