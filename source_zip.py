"""ZIP archive content source with a write-through extraction cache.

The container lives in a scratch space under the key "original". Each entry
that gets read is extracted once into the key "extracted_<name>" and served
from there afterwards.
"""

import logging
import shutil
import zipfile
import zlib

import zipcodec
from source import (
    ContentSource, Entry, StreamSource, ArchiveWriteError, ExtractionError,
    SourceError, first_match, has_wildcard, write_source,
)

logger = logging.getLogger(__name__)

ORIGINAL_KEY = "original"
EXTRACTED_PREFIX = "extracted_"

# zipfile raises NotImplementedError for compression methods it cannot decode
# (Deflate64, for one) and RuntimeError for encrypted entries
READ_ERRORS = (
    zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, OSError, EOFError,
    NotImplementedError, RuntimeError,
)
WRITE_ERRORS = (
    zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, OSError,
    NotImplementedError, RuntimeError,
)


def extracted_key(name: str) -> str:
    return EXTRACTED_PREFIX + name


class ZipSource(ContentSource):
    """Expose the entries of a ZIP archive held in a scratch space."""

    DEFAULT_OPTIONS = {"extension": "zip"}

    def __init__(self, scratch, options: dict | None = None, on_modified=None):
        super().__init__(options, on_modified)
        self.scratch = scratch

    def has_archive(self) -> bool:
        return self.scratch.exists(ORIGINAL_KEY)

    def archive_path(self) -> str | None:
        """Filesystem path of the container, or None if there is none yet."""
        if not self.has_archive():
            return None
        return self.scratch.path(ORIGINAL_KEY)

    def filename(self, stem: str) -> str:
        return f"{stem}.{self.options['extension']}"

    def contents(self) -> list[Entry]:
        if not self.has_archive():
            return []
        try:
            with zipcodec.open_reader(self.scratch.path(ORIGINAL_KEY)) as reader:
                return [Entry(info.filename, info.file_size) for info in zipcodec.iter_entries(reader)]
        except (zipfile.BadZipFile, OSError) as e:
            raise SourceError(f"Cannot list ZIP archive: {e}") from e

    def resolve(self, pattern: str) -> str | None:
        if not self.has_archive():
            return None
        try:
            with zipcodec.open_reader(self.scratch.path(ORIGINAL_KEY)) as reader:
                info = self._lookup(reader, pattern)
        except (zipfile.BadZipFile, OSError) as e:
            raise ExtractionError(f"Cannot open ZIP archive: {e}") from e
        return info.filename if info is not None else None

    def _lookup(self, reader, pattern: str):
        if not has_wildcard(pattern):
            return zipcodec.find_entry(reader, pattern)
        infos = {}
        for info in zipcodec.iter_entries(reader):
            # First occurrence wins for duplicate names
            infos.setdefault(info.filename, info)
        name = first_match(pattern, infos)
        return infos[name] if name is not None else None

    def read_file(self, name: str) -> bytes | None:
        if not self.has_archive():
            return None

        if not has_wildcard(name) and self.scratch.exists(extracted_key(name)):
            logger.debug("cache hit for %r", name)
            return self.scratch.read(extracted_key(name))

        try:
            with zipcodec.open_reader(self.scratch.path(ORIGINAL_KEY)) as reader:
                info = self._lookup(reader, name)
                if info is None:
                    return None

                def populate(dest):
                    logger.debug("extracting %r (%d bytes)", info.filename, info.file_size)
                    with zipcodec.open_stream(reader, info) as stream:
                        shutil.copyfileobj(stream, dest)

                return self.scratch.fetch(extracted_key(info.filename), populate)
        except READ_ERRORS as e:
            raise ExtractionError(f"Cannot extract {name!r} from ZIP archive: {e}") from e

    def add_file(self, name: str, content) -> None:
        source = write_source(content)
        path = self.scratch.path(ORIGINAL_KEY)
        try:
            # Invalidate first: a failed write must never leave stale bytes cached
            self.scratch.delete(extracted_key(name))
            with zipcodec.open_writer(path, create=True) as writer:
                exists = name in writer.names()
                if isinstance(source, StreamSource):
                    if exists:
                        writer.replace_stream(name, source.stream)
                    else:
                        writer.add_stream(name, source.stream)
                else:
                    if exists:
                        writer.replace_bytes(name, source.data)
                    else:
                        writer.add_bytes(name, source.data)
        except WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Cannot write {name!r} to ZIP archive: {e}") from e
        logger.info("%s %r in %s", "replaced" if exists else "added", name, path)
        self._mark_modified()

    def load_archive(self, content) -> None:
        """Replace the whole container with externally supplied ZIP data.

        Every extracted entry is dropped, since any of them may have changed.
        """
        source = write_source(content)

        def populate(dest):
            if isinstance(source, StreamSource):
                shutil.copyfileobj(source.stream, dest)
            else:
                dest.write(source.data)
            dest.flush()
            if not zipfile.is_zipfile(dest):
                raise ArchiveWriteError("Supplied data is not a ZIP archive")

        try:
            self.scratch.write(ORIGINAL_KEY, populate)
        except OSError as e:
            raise ArchiveWriteError(f"Cannot store ZIP archive: {e}") from e

        for key in self.scratch.keys():
            if key.startswith(EXTRACTED_PREFIX):
                self.scratch.delete(key)
        logger.info("loaded archive into %s", self.scratch.path(ORIGINAL_KEY))
