"""Base content source interface, name resolution, and in-memory reference implementation."""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WILDCARDS = "*?"


@dataclass(frozen=True)
class Entry:
    """One named, sized file record inside a content source."""
    name: str
    size: int = 0


@dataclass(frozen=True)
class BytesSource:
    """Content to write, given as a complete byte string."""
    data: bytes


@dataclass(frozen=True)
class StreamSource:
    """Content to write, given as a readable binary stream."""
    stream: object


WriteSource = BytesSource | StreamSource


class SourceError(Exception):
    """Base error for content source operations."""
    pass


class ExtractionError(SourceError):
    """An entry's bytes could not be read out of the container."""
    pass


class ArchiveWriteError(SourceError):
    """The container could not be opened or rewritten for a modification."""
    pass


def write_source(content) -> WriteSource:
    """Wrap raw add_file content in the matching WriteSource variant."""
    if isinstance(content, (BytesSource, StreamSource)):
        return content
    if isinstance(content, str):
        return BytesSource(content.encode("utf-8"))
    if isinstance(content, (bytes, bytearray, memoryview)):
        return BytesSource(bytes(content))
    if callable(getattr(content, "read", None)):
        return StreamSource(content)
    raise TypeError(f"Cannot write content of type {type(content).__name__}")


def has_wildcard(pattern: str) -> bool:
    return any(c in WILDCARDS for c in pattern)


def compile_pattern(pattern: str) -> re.Pattern:
    """Translate a wildcard pattern into a case-insensitive regex.

    '*' matches any run of characters, '?' exactly one, and everything else
    literally. Use fullmatch: the pattern must cover the whole name.
    """
    parts = []
    for c in pattern:
        if c == "*":
            parts.append(".*")
        elif c == "?":
            parts.append(".")
        else:
            parts.append(re.escape(c))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def first_match(pattern: str, names):
    """Return the first name in iteration order that pattern selects, or None.

    Literal patterns compare exactly; wildcard patterns go through
    compile_pattern and ignore case.
    """
    if not has_wildcard(pattern):
        for name in names:
            if name == pattern:
                return name
        return None

    regex = compile_pattern(pattern)
    for name in names:
        if regex.fullmatch(name):
            return name
    return None


class ContentSource:
    """Abstract named-blob store over some underlying container.

    Reads never fail for missing data: contents() is empty and read_file()
    returns None when there is nothing to serve. Successful writes raise the
    modified flag and notify the optional on_modified callback.
    """

    DEFAULT_OPTIONS: dict = {}

    def __init__(self, options: dict | None = None, on_modified=None):
        self.options = {**self.DEFAULT_OPTIONS, **(options or {})}
        self.on_modified = on_modified
        self.modified = False

    def contents(self) -> list[Entry]:
        """Return every entry, in the source's native order."""
        raise NotImplementedError

    def resolve(self, pattern: str) -> str | None:
        """Return the name of the entry pattern refers to, or None."""
        raise NotImplementedError

    def read_file(self, name: str) -> bytes | None:
        """Return the bytes of the entry name (or wildcard pattern) refers to."""
        raise NotImplementedError

    def add_file(self, name: str, content) -> None:
        """Add entry name, or replace its content if it already exists."""
        raise NotImplementedError

    def _mark_modified(self):
        self.modified = True
        if self.on_modified is not None:
            self.on_modified(self)


class MemorySource(ContentSource):
    """In-memory content source backed by a dict of name -> bytes.

    Entries keep insertion order, which is the order wildcard resolution
    walks. String values are encoded to UTF-8.

    Example:
        MemorySource({
            "readme.txt": "Hello, world!",
            "docs/guide.txt": b"A guide",
        })
    """

    def __init__(self, files: dict | None = None, options: dict | None = None, on_modified=None):
        super().__init__(options, on_modified)
        self._files: dict[str, bytes] = {}
        for name, data in (files or {}).items():
            self._files[name] = data.encode("utf-8") if isinstance(data, str) else data

    def contents(self) -> list[Entry]:
        return [Entry(name, len(data)) for name, data in self._files.items()]

    def resolve(self, pattern: str) -> str | None:
        return first_match(pattern, self._files)

    def read_file(self, name: str) -> bytes | None:
        resolved = self.resolve(name)
        if resolved is None:
            return None
        return self._files[resolved]

    def add_file(self, name: str, content) -> None:
        source = write_source(content)
        if isinstance(source, StreamSource):
            data = source.stream.read()
        else:
            data = source.data
        self._files[name] = data
        logger.debug("stored %r (%d bytes) in memory", name, len(data))
        self._mark_modified()
