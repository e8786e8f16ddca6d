"""CLI entry point for scratchzip — inspect and modify a ZIP archive kept in a scratch directory."""

import argparse
import logging
import os
import shutil
import sys

from scratch import FileScratch
from source import ContentSource, SourceError

# Maps source tag -> (module, class, takes_scratch)
SOURCES = {
    "zip": ("source_zip", "ZipSource", True),
    "memory": ("source", "MemorySource", False),
}


def open_source(kind: str, scratch=None, options: dict | None = None, on_modified=None) -> ContentSource:
    """Build the content source registered under kind."""
    if kind not in SOURCES:
        raise ValueError(
            f"Unknown source type '{kind}'. "
            f"Supported types: {', '.join(sorted(SOURCES))}"
        )
    mod_name, cls_name, takes_scratch = SOURCES[kind]
    module = __import__(mod_name)
    cls = getattr(module, cls_name)
    if takes_scratch:
        if scratch is None:
            raise ValueError(f"Source type '{kind}' needs a scratch space")
        return cls(scratch, options=options, on_modified=on_modified)
    return cls(options=options, on_modified=on_modified)


def _fail(message: str):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def cmd_import(source, args):
    if not os.path.exists(args.file):
        _fail(f"{args.file} not found")
    with open(args.file, "rb") as f:
        source.load_archive(f)
    print(f"Imported {args.file}")


def cmd_list(source, args):
    for entry in source.contents():
        print(f"{entry.size:>10}  {entry.name}")


def cmd_cat(source, args):
    data = source.read_file(args.name)
    if data is None:
        _fail(f"no entry matches '{args.name}'")
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


def cmd_add(source, args):
    if args.file is None:
        source.add_file(args.name, sys.stdin.buffer)
    else:
        if not os.path.exists(args.file):
            _fail(f"{args.file} not found")
        with open(args.file, "rb") as f:
            source.add_file(args.name, f)
    print(f"Wrote {args.name}")


def cmd_export(source, args):
    path = source.archive_path()
    if path is None:
        _fail("scratch space holds no archive")
    dest = args.file
    if os.path.isdir(dest):
        stem = os.path.basename(os.path.normpath(source.scratch.root))
        dest = os.path.join(dest, source.filename(stem))
    shutil.copyfile(path, dest)
    print(f"Exported to {dest}")


COMMANDS = {
    "import": cmd_import,
    "list": cmd_list,
    "cat": cmd_cat,
    "add": cmd_add,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="scratchzip — cached access to a ZIP archive in a scratch directory"
    )
    parser.add_argument("-s", "--scratch", required=True, help="Scratch directory holding the archive")
    parser.add_argument("--extension", default="zip", help="Extension used when exporting to a directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log cache and archive activity")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("import", help="Load a ZIP file into the scratch directory")
    p.add_argument("file", help="ZIP file to load")

    sub.add_parser("list", help="List archive entries with their sizes")

    p = sub.add_parser("cat", help="Print an entry (wildcards * and ? allowed)")
    p.add_argument("name", help="Entry name or pattern")

    p = sub.add_parser("add", help="Add or replace an entry")
    p.add_argument("name", help="Entry name")
    p.add_argument("file", nargs="?", help="File to read content from (default: stdin)")

    p = sub.add_parser("export", help="Copy the archive out of the scratch directory")
    p.add_argument("file", help="Destination file or directory")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    source = open_source("zip", FileScratch(args.scratch), options={"extension": args.extension})
    try:
        COMMANDS[args.command](source, args)
    except SourceError as e:
        _fail(str(e))


if __name__ == "__main__":
    main()
