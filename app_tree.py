#!/usr/bin/env python3
"""
Snapshot a directory tree (structure plus file contents) into a single text
report, then either write it out as static HTML or serve it once over a
throwaway local web server.
"""

from __future__ import annotations
import argparse
import html
import logging
import pathlib
import shutil
import stat
import sys
import tempfile
import threading
from dataclasses import dataclass
from typing import List, Tuple

# External deps
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import TextLexer
from rich.console import Console
from rich.progress import Progress

from app_tree_server import DeliveryServer, grace_delay_from_env

REPORT_FILENAME = "app_tree_prompt.txt"
HTML_FILENAME = "app_tree.html"
HTML_TITLE = "App Tree Analysis"
SEPARATOR = "=" * 26
INDENT_UNIT = "  "
TEXT_PREFIX = "text"
UNKNOWN_TYPE = "unknown"
BINARY_PLACEHOLDER = "[Binary file content not displayed]"
OCTET_STREAM = "application/octet-stream"

# Leading bytes of common non-text formats.
MAGIC_SIGNATURES = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
    (b"BZh", "application/x-bzip2"),
    (b"\xfd7zXZ\x00", "application/x-xz"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"\x7fELF", "application/x-executable"),
    (b"\xcf\xfa\xed\xfe", "application/x-mach-binary"),
    (b"\xfe\xed\xfa\xcf", "application/x-mach-binary"),
    (b"MZ", "application/vnd.microsoft.portable-executable"),
    (b"\x00asm", "application/wasm"),
    (b"SQLite format 3\x00", "application/vnd.sqlite3"),
    (b"OggS", "audio/ogg"),
    (b"fLaC", "audio/x-flac"),
    (b"ID3", "audio/mpeg"),
    (b"RIFF", "audio/x-wav"),
    (b"wOFF", "font/woff"),
    (b"wOF2", "font/woff2"),
]

logger = logging.getLogger("app_tree")


@dataclass(frozen=True)
class Entry:
    path: pathlib.Path  # absolute path on disk
    kind: str           # "directory" | "file"
    depth: int

    @property
    def indent(self) -> str:
        return INDENT_UNIT * self.depth


@dataclass
class FileRecord:
    path: pathlib.Path
    size: int
    label: str
    content: bytes
    indent: str


class ReportBuffer:
    """Append-only report text. Every append holds the lock, so blocks from
    concurrent writers land whole and in the order the lock was acquired."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blocks: List[str] = []

    def append(self, block: str) -> None:
        with self._lock:
            self._blocks.append(block)

    def snapshot(self) -> str:
        with self._lock:
            return "".join(self._blocks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)


class NullProgress:
    def advance(self, n: int = 1) -> None:
        pass


class ConsoleProgress:
    """Progress bar on stderr; the total is fixed up front."""

    def __init__(self, total: int, description: str = "Processing") -> None:
        self.total = total
        self._progress = Progress(console=Console(stderr=True))
        self._task = self._progress.add_task(description, total=total)

    def advance(self, n: int = 1) -> None:
        self._progress.advance(self._task, n)

    def __enter__(self) -> "ConsoleProgress":
        self._progress.start()
        return self

    def __exit__(self, *exc) -> None:
        self._progress.stop()


def classify(data: bytes) -> Tuple[str, bool]:
    """Map raw bytes to a MIME-style label; the flag is False when nothing matched."""
    if not data:
        return UNKNOWN_TYPE, False
    text = looks_like_text(data)
    for magic, mime in MAGIC_SIGNATURES:
        if not data.startswith(magic):
            continue
        # "MZ", "ID3", "BZh"... are also ordinary words at the start of a note.
        if text and is_printable_ascii(magic):
            continue
        if magic == b"RIFF" and data[8:12] != b"WAVE":
            return "application/x-riff", True
        return mime, True
    if not text:
        return OCTET_STREAM, True
    return "text/plain", True


def looks_like_text(data: bytes) -> bool:
    if b"\x00" in data:
        return False
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def is_printable_ascii(data: bytes) -> bool:
    return all(32 <= b < 127 for b in data)


def escape_line(line: str) -> str:
    return html.escape(line, quote=True)


def render_directory(entry: Entry) -> str:
    indent = entry.indent
    return f"\n{indent}DIRECTORY: {entry.path}\n{indent}{SEPARATOR}\n"


def build_file_record(entry: Entry) -> FileRecord:
    content = entry.path.read_bytes()
    label, matched = classify(content)
    if not matched or not label:
        label = UNKNOWN_TYPE
    return FileRecord(entry.path, len(content), label, content, entry.indent)


def render_file(record: FileRecord) -> str:
    indent = record.indent
    lines = [
        "",
        f"{indent}FILE: {record.path}",
        f"{indent}TYPE: {record.label}",
        f"{indent}SIZE: {record.size} bytes",
        f"{indent}CONTENT:",
        f"{indent}{SEPARATOR}",
    ]
    if record.label.startswith(TEXT_PREFIX):
        text = record.content.decode("utf-8", errors="replace")
        lines.extend(indent + escape_line(line) for line in text.split("\n"))
    else:
        lines.append(indent + BINARY_PLACEHOLDER)
    lines.append(f"{indent}{SEPARATOR}")
    return "\n".join(lines) + "\n"


def list_children(directory: pathlib.Path) -> List[pathlib.Path]:
    # Raises OSError when the directory cannot be listed.
    return sorted(directory.iterdir(), key=lambda p: p.name)


def is_walkable_dir(path: pathlib.Path) -> bool:
    try:
        return path.is_dir() and not path.is_symlink()
    except OSError:
        return False


def count_items(root: pathlib.Path) -> int:
    """Number of filesystem objects reachable from root, root included."""
    try:
        children = list_children(root)
    except OSError:
        return 1
    total = 1
    for child in children:
        total += count_items(child) if is_walkable_dir(child) else 1
    return total


def process_file(entry: Entry, report: ReportBuffer) -> None:
    try:
        # Pipes, sockets and devices would block or never end on read.
        if not stat.S_ISREG(entry.path.stat().st_mode):
            logger.warning("Skipping non-regular file %s", entry.path)
            return
        record = build_file_record(entry)
    except OSError as e:
        logger.warning("Error reading file %s: %s", entry.path, e)
        return
    report.append(render_file(record))
    logger.debug("Processed file: %s", entry.path)


def traverse_directory(directory: pathlib.Path, report: ReportBuffer, progress=None, depth: int = 0) -> None:
    """Depth-first pass over directory: one directory block, then every child
    in name order. Read errors are logged and only cost the affected subtree."""
    if progress is None:
        progress = NullProgress()
    progress.advance()
    try:
        children = list_children(directory)
    except OSError as e:
        logger.warning("Error reading directory %s: %s", directory, e)
        return

    report.append(render_directory(Entry(directory, "directory", depth)))

    for child in children:
        if is_walkable_dir(child):
            traverse_directory(child, report, progress, depth + 1)
        else:
            progress.advance()
            process_file(Entry(child, "file", depth + 1), report)


def render_html_document(report: str) -> str:
    formatter = HtmlFormatter(nowrap=False)
    pygments_css = formatter.get_style_defs('.highlight')
    # The report is escaped as one block, not per line. The lexer folds
    # "\r\n" and "\r" into "\n", as HTML parsing would anyway.
    body = highlight(report, TextLexer(stripnl=False), formatter)
    return f"""
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{HTML_TITLE}</title>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; padding: 20px; }}
        h1 {{ color: #333; }}
        .highlight pre {{ background-color: #f4f4f4; padding: 10px; border-radius: 5px; overflow-x: auto; }}
{pygments_css}
    </style>
</head>
<body>
    <h1>{HTML_TITLE}</h1>
    {body}
</body>
</html>
"""


def export_report(report: str, mode: str, destination: pathlib.Path) -> pathlib.Path:
    """Write the report to destination as raw text or as an HTML page.

    OSError from the write is left to the caller.
    """
    if mode == "text":
        data = report.encode("utf-8")
    elif mode == "html":
        data = render_html_document(report).encode("utf-8")
    else:
        raise ValueError(f"Unknown export mode: {mode!r}")
    destination = pathlib.Path(destination)
    destination.write_bytes(data)
    logger.debug("Output written to: %s", destination)
    return destination


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("werkzeug").setLevel(logging.INFO if debug else logging.WARNING)


def resolve_root(directory: str) -> pathlib.Path:
    root = pathlib.Path(directory).resolve()
    if not root.exists():
        raise FileNotFoundError(f"No such directory: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")
    return root


def build_report(root: pathlib.Path, show_progress: bool = True) -> ReportBuffer:
    print("Counting items...")
    total = count_items(root)
    print(f"Total items: {total}")

    print("Processing files and directories...")
    report = ReportBuffer()
    if show_progress:
        with ConsoleProgress(total) as progress:
            traverse_directory(root, report, progress)
    else:
        traverse_directory(root, report)
    logger.debug("Finished traversing directory")
    return report


def run_analysis(directory: str = ".", generate_html: bool = False, show_progress: bool = True) -> int:
    try:
        root = resolve_root(directory)
    except OSError as e:
        logger.error("Error getting absolute path: %s", e)
        return 1
    logger.debug("Analyzing directory: %s", root)

    try:
        tmpdir = tempfile.mkdtemp(prefix="app-tree")
    except OSError as e:
        logger.error("Error creating temporary directory: %s", e)
        return 1
    logger.debug("Temporary directory created: %s", tmpdir)

    try:
        report = build_report(root, show_progress=show_progress)

        if generate_html:
            try:
                export_report(report.snapshot(), "html", pathlib.Path(HTML_FILENAME))
            except OSError as e:
                logger.error("Error writing to HTML file: %s", e)
                return 1
            print(f"\nAnalysis complete! Open {HTML_FILENAME} in your web browser to view the results.")
            return 0

        output_path = pathlib.Path(tmpdir, REPORT_FILENAME)
        try:
            export_report(report.snapshot(), "text", output_path)
        except OSError as e:
            logger.error("Error writing to file: %s", e)
            return 1

        server = DeliveryServer(output_path, grace_delay=grace_delay_from_env(), filename=REPORT_FILENAME)
        try:
            server.serve_once(announce=lambda url: print(f"\nServing results at {url}"))
        except OSError as e:
            logger.error("Error starting server: %s", e)
            return 1
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="app-tree",
        description="Analyze and visualize directory structures",
    )
    sub = ap.add_subparsers(dest="command", metavar="command")
    sub.required = True

    analyze = sub.add_parser(
        "analyze",
        help="Analyze the structure of a directory",
        description="Analyze the structure of a directory and serve the result via a local web server or generate a static HTML file.",
    )
    analyze.add_argument("directory", nargs="?", default=".", help="Directory to analyze (default: current directory)")
    analyze.add_argument("--html", action="store_true", help="Generate a static HTML file instead of serving via local server")
    analyze.add_argument("-d", "--debug", action="store_true", help="Enable debug mode")
    return ap


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)
    return run_analysis(args.directory, generate_html=args.html)


if __name__ == "__main__":
    sys.exit(main())
