"""
Terminal-safe output for the coach CLI.

Streaming tokens are printed as they arrive, so a single unencodable
character must never abort a turn. Strategy: print as-is, fall back to the
terminal encoding with replacement characters, then to ASCII.
"""

import sys
from typing import TextIO

import typer


def supports_unicode(stream: TextIO | None = None) -> bool:
    """
    Check if the console can print emoji.

    Returns:
        True if the stream encoding can handle unicode.
    """
    encoding = getattr(stream or sys.stdout, "encoding", None) or "utf-8"
    try:
        "✅".encode(encoding)
        return True
    except (UnicodeEncodeError, LookupError):
        return False


# Module-level cache for unicode support detection
_UNICODE_SUPPORT = supports_unicode()


def emoji(unicode_char: str, ascii_fallback: str) -> str:
    """Return emoji if supported, otherwise the bracketed ASCII fallback (e.g. ``[STOP]``)."""
    return unicode_char if _UNICODE_SUPPORT else ascii_fallback


def _degrade(text: str, encoding: str | None) -> str:
    encoding = encoding or "utf-8"
    try:
        return text.encode(encoding, errors="replace").decode(encoding, errors="replace")
    except LookupError:
        return text.encode("ascii", errors="replace").decode("ascii")


def safe_print(text: str, end: str = "\n", flush: bool = False, err: bool = False) -> None:
    """
    Print text with terminal-encoding fallback.

    Args:
        text: Text to print
        end: String appended after the text (default: newline)
        flush: Whether to forcibly flush the stream
        err: Print to stderr instead of stdout
    """
    if err:
        safe_print_err(text, end=end, flush=flush)
        return
    try:
        typer.echo(text + end, nl=False)
    except UnicodeEncodeError:
        typer.echo(_degrade(text, sys.stdout.encoding) + end, nl=False)
    if flush:
        sys.stdout.flush()


def safe_print_err(text: str, end: str = "\n", flush: bool = False) -> None:
    """Print error text to stderr with the same fallback as ``safe_print``."""
    try:
        typer.echo(text + end, err=True, nl=False)
    except UnicodeEncodeError:
        typer.echo(_degrade(text, sys.stderr.encoding) + end, err=True, nl=False)
    if flush:
        sys.stderr.flush()
