"""Terminal output for the insight-pipeline CLI.

Plain ``print`` with optional ANSI styling.  Styling is off when stdout
is not a terminal or ``NO_COLOR`` is set.
"""

from __future__ import annotations

import os
import re
import sys

_ANSI_RE = re.compile(r"\033\[[0-9;]*m")


def _color_enabled() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


_COLOR = _color_enabled()


def _style(code: str, text: str) -> str:
    return f"\033[{code}m{text}\033[0m" if _COLOR else text


def bold(text: str) -> str:
    return _style("1", text)


def dim(text: str) -> str:
    return _style("2", text)


def red(text: str) -> str:
    return _style("31", text)


def green(text: str) -> str:
    return _style("32", text)


def yellow(text: str) -> str:
    return _style("33", text)


def cyan(text: str) -> str:
    return _style("36", text)


# ── Messages ────────────────────────────────────────────────────────


def banner() -> None:
    print(bold("insight-pipeline") + dim(": batch AI analysis of user events"))


def header(title: str) -> None:
    print()
    print(bold(title))


def _line(marker: str, msg: str) -> None:
    print(f"  {marker} {msg}" if marker else f"  {msg}")


def success(msg: str) -> None:
    _line(green("✓"), msg)


def warn(msg: str) -> None:
    _line(yellow("!"), msg)


def error(msg: str) -> None:
    _line(red("✗"), msg)


def info(msg: str) -> None:
    _line("", msg)


def kv(key: str, value: object) -> None:
    """Print ``key: value`` indented under a header."""
    print(f"  {dim(f'{key}:')}  {value}")


def next_step(command: str, description: str = "") -> None:
    """Suggest a follow-up command."""
    suffix = f"  {dim(description)}" if description else ""
    print(f"    {cyan(command)}{suffix}")


# ── Pipeline states ─────────────────────────────────────────────────

_STATUS_STYLES = {
    "SUCCESS": green,
    "ANALYZED": green,
    "CLOSED": green,
    "RUNNING": yellow,
    "SEALED": yellow,
    "HALF_OPEN": yellow,
    "FAILED": red,
    "OPEN": red,
    "ARCHIVED": dim,
}


def status_color(status: str) -> str:
    """Color a batch or job status for display."""
    if status == "OPEN":
        # An OPEN batch is healthy; only an OPEN breaker is alarming.
        return status
    return _STATUS_STYLES.get(status, str)(status)


def breaker_color(state: str) -> str:
    return _STATUS_STYLES.get(state, str)(state)


def table(headers: list[str], rows: list[list[str]]) -> None:
    """Print rows as aligned columns.  Widths ignore ANSI codes."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], _visible_len(cell))

    print("  " + "  ".join(dim(h.ljust(w)) for h, w in zip(headers, widths)))
    for row in rows:
        padded = [
            cell + " " * (w - _visible_len(cell)) for cell, w in zip(row, widths)
        ]
        print("  " + "  ".join(padded))


def _visible_len(text: str) -> int:
    return len(_ANSI_RE.sub("", text))
