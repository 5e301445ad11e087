"""Display utilities for the sdkup CLI.

Update reports can be shown as:
- table: aligned columns (default, human-friendly)
- flat: tab separated, one package per line (parsable by scripts)
- json: JSON output (programmatic consumption)
"""

import json
import shutil
from enum import Enum
from typing import Callable, List, Optional

from ..core.reconcile import PackageRecord, UpdateReport
from . import colors


class DisplayMode(Enum):
    """Output display mode."""
    TABLE = "table"
    FLAT = "flat"
    JSON = "json"


HEADERS = ("Package", "Path", "Installed", "Update")


def get_terminal_width() -> int:
    """Get terminal width, with fallback to 80 columns."""
    return shutil.get_terminal_size(fallback=(80, 24)).columns


def _truncate(text: str, width: int) -> str:
    if width <= 3 or len(text) <= width:
        return text
    return text[:width - 3] + "..."


def format_report(report: UpdateReport, mode: DisplayMode = DisplayMode.TABLE,
                  pending_only: bool = False,
                  terminal_width: Optional[int] = None) -> List[str]:
    """Format an update report.

    Args:
        report: Report to display
        mode: Output mode
        pending_only: Only show rows with a pending update
        terminal_width: Override terminal width (for testing)

    Returns:
        List of lines ready to print
    """
    rows = report.pending() if pending_only else list(report)

    if mode == DisplayMode.JSON:
        return [json.dumps({
            'updates': report.update_count,
            'packages': [_row_dict(row) for row in rows],
        }, ensure_ascii=False)]

    if mode == DisplayMode.FLAT:
        return ["\t".join((row.path, row.installed_version or "",
                           row.remote_version or "")) for row in rows]

    if not rows:
        return []
    return _format_table(rows, terminal_width or get_terminal_width())


def _row_dict(row: PackageRecord) -> dict:
    return {
        'path': row.path,
        'name': row.display_name,
        'installed': row.installed_version,
        'update': row.remote_version,
    }


def _format_table(rows: List[PackageRecord], width: int) -> List[str]:
    cells = [(row.display_name, row.path, row.installed_version or "",
              row.remote_version or "") for row in rows]
    widths = [max(len(HEADERS[i]), *(len(c[i]) for c in cells)) for i in range(4)]

    # Shrink the name column first when the table is too wide
    gap = 2
    overflow = sum(widths) + gap * 3 - width
    if overflow > 0:
        widths[0] = max(len(HEADERS[0]), widths[0] - overflow)

    def line(values, color: Callable[[str], str] = None) -> str:
        parts = []
        for i, value in enumerate(values):
            text = _truncate(value, widths[i]).ljust(widths[i])
            if color and i == 3 and value:
                text = color(text)
            parts.append(text)
        return (" " * gap).join(parts).rstrip()

    lines = [colors.heading(line(HEADERS))]
    for values in cells:
        lines.append(line(values, colors.pending))
    return lines
