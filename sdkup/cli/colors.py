"""Terminal colors for sdkup output.

Roles:
  error    red, failures
  warning  orange, install warnings and cancellation
  pending  green, revisions waiting to be installed
  status   blue, pipeline status lines
  heading  bold, table headers and summaries
"""

import os
import sys

RESET = '\033[0m'

# ANSI codes per role; ANSI has no true orange
ROLES = {
    'error': '\033[91m',
    'warning': '\033[93m',
    'pending': '\033[92m',
    'status': '\033[94m',
    'heading': '\033[1m',
}

_enabled = True


def init(nocolor: bool = False):
    """Enable colors unless disabled, NO_COLOR is set or stdout is not a tty."""
    global _enabled
    # https://no-color.org/
    _enabled = not (nocolor or os.environ.get('NO_COLOR') or not sys.stdout.isatty())


def paint(role: str, text: str) -> str:
    """Wrap text in the color of a role (unchanged when colors are off)."""
    if not _enabled or not text:
        return text
    return f"{ROLES[role]}{text}{RESET}"


def error(text: str) -> str:
    return paint('error', text)


def warning(text: str) -> str:
    return paint('warning', text)


def pending(text: str) -> str:
    return paint('pending', text)


def status(text: str) -> str:
    return paint('status', text)


def heading(text: str) -> str:
    return paint('heading', text)
