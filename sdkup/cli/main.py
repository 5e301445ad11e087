"""
sdkup command line interface

Commands:
    sdkup list            Show installed packages and pending updates
    sdkup update [PATH]   Install pending updates (or the given packages)
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .. import __version__
from ..core.config import Channel, UpdaterConfig
from ..core.events import (
    InstallCancelled, InstallCompleted, InstallFailed, InstallProgress,
    PipelineEvent, QueryFailed,
)
from ..core.repository import IndexRepositoryClient
from ..core.scheduler import JobKind, PipelineState, TaskScheduler
from . import colors, display

# Interval at which waits wake up so Ctrl+C is handled promptly
POLL_INTERVAL = 0.2


class AliasedSubParsersAction(argparse._SubParsersAction):
    """Subparsers action mapping short command aliases to their parser."""

    def add_parser(self, name, **kwargs):
        aliases = kwargs.pop('aliases', [])
        parser = super().add_parser(name, **kwargs)

        for alias in aliases:
            self._name_parser_map[alias] = parser

        return parser


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[2m',      # Dim
        'INFO': '',
        'WARNING': '\033[93m',   # Yellow/orange
        'ERROR': '\033[91m',     # Bright red
        'CRITICAL': '\033[91m',
    }
    RESET = '\033[0m'

    def format(self, record):
        message = super().format(record)
        color = self.COLORS.get(record.levelname, '')
        if color:
            return f"{color}{message}{self.RESET}"
        return message


def setup_logging(verbose: bool = False, nocolor: bool = False):
    """Configure the sdkup logger.

    Verbose mode logs everything to stderr; otherwise the CLI's own
    messages are the only output.
    """
    log = logging.getLogger('sdkup')
    for handler in list(log.handlers):
        log.removeHandler(handler)

    if verbose:
        handler = logging.StreamHandler(sys.stderr)
        fmt = '%(name)s - %(levelname)s - %(message)s'
        if nocolor or not sys.stderr.isatty():
            handler.setFormatter(logging.Formatter(fmt))
        else:
            handler.setFormatter(ColoredFormatter(fmt))
        log.setLevel(logging.DEBUG)
    else:
        handler = logging.NullHandler()
        log.setLevel(logging.WARNING)
    log.addHandler(handler)


def _channel(value: str) -> Channel:
    try:
        return Channel.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all commands and aliases."""

    parser = argparse.ArgumentParser(
        prog='sdkup',
        description='Check for and install SDK package updates',
        epilog='Use "sdkup <command> --help" for command-specific help.'
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version=f'sdkup {__version__}'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )
    parser.add_argument(
        '--nocolor',
        action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '--config',
        type=Path,
        metavar='FILE',
        help='Configuration file (default: $SDKUP_CONFIG or ~/.config/sdkup/sdkup.conf)'
    )
    parser.add_argument(
        '--sdk-root',
        type=Path,
        metavar='DIR',
        help='SDK installation directory'
    )
    parser.add_argument(
        '--repo-url',
        metavar='URL',
        help='Repository base URL'
    )
    parser.add_argument(
        '--force-http',
        action='store_true',
        default=None,
        help='Use http:// instead of https://'
    )
    parser.add_argument(
        '--channel',
        type=_channel,
        metavar='NAME',
        help='Release channel: stable, beta, dev or canary'
    )

    # Display options shared by the commands
    display_parent = argparse.ArgumentParser(add_help=False)
    display_parent.add_argument(
        '--json',
        action='store_true',
        help='JSON output for scripting'
    )
    display_parent.add_argument(
        '--flat',
        action='store_true',
        help='Flat output (one package per line, parsable)'
    )

    parser.register('action', 'parsers', AliasedSubParsersAction)

    subparsers = parser.add_subparsers(
        dest='command',
        title='commands',
        metavar='<command>'
    )

    # =========================================================================
    # list / l
    # =========================================================================
    list_parser = subparsers.add_parser(
        'list', aliases=['l'],
        help='List installed packages and available updates',
        parents=[display_parent]
    )
    list_parser.add_argument(
        '--updates', '-u',
        action='store_true',
        help='Only show packages with a pending update'
    )

    # =========================================================================
    # update / u
    # =========================================================================
    update_parser = subparsers.add_parser(
        'update', aliases=['u'],
        help='Install available updates',
        parents=[display_parent]
    )
    update_parser.add_argument(
        'packages', nargs='*',
        help='Package paths to install (default: all pending updates)'
    )
    update_parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='No confirmation'
    )

    return parser


def load_config(args) -> UpdaterConfig:
    """Load the configuration file and apply command line overrides."""
    config = UpdaterConfig.load(args.config)
    if args.sdk_root:
        config.sdk_root = args.sdk_root.expanduser()
    if args.repo_url:
        config.repository_url = args.repo_url
    if args.force_http:
        config.force_http = True
    if args.channel is not None:
        config.channel = args.channel
    return config


def _display_mode(args) -> display.DisplayMode:
    if getattr(args, 'json', False):
        return display.DisplayMode.JSON
    if getattr(args, 'flat', False):
        return display.DisplayMode.FLAT
    return display.DisplayMode.TABLE


class ConsoleReporter:
    """Event consumer printing install progress to the terminal."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def __call__(self, event: PipelineEvent):
        if isinstance(event, InstallProgress):
            if event.warning:
                print(colors.warning(f"Warning: {event.message}"), file=sys.stderr)
            elif not self.quiet:
                prefix = f"[{event.fraction:4.0%}] " if event.fraction is not None else ""
                print(f"{prefix}{event.message}")
        elif isinstance(event, InstallCompleted):
            if not self.quiet:
                print(colors.status("Refreshing packages..."))
        elif isinstance(event, InstallFailed):
            print(colors.error(f"Error: {event.error}"), file=sys.stderr)
        elif isinstance(event, InstallCancelled):
            print(colors.warning("Install cancelled"), file=sys.stderr)
        elif isinstance(event, QueryFailed):
            print(colors.error(f"Error: {event.error}"), file=sys.stderr)


def _wait(scheduler: TaskScheduler, cancel_kind: JobKind):
    """Wait for the scheduler, cancelling a job on Ctrl+C."""
    try:
        while not scheduler.wait_idle(timeout=POLL_INTERVAL):
            pass
    except KeyboardInterrupt:
        if scheduler.cancel(cancel_kind):
            print(colors.warning("\nCancelling..."), file=sys.stderr)
        scheduler.wait_idle()


def _query(scheduler: TaskScheduler):
    """Run a query and return the published report (None on failure)."""
    scheduler.start_query()
    _wait(scheduler, JobKind.QUERY)
    if scheduler.state(JobKind.QUERY) is not PipelineState.SUCCEEDED:
        return None
    return scheduler.report


def _print_report(report, args, pending_only: bool = False):
    mode = _display_mode(args)
    for line in display.format_report(report, mode, pending_only=pending_only):
        print(line)
    if mode == display.DisplayMode.TABLE:
        print(colors.heading(report.summary()))


def cmd_list(args, scheduler: TaskScheduler) -> int:
    """Show installed packages and pending updates."""
    report = _query(scheduler)
    if report is None:
        return 1
    _print_report(report, args, pending_only=args.updates)
    return 0


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return answer.lower() in ('y', 'yes')


def cmd_update(args, scheduler: TaskScheduler) -> int:
    """Install pending updates, or the packages named on the command line."""
    report = _query(scheduler)
    if report is None:
        return 1

    paths: Optional[List[str]] = args.packages or None
    if paths is None:
        if report.update_count == 0:
            print(report.summary())
            return 0
        _print_report(report, args, pending_only=True)
        count = report.update_count
    else:
        count = len(paths)

    if not args.yes and not _confirm(
            f"Install {count} package{'s' if count != 1 else ''}?"):
        print("Aborted")
        return 1

    if not scheduler.start_install(paths):
        print(colors.error("Nothing to install"), file=sys.stderr)
        return 1
    _wait(scheduler, JobKind.INSTALL)

    if scheduler.state(JobKind.INSTALL) is not PipelineState.SUCCEEDED:
        return 1

    refreshed = scheduler.report
    if refreshed is not None:
        print(colors.status(refreshed.summary()))
    return 0


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.nocolor)
    colors.init(nocolor=args.nocolor)

    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args)
    if not config.repository_url:
        print(colors.error(
            "No repository configured: use --repo-url or set repository_url "
            f"in {args.config or '~/.config/sdkup/sdkup.conf'}"), file=sys.stderr)
        return 1

    client = IndexRepositoryClient(config.repository_url, config.sdk_root,
                                   cache_dir=config.cache_dir)
    reporter = ConsoleReporter(quiet=_display_mode(args) != display.DisplayMode.TABLE)

    try:
        with TaskScheduler(client, reporter,
                           settings_factory=config.client_settings) as scheduler:
            if args.command in ('list', 'l'):
                return cmd_list(args, scheduler)
            elif args.command in ('update', 'u'):
                return cmd_update(args, scheduler)
            else:
                parser.print_help()
                return 1

    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130

    except Exception as e:
        if args.verbose:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
