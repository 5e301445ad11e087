"""
Progress sinks

A progress sink receives status text (and an optional completion fraction)
while a pipeline runs. It is informational only: nothing a sink does
changes the outcome of a pipeline.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .events import InstallProgress, PipelineEvent

logger = logging.getLogger(__name__)


class ProgressSink(ABC):
    """Receiver for pipeline status messages."""

    @abstractmethod
    def report(self, message: str, fraction: Optional[float] = None):
        """Report a status message, optionally with progress in [0, 1]."""

    @abstractmethod
    def warn(self, message: str):
        """Report a warning."""


class LoggingProgressSink(ProgressSink):
    """Sink that writes to a logger."""

    def __init__(self, log: logging.Logger = None):
        self.log = log or logger

    def report(self, message: str, fraction: Optional[float] = None):
        if fraction is not None:
            self.log.info(f"{message} [{fraction:.0%}]")
        else:
            self.log.info(message)

    def warn(self, message: str):
        self.log.warning(message)


class EventProgressSink(ProgressSink):
    """Sink that turns messages into InstallProgress events.

    Messages are also forwarded to an optional downstream sink.
    """

    def __init__(self, emit: Callable[[PipelineEvent], None], job_id: int,
                 forward: Optional[ProgressSink] = None):
        self._emit = emit
        self.job_id = job_id
        self.forward = forward

    def report(self, message: str, fraction: Optional[float] = None):
        self._emit(InstallProgress(job_id=self.job_id, message=message,
                                   fraction=fraction))
        if self.forward:
            self.forward.report(message, fraction)

    def warn(self, message: str):
        self._emit(InstallProgress(job_id=self.job_id, message=message,
                                   warning=True))
        if self.forward:
            self.forward.warn(message)
