"""
Pipeline events pushed to the consumer

Every job emits, in order: one *Started event, any number of progress
events, then exactly one terminal event (Completed, Failed or Cancelled).
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .reconcile import UpdateReport


@dataclass(frozen=True)
class PipelineEvent:
    """Base class; job_id ties events to the job that emitted them."""
    job_id: int

    terminal = False


@dataclass(frozen=True)
class QueryStarted(PipelineEvent):
    pass


@dataclass(frozen=True)
class QueryCompleted(PipelineEvent):
    report: UpdateReport

    terminal = True


@dataclass(frozen=True)
class QueryFailed(PipelineEvent):
    error: Exception

    terminal = True


@dataclass(frozen=True)
class QueryCancelled(PipelineEvent):
    terminal = True


@dataclass(frozen=True)
class InstallStarted(PipelineEvent):
    pass


@dataclass(frozen=True)
class InstallProgress(PipelineEvent):
    message: str
    fraction: Optional[float] = None
    warning: bool = False


@dataclass(frozen=True)
class InstallCompleted(PipelineEvent):
    installed: Tuple[str, ...] = ()

    terminal = True


@dataclass(frozen=True)
class InstallFailed(PipelineEvent):
    error: Exception

    terminal = True


@dataclass(frozen=True)
class InstallCancelled(PipelineEvent):
    terminal = True
