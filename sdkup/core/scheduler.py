"""
Background pipelines for querying and installing SDK updates

The scheduler runs at most one query job and one install job at a time,
each on its own thread. Both kinds may run concurrently.

    query:    load catalog -> reconcile -> publish report
    install:  load catalog -> select candidates -> resolve -> install

Jobs talk to the consumer only through events. Events are delivered in
emission order by a single dispatcher thread; for each job the consumer
sees one *Started event, progress events, then exactly one terminal event.
A successful install triggers a fresh query once its completion event has
been delivered.

The consumer runs on the dispatcher thread and must not call wait_idle()
or close() from there.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from .cancel import CancellationToken
from .catalog import PackageCatalog
from .config import ClientSettings
from .errors import OperationCancelled, SdkupError
from .events import (
    InstallCancelled, InstallCompleted, InstallFailed, InstallProgress, InstallStarted,
    PipelineEvent, QueryCancelled, QueryCompleted, QueryFailed, QueryStarted,
)
from .installer import InstallerFactory, InstallerOrchestrator
from .progress import EventProgressSink, LoggingProgressSink, ProgressSink
from .reconcile import UpdateReport, reconcile
from .resolver import DependencyResolver, select_candidates

logger = logging.getLogger(__name__)

DOWNLOAD_CANCELLED = "Download cancelled"

# Sentinel stopping the dispatcher
_STOP = object()


class JobKind(Enum):
    QUERY = 'query'
    INSTALL = 'install'


class PipelineState(Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class Job:
    """One pipeline run."""
    id: int
    kind: JobKind
    token: CancellationToken = field(default_factory=CancellationToken)
    state: PipelineState = PipelineState.RUNNING
    error: Optional[Exception] = None
    thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.state is PipelineState.RUNNING


class TaskScheduler:
    """Runs query and install pipelines in the background.

    Usage:
        with TaskScheduler(client, on_event) as scheduler:
            scheduler.start_query()
            scheduler.wait_idle()
            if scheduler.report.update_count:
                scheduler.start_install()
                scheduler.wait_idle()
    """

    def __init__(self, client, consumer: Callable[[PipelineEvent], None],
                 settings_factory: Callable[[], ClientSettings] = ClientSettings,
                 installer_factory: Optional[InstallerFactory] = None,
                 progress: Optional[ProgressSink] = None):
        """Initialize scheduler and start event delivery.

        Args:
            client: RepositoryClient used by every pipeline
            consumer: Callable receiving each event on the dispatcher thread
            settings_factory: Builds the ClientSettings for each job
            installer_factory: Installer strategies (default: built from
                               client.install_context() for each install)
            progress: Optional sink also receiving pipeline messages
        """
        self.client = client
        self.consumer = consumer
        self.settings_factory = settings_factory
        self.installer_factory = installer_factory
        self.progress = progress

        self._cond = threading.Condition()
        self._jobs: Dict[JobKind, Job] = {}
        self._next_id = 1
        self._report: Optional[UpdateReport] = None
        self._catalog: Optional[PackageCatalog] = None
        self._requery = False
        self._closed = False

        self._events: queue.Queue = queue.Queue()
        self._pending_events = 0
        self._dispatcher = threading.Thread(
            target=self._dispatch, name='sdkup-events', daemon=True)
        self._dispatcher.start()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def report(self) -> Optional[UpdateReport]:
        """Last published update report (None before the first query)."""
        with self._cond:
            return self._report

    @property
    def catalog(self) -> Optional[PackageCatalog]:
        """Catalog the last published report was built from."""
        with self._cond:
            return self._catalog

    def state(self, kind: JobKind) -> PipelineState:
        """State of the latest job of a kind."""
        with self._cond:
            job = self._jobs.get(kind)
            return job.state if job else PipelineState.IDLE

    def last_error(self, kind: JobKind) -> Optional[Exception]:
        with self._cond:
            job = self._jobs.get(kind)
            return job.error if job else None

    def start_query(self) -> bool:
        """Start a query job. Returns False if one is already running."""
        with self._cond:
            if self._closed:
                return False
            if self._is_running(JobKind.QUERY):
                logger.debug("Query already running")
                return False

            job = self._new_job(JobKind.QUERY)
            self._emit(QueryStarted(job_id=job.id))
            self._spawn(job, self._run_query)
        return True

    def start_install(self, paths: Optional[Iterable[str]] = None) -> bool:
        """Start an install job.

        Args:
            paths: Package paths to install, or None for every pending update

        Returns:
            False if an install is running or there is nothing to install
        """
        selection = None if paths is None else list(paths)

        with self._cond:
            if self._closed:
                return False
            if self._is_running(JobKind.INSTALL):
                logger.debug("Install already running")
                return False
            if selection is not None and not selection:
                logger.debug("Empty selection, nothing to install")
                return False
            if selection is None and (self._report is None
                                      or self._report.update_count == 0):
                logger.debug("No pending updates, nothing to install")
                return False

            job = self._new_job(JobKind.INSTALL)
            self._emit(InstallStarted(job_id=job.id))
            self._spawn(job, self._run_install, selection)
        return True

    def cancel(self, kind: JobKind) -> bool:
        """Request cancellation of the running job of a kind.

        Cancellation is cooperative: the job stops at its next checkpoint.

        Returns:
            True if a running job was signalled
        """
        with self._cond:
            job = self._jobs.get(kind)
            if job is None or not job.running:
                return False
            job.token.cancel()
        logger.info(f"Cancelling {kind.value} job {job.id}")
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job runs and every event has been delivered.

        Returns:
            False if the timeout expired first
        """
        with self._cond:
            return self._cond.wait_for(self._idle, timeout)

    def close(self):
        """Cancel running jobs, wait for them and stop event delivery."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._requery = False

            install = self._jobs.get(JobKind.INSTALL)
            if install is not None and install.running:
                logger.warning(DOWNLOAD_CANCELLED)
                self._emit(InstallProgress(job_id=install.id,
                                           message=DOWNLOAD_CANCELLED, warning=True))
                if self.progress:
                    self.progress.warn(DOWNLOAD_CANCELLED)

            threads = []
            for job in self._jobs.values():
                if job.running:
                    job.token.cancel()
                if job.thread is not None:
                    threads.append(job.thread)

        for thread in threads:
            thread.join()

        self._events.put(_STOP)
        if threading.current_thread() is not self._dispatcher:
            self._dispatcher.join()
        logger.debug("Scheduler closed")

    # =========================================================================
    # Jobs
    # =========================================================================

    def _is_running(self, kind: JobKind) -> bool:
        job = self._jobs.get(kind)
        return job is not None and job.running

    def _idle(self) -> bool:
        return (self._pending_events == 0
                and not any(job.running for job in self._jobs.values()))

    def _new_job(self, kind: JobKind) -> Job:
        job = Job(id=self._next_id, kind=kind)
        self._next_id += 1
        self._jobs[kind] = job
        return job

    def _spawn(self, job: Job, target, *args):
        job.thread = threading.Thread(
            target=target, args=(job,) + args,
            name=f"sdkup-{job.kind.value}-{job.id}", daemon=True)
        job.thread.start()
        logger.debug(f"Started {job.kind.value} job {job.id}")

    def _finish(self, job: Job, state: PipelineState, event: PipelineEvent,
                error: Exception = None):
        """Move a job to its terminal state and queue its terminal event."""
        with self._cond:
            if not job.running:
                logger.debug(f"Job {job.id} already finished ({job.state.value})")
                return
            job.state = state
            job.error = error
            self._emit(event)
            self._cond.notify_all()
        logger.debug(f"{job.kind.value.capitalize()} job {job.id}: {state.value}")

    def _run_query(self, job: Job):
        sink = self.progress or LoggingProgressSink(logger)
        try:
            job.token.raise_if_cancelled()
            catalog = self.client.load_catalog(self.settings_factory(), sink)
            job.token.raise_if_cancelled()
            report = reconcile(catalog)
        except OperationCancelled:
            self._finish(job, PipelineState.CANCELLED, QueryCancelled(job_id=job.id))
            return
        except SdkupError as e:
            logger.error(f"Query failed: {e}")
            self._finish(job, PipelineState.FAILED,
                         QueryFailed(job_id=job.id, error=e), error=e)
            return
        except Exception as e:
            logger.exception("Unexpected error while querying updates")
            self._finish(job, PipelineState.FAILED,
                         QueryFailed(job_id=job.id, error=e), error=e)
            return

        with self._cond:
            self._catalog = catalog
            self._report = report
            self._finish(job, PipelineState.SUCCEEDED,
                         QueryCompleted(job_id=job.id, report=report))

    def _run_install(self, job: Job, selection: Optional[list]):
        sink = EventProgressSink(self._emit, job.id, forward=self.progress)
        try:
            job.token.raise_if_cancelled()
            settings = self.settings_factory()
            catalog = self.client.load_catalog(settings, sink)
            job.token.raise_if_cancelled()

            obsolete = self.client.list_obsolete(catalog.remote)
            candidates = select_candidates(catalog, obsolete, selection)
            plan = DependencyResolver(sink).resolve(catalog, candidates)
            job.token.raise_if_cancelled()

            installers = self.installer_factory or \
                InstallerFactory(self.client.install_context())
            result = InstallerOrchestrator(self.client, installers, settings).run(
                plan, sink, job.token)
        except OperationCancelled:
            logger.info(f"Install job {job.id} cancelled")
            self._finish(job, PipelineState.CANCELLED, InstallCancelled(job_id=job.id))
            return
        except SdkupError as e:
            logger.error(f"Install failed: {e}")
            self._finish(job, PipelineState.FAILED,
                         InstallFailed(job_id=job.id, error=e), error=e)
            return
        except Exception as e:
            logger.exception("Unexpected error while installing updates")
            self._finish(job, PipelineState.FAILED,
                         InstallFailed(job_id=job.id, error=e), error=e)
            return

        self._finish(job, PipelineState.SUCCEEDED,
                     InstallCompleted(job_id=job.id, installed=tuple(result.installed)))

    # =========================================================================
    # Event delivery
    # =========================================================================

    def _emit(self, event: PipelineEvent):
        with self._cond:
            self._pending_events += 1
            self._events.put(event)

    def _dispatch(self):
        while True:
            event = self._events.get()
            if event is _STOP:
                break

            try:
                self.consumer(event)
            except Exception:
                logger.exception(f"Event consumer failed on {type(event).__name__}")

            if isinstance(event, InstallCompleted):
                self._refresh_after_install()
            elif isinstance(event, (QueryCompleted, QueryFailed, QueryCancelled)):
                self._run_deferred_query()

            with self._cond:
                self._pending_events -= 1
                self._cond.notify_all()

    def _refresh_after_install(self):
        with self._cond:
            if not self.start_query() and not self._closed:
                # A query started before the install finished may have read
                # stale data; run another one when it is done.
                logger.debug("Query running, deferring refresh")
                self._requery = True

    def _run_deferred_query(self):
        with self._cond:
            if self._requery:
                self._requery = False
                self.start_query()
