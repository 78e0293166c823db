"""
Operation Orchestrator

Submits a multi-node operation to its backend, polls it to a terminal
outcome and always returns a report covering every targeted node.

Lifecycle:
    Submitted -> Polling -> Completed | PartiallyFailed | Failed | TimedOut | Cancelled

Features:
- Targets split into batches, one backend job per batch
- Fixed poll interval with jitter; waits and in-flight polls are
  interruptible by cancellation and bounded by the deadline
- Poll cycles applied atomically; terminal node states are sticky
- Nodes still pending at the deadline reported as timed out
- Cancellation issues one bounded best-effort backend cancel per job

Usage:
    from csm_admin.orchestrator import OperationOrchestrator, OperationRequest

    orchestrator = OperationOrchestrator.from_clients(clients)
    report = orchestrator.run(OperationRequest.power(nodes, "off"))
    print(report.outcome, report.timed_out.fold())

    # Or in the background
    handle = orchestrator.start(OperationRequest.boot(nodes, "compute-template"))
    ...
    report = handle.cancel()
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from ..deadline import Deadline
from ..errors import CsmError, SubmissionFailed
from ..log_context import generate_correlation_id, operation_context, run_in_context
from ..xname import Xname
from .backends import (
    BootSessionBackend,
    CfsSessionBackend,
    ConfigApplyBackend,
    OperationBackend,
    PowerTransitionBackend,
)
from .models import (
    BackendJob,
    NodeState,
    OperationKind,
    OperationReport,
    OperationRequest,
    OperationSession,
    SessionState,
    classify_outcome,
)

logger = logging.getLogger(__name__)

BACKEND_ERRORS = (CsmError, KeyError, ValueError)

# How often an in-flight poll is checked for cancellation
POLL_CHECK_INTERVAL = 0.05


@dataclass
class OrchestratorConfig:
    poll_interval: float = 3.0
    poll_jitter: float = 0.1  # +/- fraction of poll_interval
    operation_deadline: float = 900.0
    cancel_timeout: float = 10.0
    batch_size: int = 0  # 0 = one job for all targets

    @classmethod
    def from_client_config(cls, config) -> "OrchestratorConfig":
        return cls(
            poll_interval=config.poll_interval,
            poll_jitter=config.poll_jitter,
            operation_deadline=config.operation_deadline,
            cancel_timeout=config.cancel_timeout,
            batch_size=config.batch_size,
        )


class OperationHandle:
    """A session being driven on a background thread."""

    def __init__(self, orchestrator: "OperationOrchestrator", session: OperationSession):
        self.session = session
        self._orchestrator = orchestrator
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._report: Optional[OperationReport] = None
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._thread = run_in_context(self._run)

    def _run(self):
        try:
            report = self._orchestrator.wait(self.session, self._cancel_event)
            with self._lock:
                if self._report is None:
                    self._report = report
        except Exception as e:
            logger.exception(f"Operation {self.session.correlation_id} failed unexpectedly")
            with self._lock:
                if self._report is None:
                    self._error = e
        finally:
            self._done.set()

    @property
    def state(self) -> SessionState:
        return self.session.state

    def snapshot(self) -> Dict[Xname, NodeState]:
        return self.session.snapshot()

    def done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: float = None) -> Optional[OperationReport]:
        """The final report, or None if not finished within timeout."""
        if not self._done.wait(timeout):
            return None
        if self._error is not None:
            raise self._error
        return self._report

    def cancel(self, timeout: float = None) -> OperationReport:
        """
        Request cancellation and return the cancelled report.

        If the polling thread has not produced its report within timeout,
        the report is built from the current snapshot and anything the
        thread reports later is discarded.
        """
        self._cancel_event.set()
        if timeout is None:
            timeout = self._orchestrator.config.cancel_timeout + 1.0
        report = self.result(timeout)
        if report is not None:
            return report
        with self._lock:
            if self._report is None:
                logger.warning(f"Operation {self.session.correlation_id} did not stop within {timeout:.1f}s")
                if not self.session.state.is_terminal:
                    self.session.set_state(SessionState.CANCELLED)
                self._report = OperationReport.from_session(self.session)
                self._error = None
            report = self._report
        self._done.set()
        return report


class OperationOrchestrator:
    """Drives operations through their backends."""

    def __init__(
        self,
        backends: Iterable[OperationBackend],
        config: OrchestratorConfig = None,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backends: Dict[OperationKind, OperationBackend] = {b.kind: b for b in backends}
        self.config = config or OrchestratorConfig()
        self._rng = rng
        self._clock = clock

    @classmethod
    def from_clients(cls, clients) -> "OperationOrchestrator":
        return cls(
            [
                PowerTransitionBackend(clients.power),
                BootSessionBackend(clients.boot),
                ConfigApplyBackend(clients.configuration),
                CfsSessionBackend(clients.configuration),
            ],
            OrchestratorConfig.from_client_config(clients.config),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: OperationRequest, correlation_id: str = None) -> OperationSession:
        """
        Submit every batch of request to its backend.

        Raises:
            SubmissionFailed: nothing to target, bad parameters, or a backend
                refused a batch (already-submitted batches are cancelled)
        """
        correlation_id = correlation_id or generate_correlation_id()
        with operation_context(correlation_id):
            kind = request.kind.value
            if not request.targets:
                raise SubmissionFailed(kind, "empty node set")
            backend = self.backends.get(request.kind)
            if backend is None:
                raise SubmissionFailed(kind, "no backend configured for this operation kind")
            try:
                backend.validate(request)
            except ValueError as e:
                raise SubmissionFailed(kind, str(e), cause=e)

            deadline = Deadline(self.config.operation_deadline, self._clock)
            jobs: List[BackendJob] = []
            for batch in request.targets.batches(self.config.batch_size):
                try:
                    job_id = backend.submit(request, batch, deadline=deadline)
                except BACKEND_ERRORS as e:
                    logger.error(f"Submission of {request.describe()} failed after {len(jobs)} batch(es): {e}")
                    if jobs:
                        self._cancel_jobs(backend, jobs)
                    raise SubmissionFailed(kind, str(e), cause=e)
                jobs.append(BackendJob(job_id, batch))
                logger.info(f"Submitted {kind} job {job_id} for {batch.fold()}")

            return OperationSession(request, jobs, deadline, correlation_id)

    def wait(self, session: OperationSession, cancel_event: threading.Event = None) -> OperationReport:
        """Poll session to a terminal state and return its report."""
        cancel_event = cancel_event or threading.Event()
        backend = self.backends[session.request.kind]

        with operation_context(session.correlation_id):
            session.set_state(SessionState.POLLING)
            while not session.all_terminal() and not session.deadline.expired():
                interval = session.deadline.cap(self._next_interval())
                if cancel_event.wait(interval) or self._run_poll(session, backend, cancel_event):
                    return self._cancel(session, backend)

            if not session.all_terminal():
                logger.warning(f"Deadline of {self.config.operation_deadline:.0f}s reached with nodes outstanding")
                session.expire_remaining()
            session.set_state(classify_outcome(session.snapshot()))
            report = OperationReport.from_session(session)
            logger.info(f"Operation finished: {report.outcome.value} {report.counts()}")
            return report

    def run(self, request: OperationRequest, cancel_event: threading.Event = None) -> OperationReport:
        """Submit and poll in the calling thread."""
        return self.wait(self.submit(request), cancel_event)

    def start(self, request: OperationRequest) -> OperationHandle:
        """Submit in the calling thread, then poll on a background thread."""
        return OperationHandle(self, self.submit(request))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_interval(self) -> float:
        jitter = self.config.poll_jitter * (2 * self._rng() - 1)
        return max(0.0, self.config.poll_interval * (1 + jitter))

    def _run_poll(self, session: OperationSession, backend: OperationBackend, cancel_event: threading.Event) -> bool:
        """
        Run one poll cycle on a worker thread.

        Returns True as soon as cancellation is requested, even with the
        cycle still in flight. A cycle still running at the deadline is
        abandoned; whatever it returns afterwards is ignored by the session.
        """
        failures: List[Exception] = []

        def attempt():
            try:
                self._poll_once(session, backend)
            except Exception as e:
                failures.append(e)

        poller = run_in_context(attempt)
        while True:
            poller.join(session.deadline.cap(POLL_CHECK_INTERVAL))
            if cancel_event.is_set():
                return True
            if not poller.is_alive():
                break
            if session.deadline.expired():
                logger.warning(f"Poll {session.poll_count + 1} still running at the deadline, abandoning it")
                return False
        if failures:
            raise failures[0]
        return False

    def _poll_once(self, session: OperationSession, backend: OperationBackend) -> None:
        updates: Dict[Xname, NodeState] = {}
        for job in session.jobs:
            try:
                updates.update(backend.poll(job.job_id, job.targets, deadline=session.deadline))
            except BACKEND_ERRORS as e:
                session.poll_failures += 1
                logger.warning(f"Poll of job {job.job_id} failed ({session.poll_failures} so far): {e}")
        changed = session.apply(updates)
        logger.debug(f"Poll {session.poll_count}: {changed} node(s) changed")

    def _cancel(self, session: OperationSession, backend: OperationBackend) -> OperationReport:
        logger.info(f"Cancelling {session.request.describe()}")
        session.set_state(SessionState.CANCELLED)
        self._cancel_jobs(backend, session.jobs)
        return OperationReport.from_session(session)

    def _cancel_jobs(self, backend: OperationBackend, jobs: List[BackendJob]) -> None:
        """One best-effort cancel per job, never waiting past cancel_timeout."""
        timeout = self.config.cancel_timeout

        def attempt():
            cancel_deadline = Deadline(timeout, self._clock)
            for job in jobs:
                try:
                    backend.cancel(job.job_id, job.targets, deadline=cancel_deadline)
                    logger.info(f"Cancel issued for job {job.job_id}")
                except BACKEND_ERRORS as e:
                    logger.warning(f"Cancel of job {job.job_id} failed: {e}")

        worker = run_in_context(attempt)
        worker.join(timeout)
        if worker.is_alive():
            logger.warning(f"Backend cancel still running after {timeout:.1f}s, not waiting further")
