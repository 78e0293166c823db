"""
Operation Orchestrator Tests

Submission, polling to an outcome, deadlines and cancellation.
"""
import threading
import time
from unittest.mock import MagicMock

import pytest

from csm_admin.client.cfs import ConfigSession
from csm_admin.client.pcs import PowerTask, Transition
from csm_admin.config import ClientConfig
from csm_admin.errors import RequestRejected, SubmissionFailed, TransportError
from csm_admin.nodeset import NodeSet
from csm_admin.orchestrator import (
    CfsSessionBackend,
    NodeState,
    NodeStatus,
    OperationBackend,
    OperationKind,
    OperationOrchestrator,
    OperationReport,
    OperationRequest,
    OperationSession,
    OrchestratorConfig,
    PowerTransitionBackend,
    SessionState,
    classify_outcome,
)
from csm_admin.deadline import Deadline
from csm_admin.xname import parse

N0, N1, N2, N3 = (parse(f"x1000c0s0b0n{i}") for i in range(4))


def fast_config(**overrides):
    values = dict(poll_interval=0.01, poll_jitter=0.0, operation_deadline=5.0, cancel_timeout=1.0)
    values.update(overrides)
    return OrchestratorConfig(**values)


class ScriptedBackend(OperationBackend):
    """Backend whose poll results come from a function of the poll number."""

    kind = OperationKind.POWER

    def __init__(self, script=None, fail_submit_at=None, cancel_delay=0.0, poll_delay=0.0):
        self.script = script or (lambda number, targets: {x: NodeState(NodeStatus.IN_PROGRESS) for x in targets})
        self.fail_submit_at = fail_submit_at
        self.cancel_delay = cancel_delay
        self.submitted = []
        self.cancelled = []
        self.poll_delay = poll_delay
        self.poll_deadlines = []
        self.polls = 0

    def submit(self, request, targets, deadline=None):
        if self.fail_submit_at is not None and len(self.submitted) == self.fail_submit_at:
            raise RequestRejected("pcs", "https://api.example.com/transitions", 400)
        job_id = f"job-{len(self.submitted)}"
        self.submitted.append((job_id, targets))
        return job_id

    def poll(self, job_id, targets, deadline=None):
        self.poll_deadlines.append(deadline)
        time.sleep(self.poll_delay)
        self.polls += 1
        return self.script(self.polls, targets)

    def cancel(self, job_id, targets, deadline=None):
        time.sleep(self.cancel_delay)
        self.cancelled.append(job_id)


def succeed_after(polls):
    def script(number, targets):
        status = NodeStatus.SUCCEEDED if number >= polls else NodeStatus.IN_PROGRESS
        return {x: NodeState(status) for x in targets}

    return script


class TestEndToEnd:
    """Power-off over PCS where one node never leaves Pending."""

    def test_stuck_node_times_out_and_operation_partially_fails(self, quad):
        power = MagicMock()
        power.create_transition.return_value = "t-1"
        power.get_transition.return_value = Transition(
            "t-1",
            "in-progress",
            tasks=[
                PowerTask(str(N0), "succeeded"),
                PowerTask(str(N1), "succeeded"),
                PowerTask(str(N2), "new"),
                PowerTask(str(N3), "succeeded"),
            ],
        )
        orchestrator = OperationOrchestrator([PowerTransitionBackend(power)], fast_config(operation_deadline=0.2))

        report = orchestrator.run(OperationRequest.power(NodeSet.from_hostlist("x1000c0s0b0n[0-3]"), "off"))

        assert report.outcome == SessionState.PARTIALLY_FAILED
        assert report.succeeded == NodeSet([N0, N1, N3])
        assert report.timed_out == NodeSet([N2])
        assert set(report.nodes) == {N0, N1, N2, N3}
        assert report.job_ids == ("t-1",)
        power.abort_transition.assert_not_called()

    def test_all_succeed(self, quad):
        backend = ScriptedBackend(succeed_after(3))
        report = OperationOrchestrator([backend], fast_config()).run(OperationRequest.power(quad, "on"))
        assert report.outcome == SessionState.COMPLETED
        assert report.counts()["succeeded"] == 4
        assert report.polls == 3

    def test_config_sessions_per_batch(self, quad):
        configuration = MagicMock()
        configuration.list_sessions.return_value = []
        configuration.create_session.side_effect = [ConfigSession("s-a"), ConfigSession("s-b")]
        configuration.get_session.side_effect = lambda name, deadline=None: ConfigSession(
            name, status="complete", succeeded="true" if name == "s-a" else "false"
        )
        orchestrator = OperationOrchestrator([CfsSessionBackend(configuration)], fast_config(batch_size=2))

        report = orchestrator.run(OperationRequest.config_session(quad, "compute-23.7"))

        assert report.outcome == SessionState.PARTIALLY_FAILED
        assert report.job_ids == ("s-a", "s-b")
        assert report.succeeded == NodeSet([N0, N1])
        assert report.failed == NodeSet([N2, N3])
        configuration.delete_session.assert_not_called()

    def test_from_clients_covers_every_kind(self):
        clients = MagicMock()
        clients.config = ClientConfig(poll_interval=1.5)
        orchestrator = OperationOrchestrator.from_clients(clients)
        assert set(orchestrator.backends) == set(OperationKind)
        assert orchestrator.config.poll_interval == 1.5


class TestOutcomes:
    def test_classify(self):
        ok = NodeState(NodeStatus.SUCCEEDED)
        failed = NodeState.failed("boom")
        late = NodeState(NodeStatus.TIMED_OUT)
        assert classify_outcome({N0: ok, N1: ok}) == SessionState.COMPLETED
        assert classify_outcome({N0: ok, N1: failed}) == SessionState.PARTIALLY_FAILED
        assert classify_outcome({N0: ok, N1: late}) == SessionState.PARTIALLY_FAILED
        assert classify_outcome({N0: failed, N1: late}) == SessionState.FAILED
        assert classify_outcome({N0: late, N1: late}) == SessionState.TIMED_OUT

    def test_classify_requires_terminal_nodes(self):
        with pytest.raises(ValueError):
            classify_outcome({N0: NodeState.pending()})

    def test_all_failed(self, quad):
        backend = ScriptedBackend(lambda number, targets: {x: NodeState.failed("no power") for x in targets})
        report = OperationOrchestrator([backend], fast_config()).run(OperationRequest.power(quad, "on"))
        assert report.outcome == SessionState.FAILED
        assert report.retry_targets == quad

    def test_all_timed_out(self, quad):
        backend = ScriptedBackend()
        report = OperationOrchestrator([backend], fast_config(operation_deadline=0.05)).run(
            OperationRequest.power(quad, "on")
        )
        assert report.outcome == SessionState.TIMED_OUT
        assert report.timed_out == quad

    def test_poll_failures_are_tolerated(self, quad):
        def script(number, targets):
            if number == 1:
                raise TransportError("pcs", "GET", "https://api.example.com/transitions/job-0", 5, status=503)
            return {x: NodeState(NodeStatus.SUCCEEDED) for x in targets}

        orchestrator = OperationOrchestrator([ScriptedBackend(script)], fast_config())
        session = orchestrator.submit(OperationRequest.power(quad, "on"))
        report = orchestrator.wait(session)
        assert report.outcome == SessionState.COMPLETED
        assert session.poll_failures == 1

    def test_report_to_dict(self, quad):
        backend = ScriptedBackend(succeed_after(1))
        report = OperationOrchestrator([backend], fast_config()).run(OperationRequest.power(quad, "on"))
        data = report.to_dict()
        assert data["outcome"] == "completed"
        assert data["kind"] == "power"
        assert data["nodes"]["x1000c0s0b0n0"] == {"status": "succeeded"}
        assert data["correlation_id"]


class TestSubmission:
    def test_empty_target_set(self):
        orchestrator = OperationOrchestrator([ScriptedBackend()], fast_config())
        with pytest.raises(SubmissionFailed):
            orchestrator.submit(OperationRequest.power(NodeSet(), "off"))

    def test_invalid_parameters(self, quad):
        orchestrator = OperationOrchestrator([PowerTransitionBackend(MagicMock())], fast_config())
        with pytest.raises(SubmissionFailed) as exc_info:
            orchestrator.submit(OperationRequest.power(quad, "explode"))
        assert exc_info.value.kind == "power"

    def test_no_backend_for_kind(self, quad):
        orchestrator = OperationOrchestrator([ScriptedBackend()], fast_config())
        with pytest.raises(SubmissionFailed):
            orchestrator.submit(OperationRequest.configure(quad, "compute"))

    def test_backend_refusal(self, quad):
        orchestrator = OperationOrchestrator([ScriptedBackend(fail_submit_at=0)], fast_config())
        with pytest.raises(SubmissionFailed) as exc_info:
            orchestrator.submit(OperationRequest.power(quad, "off"))
        assert isinstance(exc_info.value.cause, RequestRejected)

    def test_batches(self, quad):
        backend = ScriptedBackend(succeed_after(1))
        orchestrator = OperationOrchestrator([backend], fast_config(batch_size=3))
        report = orchestrator.run(OperationRequest.power(quad, "off"))
        assert [len(targets) for _, targets in backend.submitted] == [3, 1]
        assert report.job_ids == ("job-0", "job-1")
        assert report.outcome == SessionState.COMPLETED

    def test_failed_batch_cancels_earlier_batches(self, quad):
        backend = ScriptedBackend(fail_submit_at=1)
        orchestrator = OperationOrchestrator([backend], fast_config(batch_size=2))
        with pytest.raises(SubmissionFailed):
            orchestrator.submit(OperationRequest.power(quad, "off"))
        assert backend.cancelled == ["job-0"]


class TestCancellation:
    def test_cancel_running_operation(self, quad):
        backend = ScriptedBackend()
        orchestrator = OperationOrchestrator([backend], fast_config(poll_interval=0.02))
        handle = orchestrator.start(OperationRequest.power(quad, "off"))
        time.sleep(0.1)

        report = handle.cancel()

        assert report.outcome == SessionState.CANCELLED
        assert handle.done()
        assert backend.cancelled == ["job-0"]
        assert set(report.nodes) == set(quad)
        assert all(state.status == NodeStatus.IN_PROGRESS for state in report.nodes.values())

    def test_cancel_issued_once(self, quad):
        backend = ScriptedBackend()
        handle = OperationOrchestrator([backend], fast_config()).start(OperationRequest.power(quad, "off"))
        first = handle.cancel()
        second = handle.cancel()
        assert first is second
        assert backend.cancelled == ["job-0"]

    def test_cancel_before_first_poll(self, quad):
        backend = ScriptedBackend()
        cancel_event = threading.Event()
        cancel_event.set()
        report = OperationOrchestrator([backend], fast_config()).run(OperationRequest.power(quad, "off"), cancel_event)
        assert report.outcome == SessionState.CANCELLED
        assert backend.polls == 0
        assert all(state.status == NodeStatus.PENDING for state in report.nodes.values())

    def test_cancel_is_bounded(self, quad):
        backend = ScriptedBackend(cancel_delay=2.0)
        orchestrator = OperationOrchestrator([backend], fast_config(cancel_timeout=0.1))
        handle = orchestrator.start(OperationRequest.power(quad, "off"))

        started = time.monotonic()
        report = handle.cancel(timeout=1.5)

        assert report is not None
        assert report.outcome == SessionState.CANCELLED
        assert time.monotonic() - started < 1.5

    def test_cancel_during_in_flight_poll(self, quad):
        backend = ScriptedBackend(poll_delay=3.0)
        orchestrator = OperationOrchestrator([backend], fast_config(cancel_timeout=0.5))
        handle = orchestrator.start(OperationRequest.power(quad, "off"))
        time.sleep(0.1)
        assert backend.poll_deadlines

        started = time.monotonic()
        report = handle.cancel()

        assert report is not None
        assert report.outcome == SessionState.CANCELLED
        assert time.monotonic() - started < 1.5
        assert set(report.nodes) == set(quad)
        assert backend.cancelled == ["job-0"]

    def test_late_poll_result_is_discarded(self, quad):
        release = threading.Event()

        def script(number, targets):
            release.wait(5)
            return {x: NodeState(NodeStatus.SUCCEEDED) for x in targets}

        backend = ScriptedBackend(script)
        handle = OperationOrchestrator([backend], fast_config()).start(OperationRequest.power(quad, "off"))
        time.sleep(0.1)

        report = handle.cancel()
        release.set()
        time.sleep(0.2)

        assert report.outcome == SessionState.CANCELLED
        assert all(state.status == NodeStatus.PENDING for state in handle.snapshot().values())
        assert handle.session.poll_count == 0

    def test_cancel_reports_even_when_worker_is_stuck(self, quad):
        backend = ScriptedBackend(cancel_delay=2.0)
        orchestrator = OperationOrchestrator([backend], fast_config(cancel_timeout=1.0))
        handle = orchestrator.start(OperationRequest.power(quad, "off"))
        time.sleep(0.05)

        started = time.monotonic()
        report = handle.cancel(timeout=0.2)

        assert time.monotonic() - started < 0.8
        assert report.outcome == SessionState.CANCELLED
        assert handle.state == SessionState.CANCELLED
        assert handle.result(3.0) is report

    def test_completed_nodes_keep_their_status(self, quad):
        def script(number, targets):
            return {x: NodeState(NodeStatus.SUCCEEDED if x == N0 else NodeStatus.IN_PROGRESS) for x in targets}

        backend = ScriptedBackend(script)
        handle = OperationOrchestrator([backend], fast_config()).start(OperationRequest.power(quad, "off"))
        time.sleep(0.1)
        report = handle.cancel()
        assert report.nodes[N0].status == NodeStatus.SUCCEEDED
        assert report.nodes[N3].status == NodeStatus.IN_PROGRESS


class TestPollDeadlines:
    def test_poll_receives_operation_deadline(self, quad):
        backend = ScriptedBackend(succeed_after(2))
        orchestrator = OperationOrchestrator([backend], fast_config())
        session = orchestrator.submit(OperationRequest.power(quad, "on"))
        orchestrator.wait(session)

        assert len(backend.poll_deadlines) == 2
        assert all(deadline is session.deadline for deadline in backend.poll_deadlines)

    def test_slow_poll_cut_off_at_deadline(self, quad):
        backend = ScriptedBackend(poll_delay=2.0)
        orchestrator = OperationOrchestrator([backend], fast_config(operation_deadline=0.2))

        started = time.monotonic()
        report = orchestrator.run(OperationRequest.power(quad, "on"))

        assert time.monotonic() - started < 1.0
        assert report.outcome == SessionState.TIMED_OUT
        assert report.timed_out == quad

    def test_unexpected_poll_error_propagates(self, quad):
        def script(number, targets):
            raise RuntimeError("backend bug")

        orchestrator = OperationOrchestrator([ScriptedBackend(script)], fast_config())
        with pytest.raises(RuntimeError):
            orchestrator.run(OperationRequest.power(quad, "on"))


class TestSession:
    """Session bookkeeping."""

    def setup_method(self):
        request = OperationRequest.power(NodeSet([N0, N1]), "off")
        self.session = OperationSession(request, [], Deadline(10))

    def test_terminal_states_are_sticky(self):
        self.session.apply({N0: NodeState(NodeStatus.SUCCEEDED)})
        changed = self.session.apply({N0: NodeState(NodeStatus.IN_PROGRESS)})
        assert changed == 0
        assert self.session.snapshot()[N0].status == NodeStatus.SUCCEEDED

    def test_updates_after_terminal_state_dropped(self):
        self.session.set_state(SessionState.CANCELLED)
        assert self.session.apply({N0: NodeState(NodeStatus.SUCCEEDED)}) == 0
        assert self.session.snapshot()[N0].status == NodeStatus.PENDING
        assert self.session.poll_count == 0

    def test_unknown_nodes_ignored(self):
        self.session.apply({N3: NodeState(NodeStatus.SUCCEEDED)})
        assert N3 not in self.session.snapshot()

    def test_expire_remaining(self):
        self.session.apply({N0: NodeState(NodeStatus.SUCCEEDED)})
        self.session.expire_remaining()
        snapshot = self.session.snapshot()
        assert snapshot[N0].status == NodeStatus.SUCCEEDED
        assert snapshot[N1].status == NodeStatus.TIMED_OUT
        assert self.session.all_terminal()

    def test_report_from_session(self):
        self.session.set_state(SessionState.CANCELLED)
        report = OperationReport.from_session(self.session)
        assert list(report.nodes) == [N0, N1]
        assert report.outcome == SessionState.CANCELLED


class TestJitter:
    def test_interval_bounds(self):
        low = OperationOrchestrator([], fast_config(poll_interval=3.0, poll_jitter=0.1), rng=lambda: 0.0)
        high = OperationOrchestrator([], fast_config(poll_interval=3.0, poll_jitter=0.1), rng=lambda: 1.0)
        middle = OperationOrchestrator([], fast_config(poll_interval=3.0, poll_jitter=0.1), rng=lambda: 0.5)
        assert low._next_interval() == pytest.approx(2.7)
        assert high._next_interval() == pytest.approx(3.3)
        assert middle._next_interval() == pytest.approx(3.0)
