"""
Unit tests for the session data model.

Tests verify:
- Forward-only lifecycle transitions
- Append-only, time-ordered tool call log
- Snapshot immutability and idempotence
- Summary policy when conclusions agree, conflict or are absent
- Persistence round trip of a session projection
"""

from dataclasses import FrozenInstanceError
from datetime import timedelta

import pytest

from debugforce.core.domain.errors import InvalidTransitionError
from debugforce.core.domain.models import (
    NO_HYPOTHESIS_CONFIRMED,
    ScenarioRun,
    ScenarioStatus,
    Session,
    SessionStatus,
    ToolInvocation,
    summarize,
)


@pytest.fixture
def session():
    return Session(original_error="TypeError: x is undefined", repo_path="/repo")


def _concluded(session, hypothesis, confirmed, confidence):
    run = ScenarioRun(session_id=session.id, hypothesis=hypothesis)
    run.transition(ScenarioStatus.INVESTIGATING)
    run.conclusion = f"checked {hypothesis}"
    run.confirmed = confirmed
    run.confidence = confidence
    run.transition(ScenarioStatus.CONCLUDED)
    session.add_scenario(run)
    return run


class TestLifecycle:
    """Tests for session and scenario state machines."""

    def test_session_moves_forward(self, session):
        session.transition(SessionStatus.RUNNING)
        session.transition(SessionStatus.CONCLUDED)
        assert session.status == SessionStatus.CONCLUDED
        assert session.status.is_terminal

    def test_session_cannot_move_backwards(self, session):
        session.transition(SessionStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            session.transition(SessionStatus.PENDING)

    def test_terminal_session_is_final(self, session):
        session.transition(SessionStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            session.transition(SessionStatus.RUNNING)

    def test_same_status_is_noop(self, session):
        session.transition(SessionStatus.PENDING)
        assert session.status == SessionStatus.PENDING

    def test_scenario_terminal_sets_ended_at(self, session):
        run = ScenarioRun(session_id=session.id, hypothesis="h")
        assert run.ended_at is None
        run.transition(ScenarioStatus.INVESTIGATING)
        run.transition(ScenarioStatus.KILLED)
        assert run.ended_at is not None

    def test_concluded_scenario_cannot_be_killed(self, session):
        run = _concluded(session, "h", True, 0.9)
        with pytest.raises(InvalidTransitionError):
            run.transition(ScenarioStatus.KILLED)

    def test_add_scenario_rejects_foreign_run(self, session):
        run = ScenarioRun(session_id="session-other", hypothesis="h")
        with pytest.raises(ValueError):
            session.add_scenario(run)


class TestToolCallLog:
    """Tests for the append-only tool call log."""

    def test_log_only_grows(self, session):
        run = ScenarioRun(session_id=session.id, hypothesis="h")
        lengths = []
        for i in range(3):
            run.record_invocation(ToolInvocation(tool_name="git", arguments={"i": i}, ok=True))
            lengths.append(len(run.tool_call_log))
        assert lengths == [1, 2, 3]

    def test_timestamps_never_go_backwards(self, session):
        run = ScenarioRun(session_id=session.id, hypothesis="h")
        first = ToolInvocation(tool_name="git", arguments={}, ok=True)
        run.record_invocation(first)
        late = ToolInvocation(
            tool_name="run_code", arguments={}, ok=False,
            timestamp=first.timestamp - timedelta(seconds=5),
        )
        run.record_invocation(late)
        assert run.tool_call_log[1].timestamp >= run.tool_call_log[0].timestamp


class TestSnapshots:
    """Tests for immutable status snapshots."""

    def test_snapshot_is_frozen(self, session):
        snapshot = session.snapshot()
        with pytest.raises(FrozenInstanceError):
            snapshot.status = SessionStatus.RUNNING

    def test_snapshot_idempotent(self, session):
        session.add_scenario(ScenarioRun(session_id=session.id, hypothesis="h"))
        session.add_observation("only fails on Node 18")
        assert session.snapshot() == session.snapshot()

    def test_snapshot_does_not_track_later_changes(self, session):
        snapshot = session.snapshot()
        session.add_observation("new")
        assert snapshot.observations == ()


class TestSummary:
    """Tests for the present-all-conclusions summary."""

    def test_no_confirmed_hypothesis(self, session):
        _concluded(session, "a", False, 0.4)
        failed = ScenarioRun(session_id=session.id, hypothesis="b")
        failed.transition(ScenarioStatus.FAILED)
        session.add_scenario(failed)

        summary = summarize(session)

        assert summary.verdict == NO_HYPOTHESIS_CONFIRMED
        assert summary.confirmed_hypotheses == ()
        assert not summary.conflict
        assert len(summary.outcomes) == 2

    def test_single_confirmed(self, session):
        _concluded(session, "stale cache", True, 0.8)
        _concluded(session, "race", False, 0.9)

        summary = summarize(session)

        assert summary.verdict == "confirmed: stale cache"
        assert summary.outcomes[0].hypothesis == "stale cache"
        assert not summary.conflict

    def test_conflicting_conclusions_are_all_kept(self, session):
        _concluded(session, "a", True, 0.6)
        _concluded(session, "b", True, 0.9)

        summary = summarize(session)

        assert summary.conflict
        assert summary.confirmed_hypotheses == ("b", "a")
        assert [o.hypothesis for o in summary.outcomes] == ["b", "a"]


class TestSerialization:
    """Tests for the persisted projection."""

    def test_round_trip(self, session):
        run = _concluded(session, "h", True, 0.7)
        run.tool_call_log.append(ToolInvocation(tool_name="git", arguments={"commands": ["log"]}, ok=True, output="x"))
        session.add_observation("obs")
        session.transition(SessionStatus.RUNNING)
        session.summary = summarize(session)

        restored = Session.from_dict(session.to_dict())

        assert restored.snapshot() == session.snapshot()
        assert restored.scenarios[run.id].tool_call_log[0].output == "x"
        assert restored.observations[0].text == "obs"
