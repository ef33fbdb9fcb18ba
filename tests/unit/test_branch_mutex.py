"""Tests for engine/branch_mutex.py."""

from datetime import UTC, datetime, timedelta

from spindle.engine import branch_mutex
from spindle.enums import TaskPhase

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def queued(task_factory, name, branch, minutes, phase=TaskPhase.PENDING, **kwargs):
    task = task_factory(name, branch=branch, **kwargs)
    task.metadata.creation_timestamp = T0 + timedelta(minutes=minutes)
    task.status.phase = phase
    return task


class TestCheck:
    def test_no_branch_is_always_free(self, task_factory):
        task = queued(task_factory, "a", None, 0)
        other = queued(task_factory, "b", None, 0, phase=TaskPhase.RUNNING)

        assert branch_mutex.check(task, [task, other]).free

    def test_running_sibling_holds_branch(self, task_factory):
        holder = queued(task_factory, "a", "feature", 5, phase=TaskPhase.RUNNING)
        task = queued(task_factory, "b", "feature", 0)

        verdict = branch_mutex.check(task, [holder, task])

        assert not verdict.free
        assert verdict.holder == "a"
        assert verdict.message == 'Branch "feature" is in use by Task "a"'

    def test_other_branches_do_not_block(self, task_factory):
        other = queued(task_factory, "a", "main", 0, phase=TaskPhase.RUNNING)
        task = queued(task_factory, "b", "feature", 1)

        assert branch_mutex.check(task, [other, task]).free

    def test_finished_sibling_does_not_block(self, task_factory):
        done = queued(task_factory, "a", "feature", 0, phase=TaskPhase.SUCCEEDED)
        task = queued(task_factory, "b", "feature", 1)

        assert branch_mutex.check(task, [done, task]).free

    def test_earlier_pending_sibling_goes_first(self, task_factory):
        first = queued(task_factory, "first", "feature", 0)
        second = queued(task_factory, "second", "feature", 1)

        verdict = branch_mutex.check(second, [first, second])

        assert not verdict.free
        assert verdict.message == 'Branch "feature" is queued for Task "first"'
        assert branch_mutex.check(first, [first, second]).free

    def test_ties_break_by_name(self, task_factory):
        a = queued(task_factory, "a", "feature", 0)
        b = queued(task_factory, "b", "feature", 0)

        assert branch_mutex.check(a, [a, b]).free
        assert not branch_mutex.check(b, [a, b]).free

    def test_ineligible_earlier_sibling_does_not_block(self, task_factory):
        """Test a queued sibling still waiting on dependencies does not hold the branch."""
        first = queued(task_factory, "first", "feature", 0, depends_on=["x"])
        second = queued(task_factory, "second", "feature", 1)

        assert branch_mutex.check(second, [first, second]).free
        assert not branch_mutex.check(second, [first, second], is_eligible=lambda t: True).free

    def test_rendered_branch_is_used(self, task_factory):
        holder = queued(task_factory, "a", "fix/{{ deps['x'].results.branch }}", 0, phase=TaskPhase.RUNNING)
        holder.status.branch = "fix/1"
        task = queued(task_factory, "b", "fix/1", 1)

        assert not branch_mutex.check(task, [holder, task]).free


def test_queue_order_without_timestamp_sorts_first(task_factory):
    unsaved = task_factory("z")
    saved = queued(task_factory, "a", None, 0)

    assert branch_mutex.queue_order(unsaved) < branch_mutex.queue_order(saved)
