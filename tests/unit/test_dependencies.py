"""Tests for engine/dependencies.py."""

import pytest

from spindle.engine.dependencies import Readiness, dependents_of, find_cycle, resolve
from spindle.enums import TaskPhase


def with_phase(task, phase):
    task.status.phase = phase
    return task


class TestResolve:
    def test_no_dependencies_is_ready(self, task_factory):
        verdict = resolve(task_factory("a"), [])

        assert verdict.ready
        assert verdict.dependencies == ()

    def test_all_succeeded_is_ready(self, task_factory):
        a = with_phase(task_factory("a"), TaskPhase.SUCCEEDED)
        b = with_phase(task_factory("b"), TaskPhase.SUCCEEDED)
        c = task_factory("c", depends_on=["a", "b"])

        verdict = resolve(c, [a, b, c])

        assert verdict.ready
        assert [t.name for t in verdict.dependencies] == ["a", "b"]

    @pytest.mark.parametrize("phase", [TaskPhase.PENDING, TaskPhase.WAITING, TaskPhase.RUNNING])
    def test_unfinished_dependency_waits(self, task_factory, phase):
        a = with_phase(task_factory("a"), phase)
        b = task_factory("b", depends_on=["a"])

        verdict = resolve(b, [a, b])

        assert verdict.readiness == Readiness.WAITING
        assert verdict.message == 'Waiting for dependency "a"'

    def test_failed_dependency_fails(self, task_factory):
        a = with_phase(task_factory("a"), TaskPhase.FAILED)
        b = task_factory("b", depends_on=["a"])

        verdict = resolve(b, [a, b])

        assert verdict.failed
        assert verdict.message == 'Dependency "a" failed'

    def test_failure_takes_precedence_over_waiting(self, task_factory):
        a = with_phase(task_factory("a"), TaskPhase.RUNNING)
        b = with_phase(task_factory("b"), TaskPhase.FAILED)
        c = task_factory("c", depends_on=["a", "b"])

        assert resolve(c, [a, b, c]).failed

    def test_missing_dependency_fails(self, task_factory):
        b = task_factory("b", depends_on=["ghost"])

        verdict = resolve(b, [b])

        assert verdict.failed
        assert verdict.message == 'Dependency "ghost" not found'

    def test_dependencies_are_namespace_scoped(self, task_factory):
        a = with_phase(task_factory("a", namespace="other"), TaskPhase.SUCCEEDED)
        b = task_factory("b", depends_on=["a"])

        assert resolve(b, [a, b]).failed


class TestFindCycle:
    def test_acyclic(self):
        assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None

    def test_two_node_cycle(self):
        assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]

    def test_longer_cycle(self):
        cycle = find_cycle({"a": ["b"], "b": ["c"], "c": ["a"], "d": ["a"]})

        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_unknown_names_are_leaves(self):
        assert find_cycle({"a": ["missing"]}) is None


def test_dependents_of(task_factory):
    a = task_factory("a")
    b = task_factory("b", depends_on=["a"])
    c = task_factory("c", depends_on=["b"])

    assert [t.name for t in dependents_of("a", [a, b, c])] == ["b"]
