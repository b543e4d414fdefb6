"""Tests for stepflow.dag."""

from __future__ import annotations

import pytest

from stepflow.dag import build_graph
from stepflow.dsl import job, sh
from stepflow.errors import ErrorKind, ValidationError


def _job(name: str, *needs: str):
    return job(name, sh("noop", "true"), needs=list(needs))


class TestBuildGraph:
    def test_diamond_order(self) -> None:
        graph = build_graph([_job("A"), _job("B", "A"), _job("C", "A"), _job("D", "B", "C")])
        order = graph.order
        assert order[0] == "A"
        assert order[-1] == "D"
        assert set(order[1:3]) == {"B", "C"}
        assert graph.levels == [["A"], ["B", "C"], ["D"]]

    def test_declaration_order_breaks_ties(self) -> None:
        graph = build_graph([_job("z"), _job("a"), _job("m")])
        assert graph.order == ["z", "a", "m"]

    def test_needs_and_dependents(self) -> None:
        graph = build_graph([_job("A"), _job("B", "A"), _job("C", "B")])
        assert graph.needs["C"] == ["B"]
        assert graph.dependents("A") == {"B"}
        assert graph.ancestors("C") == {"A", "B"}

    def test_duplicate_needs_entries_collapse(self) -> None:
        graph = build_graph([_job("A"), _job("B", "A", "A")])
        assert graph.needs["B"] == ["A"]


class TestValidation:
    def test_unknown_dependency(self) -> None:
        with pytest.raises(ValidationError) as exc:
            build_graph([_job("A", "ghost")])
        assert exc.value.kind == ErrorKind.UNKNOWN_DEPENDENCY
        assert exc.value.job == "A"
        assert "ghost" in exc.value.message

    def test_two_cycle(self) -> None:
        with pytest.raises(ValidationError) as exc:
            build_graph([_job("A", "B"), _job("B", "A")])
        assert exc.value.kind == ErrorKind.CYCLE
        cycle = exc.value.details["cycle"]
        assert set(cycle) == {"A", "B"}
        assert cycle[0] == cycle[-1]
        assert "A" in exc.value.message and "B" in exc.value.message

    def test_cycle_behind_valid_prefix(self) -> None:
        with pytest.raises(ValidationError) as exc:
            build_graph([_job("root"), _job("x", "root", "z"), _job("y", "x"), _job("z", "y")])
        cycle = exc.value.details["cycle"]
        assert set(cycle) == {"x", "y", "z"}
        assert "root" not in cycle

    def test_self_dependency(self) -> None:
        with pytest.raises(ValidationError) as exc:
            build_graph([_job("A", "A")])
        assert exc.value.details["cycle"] == ["A", "A"]

    def test_duplicate_job(self) -> None:
        with pytest.raises(ValidationError) as exc:
            build_graph([_job("A"), _job("A")])
        assert exc.value.kind == ErrorKind.DUPLICATE_JOB
