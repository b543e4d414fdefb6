"""Tests for stepflow.matrix."""

from __future__ import annotations

import pytest

from stepflow.dsl import job, matrix, sh
from stepflow.errors import ErrorKind, ValidationError
from stepflow.matrix import expand, instance_name, matrix_key
from stepflow.model import MatrixSpec


class TestProduct:
    def test_cartesian_count_and_order(self) -> None:
        combos = expand(matrix(os=["a", "b"], node=["18", "20"]))
        assert combos == [
            {"os": "a", "node": "18"},
            {"os": "a", "node": "20"},
            {"os": "b", "node": "18"},
            {"os": "b", "node": "20"},
        ]

    def test_three_axes(self) -> None:
        combos = expand(matrix(a=[1, 2], b=[1, 2, 3], c=["x", "y"]))
        assert len(combos) == 12

    def test_none_and_empty_give_one_assignment(self) -> None:
        assert expand(None) == [{}]
        assert expand(MatrixSpec()) == [{}]


class TestExclude:
    def test_exclude_removes_matching(self) -> None:
        combos = expand(matrix(os=["a", "b"], node=["x", "y"], exclude=[{"os": "b", "node": "x"}]))
        assert len(combos) == 3
        assert {"os": "b", "node": "x"} not in combos

    def test_partial_exclude_is_wildcard(self) -> None:
        combos = expand(matrix(os=["a", "b"], node=["x", "y"], exclude=[{"os": "a"}]))
        assert combos == [{"os": "b", "node": "x"}, {"os": "b", "node": "y"}]

    def test_exclude_unknown_axis(self) -> None:
        with pytest.raises(ValidationError) as exc:
            expand(matrix(os=["a"], exclude=[{"arch": "arm"}]), job="build")
        assert exc.value.kind == ErrorKind.UNKNOWN_AXIS
        assert exc.value.job == "build"

    def test_exclude_applies_after_include(self) -> None:
        combos = expand(
            matrix(
                os=["ubuntu"],
                include=[{"os": "ubuntu", "node": "20.x"}],
                exclude=[{"os": "ubuntu"}],
            )
        )
        assert combos == []


class TestInclude:
    def test_include_with_new_key_is_appended(self) -> None:
        combos = expand(matrix(os=["ubuntu", "windows"], include=[{"os": "ubuntu", "node": "20.x"}]))
        assert combos == [
            {"os": "ubuntu"},
            {"os": "windows"},
            {"os": "ubuntu", "node": "20.x"},
        ]

    def test_include_already_covered_adds_nothing(self) -> None:
        combos = expand(matrix(os=["ubuntu", "windows"], include=[{"os": "windows"}]))
        assert combos == [{"os": "ubuntu"}, {"os": "windows"}]

    def test_distinct_includes_are_kept(self) -> None:
        combos = expand(
            matrix(
                os=["ubuntu"],
                include=[{"os": "ubuntu", "node": "20"}, {"os": "ubuntu", "node": "22"}],
            )
        )
        assert combos[1:] == [{"os": "ubuntu", "node": "20"}, {"os": "ubuntu", "node": "22"}]

    def test_include_only_matrix(self) -> None:
        combos = expand(MatrixSpec(include=({"target": "wasm"}, {"target": "x86"})))
        assert combos == [{"target": "wasm"}, {"target": "x86"}]

    def test_include_without_declared_axis(self) -> None:
        with pytest.raises(ValidationError) as exc:
            expand(matrix(os=["a"], include=[{"arch": "arm"}]))
        assert exc.value.kind == ErrorKind.UNKNOWN_AXIS


class TestValidation:
    def test_empty_axis(self) -> None:
        with pytest.raises(ValidationError) as exc:
            expand(matrix(os=[]))
        assert exc.value.kind == ErrorKind.INVALID_DEFINITION

    def test_axis_must_be_a_list(self) -> None:
        with pytest.raises(ValidationError):
            MatrixSpec(axes={"os": "ubuntu"})


class TestNaming:
    def test_matrix_key(self) -> None:
        assert matrix_key({"os": "ubuntu", "node": 20}) == "ubuntu, 20"
        assert matrix_key({}) == ""

    def test_instance_name(self) -> None:
        j = job("build", sh("b", "make"))
        assert instance_name(j, {"os": "ubuntu"}) == "build (ubuntu)"
        assert instance_name(j, {}) == "build"
