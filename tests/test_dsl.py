"""Tests for the workflow definition helpers in stepflow.dsl."""

from __future__ import annotations

import pytest

from stepflow.dsl import build, job, matrix, on, sh, uses, wf
from stepflow.errors import ErrorKind, ValidationError
from stepflow.model import StepKind


class TestSteps:
    def test_sh(self) -> None:
        step = sh("Test", "pytest -q", id="t", if_="success()", env={"CI": "1"}, timeout=30)
        assert step.kind == StepKind.RUN
        assert step.run == "pytest -q"
        assert step.condition == "success()"
        assert dict(step.env) == {"CI": "1"}
        assert step.timeout == 30

    def test_uses(self) -> None:
        step = uses("Upload", "upload-artifact@v1", with_={"name": "dist", "path": "dist"})
        assert step.kind == StepKind.USES
        assert dict(step.with_) == {"name": "dist", "path": "dist"}

    def test_step_env_is_read_only(self) -> None:
        step = sh("x", "x", env={"A": "1"})
        with pytest.raises(TypeError):
            step.env["A"] = "2"


class TestJob:
    def test_steps_in_order(self) -> None:
        j = job("ci", sh("a", "a"), steps_list=[sh("first", "first")])
        assert [s.name for s in j.steps] == ["first", "a"]

    def test_no_steps(self) -> None:
        with pytest.raises(ValueError):
            job("empty")

    def test_default_cwd(self) -> None:
        j = job("ci", sh("a", "a"), sh("b", "b", cwd="other"), cwd="app")
        assert [s.cwd for s in j.steps] == ["app", "other"]

    def test_max_parallel_must_be_positive(self) -> None:
        with pytest.raises(ValidationError) as exc:
            job("ci", sh("a", "a"), max_parallel=0)
        assert exc.value.kind == ErrorKind.INVALID_DEFINITION

    def test_duplicate_step_ids(self) -> None:
        with pytest.raises(ValidationError):
            job("ci", sh("a", "a", id="x"), sh("b", "b", id="x"))


class TestMatrixHelper:
    def test_keyword_and_mapping_axes(self) -> None:
        spec = matrix({"node-version": [18, 20]}, os=["ubuntu"], exclude=[{"node-version": 18}])
        assert list(spec.axes) == ["node-version", "os"]
        assert spec.axes["node-version"] == (18, 20)
        assert dict(spec.exclude[0]) == {"node-version": 18}

    def test_string_axis_rejected(self) -> None:
        with pytest.raises(ValidationError):
            matrix(os="ubuntu")


class TestBuilder:
    def test_builder(self) -> None:
        j = (
            build("deploy")
            .depends_on("test")
            .runs_on("linux")
            .with_env(STAGE="prod", RETRIES=3)
            .with_matrix(matrix(region=["eu", "us"]), max_parallel=1, fail_fast=False)
            .when("needs.test.result == 'success'")
            .define_step("push", "deploy ${{ matrix.region }}", id="push")
            .use_action("upload", "upload-artifact", with_={"name": "log", "path": "log.txt"})
            .output("url", "steps.push.outputs.url")
            .allow_failure()
            .build()
        )
        assert j.needs == ("test",)
        assert j.runs_on == ("linux",)
        assert dict(j.env) == {"STAGE": "prod", "RETRIES": "3"}
        assert j.max_parallel == 1
        assert j.fail_fast is False
        assert j.condition == "needs.test.result == 'success'"
        assert [s.kind for s in j.steps] == [StepKind.RUN, StepKind.USES]
        assert dict(j.outputs) == {"url": "steps.push.outputs.url"}
        assert j.continue_on_error is True

    def test_builder_without_steps(self) -> None:
        with pytest.raises(ValueError):
            build("nothing").build()


class TestWorkflow:
    def test_wf(self) -> None:
        w = wf(
            job("a", sh("a", "a")),
            job("b", sh("b", "b"), needs=["a"]),
            name="ci",
            env={"CI": "true"},
            triggers=[on("push", branches=["main"], paths=["src/*"])],
        )
        assert w.name == "ci"
        assert w.job("b").needs == ("a",)
        assert w.triggers[0].branches == ("main",)
        assert w.triggers[0].paths == ("src/*",)
        with pytest.raises(KeyError):
            w.job("missing")
