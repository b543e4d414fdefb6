"""Tests for stepflow.expressions."""

from __future__ import annotations

import pytest

from stepflow.backends import DictSecretStore
from stepflow.errors import ErrorKind, EvalError
from stepflow.expressions import (
    MASK,
    Context,
    Secret,
    SecretsView,
    StatusFlags,
    embedded,
    evaluate,
    evaluate_condition,
    interpolate,
    opts_in,
    redact,
    references,
    render,
    status_functions,
    validate,
)


@pytest.fixture
def ctx() -> Context:
    return Context(
        env={"CI": "true", "COUNT": "3"},
        secrets={"TOKEN": "s3cr3t"},
        matrix={"os": "ubuntu", "node": 20},
        needs={"build": {"result": "success", "outputs": {"version": "1.2.3"}}},
        steps={"compile": {"outcome": "success", "conclusion": "success", "outputs": {"artifact": "app.tar"}}},
        event={"name": "push", "ref": "refs/heads/main"},
    )


class TestLiterals:
    @pytest.mark.parametrize(
        "expr, expected",
        [
            ("true", True),
            ("false", False),
            ("null", None),
            ("42", 42),
            ("-1.5", -1.5),
            ("0xff", 255),
            ("'it''s'", "it's"),
            ('"double"', "double"),
        ],
    )
    def test_literal(self, ctx: Context, expr: str, expected) -> None:
        assert evaluate(expr, ctx) == expected


class TestReferences:
    def test_matrix(self, ctx: Context) -> None:
        assert evaluate("matrix.os", ctx) == "ubuntu"

    def test_index_access(self, ctx: Context) -> None:
        assert evaluate("matrix['node']", ctx) == 20

    def test_needs_outputs(self, ctx: Context) -> None:
        assert evaluate("needs.build.outputs.version", ctx) == "1.2.3"
        assert evaluate("needs.build.result == 'success'", ctx) is True

    def test_steps_outputs(self, ctx: Context) -> None:
        assert evaluate("steps.compile.outputs.artifact", ctx) == "app.tar"

    def test_event(self, ctx: Context) -> None:
        assert evaluate("event.ref == 'refs/heads/main'", ctx) is True

    def test_unknown_reference(self, ctx: Context) -> None:
        with pytest.raises(EvalError) as exc:
            evaluate("needs.deploy.outputs.url", ctx)
        assert exc.value.kind == ErrorKind.UNKNOWN_REFERENCE
        assert exc.value.details["reference"] == "needs.deploy"

    def test_unknown_namespace(self, ctx: Context) -> None:
        with pytest.raises(EvalError) as exc:
            evaluate("github.sha", ctx)
        assert exc.value.kind == ErrorKind.UNKNOWN_REFERENCE

    def test_missing_output_before_dependency_finished(self) -> None:
        before = Context(needs={})
        with pytest.raises(EvalError) as exc:
            evaluate("needs.A.outputs.v == '1.2.3'", before)
        assert exc.value.kind == ErrorKind.UNKNOWN_REFERENCE

        after = Context(needs={"A": {"result": "success", "outputs": {"v": "1.2.3"}}})
        assert evaluate("needs.A.outputs.v == '1.2.3'", after) is True


class TestOperators:
    def test_string_equality_is_case_insensitive(self, ctx: Context) -> None:
        assert evaluate("matrix.os == 'UBUNTU'", ctx) is True

    def test_loose_number_equality(self, ctx: Context) -> None:
        assert evaluate("env.COUNT == 3", ctx) is True
        assert evaluate("matrix.node == '20'", ctx) is True

    def test_comparison(self, ctx: Context) -> None:
        assert evaluate("matrix.node >= 18", ctx) is True
        assert evaluate("matrix.node < 18", ctx) is False

    def test_comparison_with_nan_is_false(self, ctx: Context) -> None:
        assert evaluate("matrix.os > 1", ctx) is False

    def test_and_or_return_operands(self, ctx: Context) -> None:
        assert evaluate("matrix.os && matrix.node", ctx) == 20
        assert evaluate("'' || 'fallback'", ctx) == "fallback"
        assert evaluate("null && matrix.missing", ctx) is None

    def test_short_circuit_skips_unknown_reference(self, ctx: Context) -> None:
        assert evaluate("false && needs.nope.outputs.x", ctx) is False

    def test_not_and_parentheses(self, ctx: Context) -> None:
        assert evaluate("!(matrix.os == 'windows')", ctx) is True

    def test_ordering_objects_is_an_error(self, ctx: Context) -> None:
        with pytest.raises(EvalError) as exc:
            evaluate("matrix > 1", ctx)
        assert exc.value.kind == ErrorKind.EVALUATION


class TestSyntax:
    @pytest.mark.parametrize("expr", ["matrix.os ==", "(true", "toJSON(matrix)", "success(1)", "a $ b", ""])
    def test_invalid(self, expr: str) -> None:
        with pytest.raises(EvalError) as exc:
            validate(expr)
        assert exc.value.kind == ErrorKind.EXPRESSION_SYNTAX

    def test_wrapper_is_stripped(self, ctx: Context) -> None:
        assert evaluate("${{ matrix.os }}", ctx) == "ubuntu"


class TestConditions:
    def test_absent_condition_means_success(self) -> None:
        assert evaluate_condition(None, Context()) is True
        assert evaluate_condition(None, Context(status=StatusFlags(failed=True))) is False

    def test_implicit_success_guard(self, ctx: Context) -> None:
        failed = ctx.evolve(status=StatusFlags(failed=True))
        assert evaluate_condition("matrix.os == 'ubuntu'", ctx) is True
        assert evaluate_condition("matrix.os == 'ubuntu'", failed) is False

    def test_failure_opts_in(self) -> None:
        failed = Context(status=StatusFlags(failed=True))
        assert evaluate_condition("failure()", failed) is True
        assert evaluate_condition("failure()", Context()) is False

    def test_always_and_cancelled(self) -> None:
        cancelled = Context(status=StatusFlags(cancelled=True))
        assert evaluate_condition("always()", cancelled) is True
        assert evaluate_condition("cancelled()", cancelled) is True
        assert evaluate_condition("success()", cancelled) is False

    def test_status_functions(self) -> None:
        assert status_functions("always() && matrix.os") == frozenset({"always"})
        assert status_functions(None) == frozenset()
        assert opts_in("${{ failure() || cancelled() }}")
        assert not opts_in("success() && env.CI")


class TestInterpolation:
    def test_interpolate(self, ctx: Context) -> None:
        assert interpolate("node-${{ matrix.node }} on ${{ matrix.os }}", ctx) == "node-20 on ubuntu"

    def test_plain_text_untouched(self, ctx: Context) -> None:
        assert interpolate("echo hi", ctx) == "echo hi"

    def test_render(self) -> None:
        assert render(True) == "true"
        assert render(None) == ""
        assert render(3.0) == "3"
        assert render({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'

    def test_embedded(self) -> None:
        assert embedded("a ${{ matrix.os }} b ${{ env.X }}") == ["matrix.os", "env.X"]
        assert embedded({"k": ["${{ secrets.T }}"]}) == ["secrets.T"]

    def test_references(self) -> None:
        paths = references("needs.build.outputs.v == needs.test.result", "needs")
        assert "needs.build.outputs.v" in paths
        assert "needs.test.result" in paths


class TestSecrets:
    def test_secret_masked_in_interpolation(self, ctx: Context) -> None:
        assert interpolate("token=${{ secrets.TOKEN }}", ctx) == f"token={MASK}"
        assert interpolate("token=${{ secrets.TOKEN }}", ctx, reveal=True) == "token=s3cr3t"

    def test_secret_repr(self) -> None:
        s = Secret("hunter2")
        assert str(s) == MASK
        assert "hunter2" not in repr(s)
        assert s.reveal() == "hunter2"

    def test_secret_comparison_uses_value(self, ctx: Context) -> None:
        assert evaluate("secrets.TOKEN == 's3cr3t'", ctx) is True

    def test_context_repr_hides_values(self, ctx: Context) -> None:
        assert "s3cr3t" not in repr(ctx)

    def test_unknown_reference_message_has_no_value(self, ctx: Context) -> None:
        with pytest.raises(EvalError) as exc:
            evaluate("secrets.TOKEN.nested", ctx)
        assert "s3cr3t" not in str(exc.value)

    def test_secrets_view_is_lazy(self) -> None:
        view = SecretsView(DictSecretStore({"A": "alpha", "B": "beta"}), names=["A", "B"])
        assert view.revealed() == []
        ctx = Context(secrets=view)
        assert interpolate("${{ secrets.A }}", ctx, reveal=True) == "alpha"
        assert view.revealed() == ["alpha"]
        assert sorted(view) == ["A", "B"]

    def test_secrets_view_missing(self) -> None:
        ctx = Context(secrets=SecretsView(DictSecretStore({})))
        with pytest.raises(EvalError) as exc:
            evaluate("secrets.NOPE", ctx)
        assert exc.value.kind == ErrorKind.UNKNOWN_REFERENCE

    def test_redact_longest_first(self) -> None:
        text = "abc abcdef"
        assert redact(text, ["abc", "abcdef"]) == f"{MASK} {MASK}"
        assert redact("nothing here", []) == "nothing here"
