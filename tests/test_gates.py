"""Tests for gate expression parsing and evaluation."""

import pytest

from gateci.gates import (
    GateContext,
    GateError,
    GateSyntaxError,
    NeedView,
    Compare,
    Not,
    as_bool,
    parse_gate,
)
from gateci.model import Outcome


def ctx(facts=None, needs=None, success=True, failure=False, cancelled=False):
    return GateContext(
        facts=facts or {},
        needs=needs or {},
        success=success,
        failure=failure,
        cancelled=cancelled,
    )


def evaluate(text, **kwargs):
    return parse_gate(text).evaluate(ctx(**kwargs))


class TestParse:
    @pytest.mark.parametrize("text", [None, "", "   ", "${{ }}"])
    def test_empty_gate_is_success(self, text):
        gate = parse_gate(text)
        assert gate.expr is None
        assert gate.evaluate(ctx(success=True)) is True
        assert gate.evaluate(ctx(success=False)) is False

    def test_wrapper_is_stripped(self):
        assert parse_gate("${{ facts.masterPush }}").text == "facts.masterPush"

    def test_status_calls_recorded(self):
        gate = parse_gate("always() && !cancelled() && !failure() && facts.masterPush")
        assert gate.calls == frozenset({"always", "cancelled", "failure"})
        assert gate.has_status_check
        assert gate.opts_out_of_cancellation

    def test_success_and_failure_do_not_opt_out(self):
        assert not parse_gate("success() || failure()").opts_out_of_cancellation
        assert parse_gate("cancelled()").opts_out_of_cancellation

    def test_referenced_needs(self):
        gate = parse_gate("needs.a.result == 'succeeded' || needs.b.outputs.tag != ''")
        assert gate.referenced_needs() == frozenset({"a", "b"})

    @pytest.mark.parametrize(
        "text",
        [
            "facts.",
            "facts.a &&",
            "(facts.a",
            "facts.a)",
            "unknown()",
            "env.MASTER_PUSH",
            "needs.a.status",
            "needs.a.outputs",
            "facts.a = true",
            "'unterminated",
            "facts.a # comment",
        ],
    )
    def test_syntax_errors(self, text):
        with pytest.raises(GateSyntaxError):
            parse_gate(text)

    def test_syntax_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_gate("facts.a &&")


class TestOperators:
    def test_fact(self):
        assert evaluate("facts.a", facts={"a": True}) is True
        assert evaluate("facts.a", facts={"a": False}) is False

    def test_not_and_or_precedence(self):
        facts = {"a": True, "b": False, "c": True}
        assert evaluate("!facts.b && facts.a", facts=facts) is True
        assert evaluate("facts.b || facts.a && facts.c", facts=facts) is True
        assert evaluate("(facts.b || facts.a) && !facts.c", facts=facts) is False

    def test_not_binds_tighter_than_compare(self):
        expr = parse_gate("!facts.a == facts.b").expr
        assert isinstance(expr, Compare)
        assert isinstance(expr.left, Not)
        assert evaluate("!facts.a == facts.b", facts={"a": False, "b": True}) is True

        needs = {"tests": NeedView(Outcome.SUCCEEDED)}
        # `!` applies to the result string alone, which is not a boolean
        with pytest.raises(GateError, match="boolean"):
            evaluate("always() && !needs.tests.result == 'succeeded'", needs=needs)
        assert evaluate("always() && !(needs.tests.result == 'succeeded')", needs=needs) is False

    def test_literals(self):
        assert evaluate("true") is True
        assert evaluate("false || true") is True

    def test_compare_bool_with_string(self):
        assert evaluate("facts.a == 'true'", facts={"a": True}) is True
        assert evaluate("facts.a != 'true'", facts={"a": False}) is True

    def test_string_escape(self):
        needs = {"r": NeedView(Outcome.SUCCEEDED, {"msg": "it's"})}
        assert evaluate("needs.r.outputs.msg == 'it''s'", needs=needs) is True

    def test_string_true_false_usable_as_bool(self):
        needs = {"r": NeedView(Outcome.SUCCEEDED, {"flag": "true"})}
        assert evaluate("needs.r.outputs.flag", needs=needs) is True

    def test_other_string_as_bool_is_error(self):
        needs = {"r": NeedView(Outcome.SUCCEEDED, {"tag": "v1"})}
        with pytest.raises(GateError, match="as a boolean"):
            evaluate("needs.r.outputs.tag", needs=needs)

    def test_as_bool(self):
        assert as_bool("false") is False
        with pytest.raises(GateError):
            as_bool("")


class TestStatusFunctions:
    def test_implicit_success_prefix(self):
        assert evaluate("facts.a", facts={"a": True}, success=False) is False

    def test_implicit_prefix_skips_evaluation(self):
        # the unknown fact is never looked at
        assert evaluate("facts.nope", success=False) is False

    def test_explicit_status_check_disables_prefix(self):
        assert evaluate("!failure() && facts.a", facts={"a": True}, success=False) is True

    def test_always(self):
        assert evaluate("always()", success=False, failure=True, cancelled=True) is True

    def test_failure(self):
        assert evaluate("failure()", success=False, failure=True) is True
        assert evaluate("failure()") is False

    def test_cancelled(self):
        assert evaluate("cancelled()", cancelled=True) is True
        assert evaluate("!cancelled()", cancelled=False) is True

    def test_deploy_gate(self):
        text = "always() && !cancelled() && !failure() && facts.masterPush"
        assert evaluate(text, facts={"masterPush": True}, success=False) is True
        assert evaluate(text, facts={"masterPush": False}) is False
        assert evaluate(text, facts={"masterPush": True}, failure=True) is False
        assert evaluate(text, facts={"masterPush": True}, cancelled=True) is False


class TestReferences:
    def test_unknown_fact(self):
        with pytest.raises(GateError, match="Unknown fact 'nope'"):
            evaluate("facts.nope", facts={"a": True})

    def test_need_result(self):
        needs = {"tests": NeedView(Outcome.SKIPPED)}
        assert evaluate("needs.tests.result == 'skipped'", needs=needs) is True

    def test_undeclared_need(self):
        with pytest.raises(GateError, match="not a declared predecessor"):
            evaluate("needs.other.result == 'succeeded'")

    def test_output_of_need(self):
        needs = {"release": NeedView(Outcome.SUCCEEDED, {"tag": "v1.2"})}
        assert evaluate("needs.release.outputs.tag == 'v1.2'", needs=needs) is True

    def test_missing_output_of_need_that_ran(self):
        needs = {"release": NeedView(Outcome.SUCCEEDED, {})}
        with pytest.raises(GateError, match="missing"):
            evaluate("needs.release.outputs.tag != ''", needs=needs)

    def test_empty_output_of_need_that_ran(self):
        needs = {"release": NeedView(Outcome.FAILED, {"tag": ""})}
        with pytest.raises(GateError, match="empty"):
            evaluate("always() && needs.release.outputs.tag != ''", needs=needs)

    def test_output_of_skipped_need_is_empty(self):
        needs = {"release": NeedView(Outcome.SKIPPED)}
        assert evaluate("always() && needs.release.outputs.tag == ''", needs=needs) is True
