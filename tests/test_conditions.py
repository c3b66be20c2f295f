"""Tests for the workflow condition evaluator and prompt interpolation."""

import pytest

from orchestry.workflows.conditions import (
    ConditionEvaluator,
    ConditionSyntaxError,
    interpolate,
    resolve_variable,
    tokenize,
)


class TestConditionEvaluator:
    """Test expression evaluation against execution variables."""

    def setup_method(self):
        self.evaluator = ConditionEvaluator()
        self.variables = {
            "$result": "All tests PASS",
            "$count": 3,
            "$approved": True,
            "status": "done",
            "review": {"score": 8, "author": "qa"},
        }

    @pytest.mark.parametrize("expression,expected", [
        ("$count == 3", True),
        ("$count > 2 && $count < 4", True),
        ("$count >= 4 || $approved", True),
        ("!$approved", False),
        ("status == 'done'", True),
        ('$status != "open"', True),
        ("$result.contains('PASS')", True),
        ("$result.startsWith('All')", True),
        ("$result.endsWith('FAIL')", False),
        ("($count == 1 || $count == 3) && !($status == 'open')", True),
        ("$variables.review.score > 7", True),
        ("review.author == 'qa'", True),
        ("$approved == true", True),
        ("$missing", False),
        ("$count == '3'", True),
    ])
    def test_expressions(self, expression, expected):
        assert self.evaluator.evaluate(expression, self.variables) is expected

    def test_empty_expression_is_false(self):
        assert self.evaluator.evaluate("", self.variables) is False
        assert self.evaluator.evaluate(None, self.variables) is False

    def test_malformed_expression_is_false(self):
        assert self.evaluator.evaluate("$count ==", self.variables) is False
        assert self.evaluator.evaluate("($count == 3", self.variables) is False
        assert self.evaluator.evaluate("$count # 3", self.variables) is False

    def test_no_code_execution(self):
        assert self.evaluator.evaluate("__import__('os').system('true')", self.variables) is False

    def test_parse_rejects_trailing_tokens(self):
        with pytest.raises(ConditionSyntaxError):
            self.evaluator.parse("$count == 3 3")

    def test_tokenize(self):
        kinds = [t.kind for t in tokenize("$a >= 2 && 'x'")]
        assert kinds == ["name", "op", "number", "op", "string"]


class TestInterpolation:
    """Test prompt template interpolation."""

    def test_known_variables_replaced(self):
        variables = {"$result": "draft ready", "ticket": {"title": "Login"}, "count": 2.0}
        text = interpolate("Review $result for $ticket.title ($count)", variables)
        assert text == "Review draft ready for Login (2)"

    def test_unknown_variables_left_as_written(self):
        assert interpolate("Hello $nobody", {}) == "Hello $nobody"

    def test_resolve_variable_prefixes(self):
        variables = {"$a": 1, "b": 2}
        assert resolve_variable("a", variables) == 1
        assert resolve_variable("$b", variables) == 2
        assert resolve_variable("$c", variables) is None
