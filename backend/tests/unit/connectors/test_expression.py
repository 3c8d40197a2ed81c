"""Unit tests for the sandboxed formula evaluator."""

import pytest

from connectors.errors import ExpressionError
from connectors.expression import MAX_FORMULA_LENGTH, evaluate, referenced_names


class TestEvaluate:
    """Test arithmetic evaluation."""

    @pytest.mark.parametrize(
        "formula,variables,expected",
        [
            ("heartRate * 1.0", {"heartRate": 72}, 72.0),
            ("(a + b) / 2", {"a": 3, "b": 5}, 4.0),
            ("-a + 10", {"a": 4}, 6),
            ("celsius * 9 / 5 + 32", {"celsius": 37}, 98.6),
        ],
    )
    def test_arithmetic(self, formula, variables, expected):
        """Test supported operators and precedence."""
        assert evaluate(formula, variables) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "formula",
        [
            "__import__('os').system('id')",
            "a.__class__",
            "a[0]",
            "a ** 2",
            "a if a else 0",
            "lambda: 1",
            "a < b",
            "'text'",
        ],
    )
    def test_rejects_disallowed_syntax(self, formula):
        """Test anything beyond + - * / on numbers and names is refused."""
        with pytest.raises(ExpressionError):
            evaluate(formula, {"a": 1, "b": 2})

    def test_division_by_zero(self):
        """Test division by zero raises ExpressionError."""
        with pytest.raises(ExpressionError, match="Division by zero"):
            evaluate("a / b", {"a": 1, "b": 0})

    def test_unknown_variable(self):
        """Test names without values raise."""
        with pytest.raises(ExpressionError, match="Unknown variable"):
            evaluate("a + missing", {"a": 1})

    def test_non_numeric_variable(self):
        """Test string and boolean variables are refused."""
        for value in ["72", True]:
            with pytest.raises(ExpressionError):
                evaluate("a * 2", {"a": value})

    def test_malformed_formula(self):
        """Test syntax errors raise ExpressionError."""
        with pytest.raises(ExpressionError, match="Malformed"):
            evaluate("(a + ", {"a": 1})

    def test_empty_and_oversized_formulas(self):
        """Test empty and very long formulas are refused."""
        with pytest.raises(ExpressionError):
            evaluate("   ", {})
        with pytest.raises(ExpressionError):
            evaluate("1+" * MAX_FORMULA_LENGTH + "1", {})

    def test_non_finite_result(self):
        """Test overflowing results are refused."""
        with pytest.raises(ExpressionError):
            evaluate("a * a", {"a": 1e308})


class TestReferencedNames:
    def test_collects_names(self):
        assert referenced_names("(systolic + 2 * diastolic) / 3") == {"systolic", "diastolic"}
