"""
Tests for the formula compiler and evaluator.

Covers operator precedence, percent literals, IEEE division, the MISSING
marker's propagation through arithmetic, comparisons and the logical
functions, metric references and compile-time syntax errors.
"""

import math

import pytest

from screener.services.formula_evaluator import (
    DEFAULT_ELSE,
    MISSING,
    FormulaSyntaxError,
    compile_formula,
    describe_value_type,
    evaluate,
    tokenize,
    validate_formula,
)


class TestArithmetic:

    @pytest.mark.parametrize("source, expected", [
        ("1 + 2 * 3", 7.0),
        ("(1 + 2) * 3", 9.0),
        ("10 - 4 - 3", 3.0),
        ("12 / 4 / 3", 1.0),
        ("-2 * 3", -6.0),
        ("--4", 4.0),
        ("20%", 0.2),
        ("50% * 50%", 0.25),
        ("-20%", -0.2),
        ("1.5e2", 150.0),
        (".5", 0.5),
    ])
    def test_precedence(self, source, expected) -> None:
        assert evaluate(source) == pytest.approx(expected)

    def test_division_by_zero_is_ieee(self) -> None:
        assert evaluate("5/0") == math.inf
        assert evaluate("-5/0") == -math.inf
        assert math.isnan(evaluate("0/0"))

    def test_infinity_compares_as_number(self) -> None:
        assert evaluate("5/0 > 1000000") is True

    def test_numeric_text_is_coerced(self) -> None:
        assert evaluate('"2" + 3') == 5.0

    def test_non_numeric_text_is_missing_in_arithmetic(self) -> None:
        assert evaluate('"abc" + 1') is MISSING

    def test_booleans_count_as_one_and_zero(self) -> None:
        assert evaluate("TRUE + TRUE") == 2.0


class TestComparison:

    @pytest.mark.parametrize("source, expected", [
        ("3 > 2", True),
        ("2 > 2", False),
        ("2 >= 2", True),
        ("2 <= 1", False),
        ("1 <> 2", True),
        ("1 != 1", False),
        ("0.1 + 0.2 = 30%", True),
        ("0.1 + 0.2 >= 0.3", True),
        ('"BUY" = "BUY"', True),
        ('"BUY" = "buy"', False),
        ('"1" = 1', False),
    ])
    def test_operators(self, source, expected) -> None:
        assert evaluate(source) is expected

    def test_epsilon_does_not_apply_to_strict_operators(self) -> None:
        assert evaluate("0.30000000001 > 0.3") is True

    def test_comparison_with_missing_is_missing(self) -> None:
        assert evaluate("X > 1", {}) is MISSING
        assert evaluate("X = X", {}) is MISSING


class TestMissing:

    def test_unknown_identifier_is_missing(self) -> None:
        assert evaluate("Q12", {}) is MISSING

    def test_null_environment_value_is_missing_not_zero(self) -> None:
        assert evaluate("Q12 + 1", {"Q12": None}) is MISSING
        assert evaluate("Q12 = 0", {"Q12": None}) is MISSING

    def test_zero_is_a_value(self) -> None:
        assert evaluate("Q12 = 0", {"Q12": 0}) is True

    def test_and_is_false_when_any_argument_is_false(self) -> None:
        assert evaluate("AND(X > 1, 1 > 2)", {}) is False

    def test_and_is_missing_when_undecided(self) -> None:
        assert evaluate("AND(X > 1, 2 > 1)", {}) is MISSING

    def test_or_is_true_when_any_argument_is_true(self) -> None:
        assert evaluate("OR(X > 1, 2 > 1)", {}) is True

    def test_or_is_missing_when_undecided(self) -> None:
        assert evaluate("OR(X > 1, 1 > 2)", {}) is MISSING

    def test_not_missing(self) -> None:
        assert evaluate("NOT(X)", {}) is MISSING

    def test_if_with_missing_condition_is_missing(self) -> None:
        assert evaluate('IF(X > 1, "BUY", "SELL")', {}) is MISSING

    def test_isnumber_guards_missing(self) -> None:
        source = 'IF(ISNUMBER(X), "has data", "no data")'
        assert evaluate(source, {}) == "no data"
        assert evaluate(source, {"X": 4}) == "has data"

    def test_isblank(self) -> None:
        assert evaluate("ISBLANK(X)", {}) is True
        assert evaluate("ISBLANK(X)", {"X": 0}) is False

    def test_coalesce_and_iferror(self) -> None:
        assert evaluate("COALESCE(X, Y, 3)", {"Y": 2}) == 2.0
        assert evaluate("IFERROR(X * 2, -1)", {}) == -1.0
        assert evaluate("IFERROR(0/0, 7)") == 7.0

    def test_missing_marker_is_falsy_singleton(self) -> None:
        assert not MISSING
        assert repr(MISSING) == "MISSING"
        assert describe_value_type(MISSING) == "missing"


class TestFunctions:

    def test_if_branches(self) -> None:
        assert evaluate('IF(Q12 >= 20%, "BUY", "No Signal")', {"Q12": 0.25}) == "BUY"
        assert evaluate('IF(Q12 >= 20%, "BUY", "No Signal")', {"Q12": 0.1}) == "No Signal"

    def test_if_without_else_defaults_to_no_signal(self) -> None:
        assert evaluate('IF(1 > 2, "BUY")') == DEFAULT_ELSE

    def test_if_only_evaluates_taken_branch(self) -> None:
        assert evaluate('IF(TRUE, 1, X)', {}) == 1.0

    def test_nested_logic(self) -> None:
        env = {"Q12": 0.25, "Q15": 0.22, "P12": 0.15}
        source = 'IF(AND(Q12>=20%, Q15>=20%, OR(P12>=10%, P12<0)), "BUY", "No Signal")'
        assert evaluate(source, env) == "BUY"

    def test_prior_quarter_below_threshold_is_no_signal(self) -> None:
        source = 'IF(AND(Q12>10, P12>10), "BUY", "No Signal")'
        assert evaluate(source, {"Q12": 15, "P12": 5}) == "No Signal"
        assert evaluate(source, {"Q12": 15, "P12": 11}) == "BUY"

    def test_function_names_are_case_insensitive(self) -> None:
        assert evaluate("and(true, not(false))") is True

    @pytest.mark.parametrize("source, expected", [
        ("MIN(3, 1, 2)", 1.0),
        ("MAX(3, 1, 2)", 3.0),
        ("ABS(-4)", 4.0),
        ("SUM(1, 2, 3)", 6.0),
        ("AVERAGE(1, 2, 6)", 3.0),
        ("ROUND(2.675, 2)", 2.68),
        ("ROUND(-2.5, 0)", -3.0),
    ])
    def test_numeric_functions(self, source, expected) -> None:
        assert evaluate(source) == pytest.approx(expected)

    def test_numeric_functions_propagate_missing(self) -> None:
        assert evaluate("MIN(X, 1)", {}) is MISSING
        assert evaluate("SUM(X, 1)", {}) is MISSING

    def test_text_truthiness(self) -> None:
        assert evaluate('IF("FALSE", 1, 2)') == 2.0
        assert evaluate('IF("yes", 1, 2)') == 1.0


class TestMathAndTextFunctions:

    @pytest.mark.parametrize("source, expected", [
        ("POWER(2, 3)", 8.0),
        ("POWER(4, 0.5)", 2.0),
        ("SQRT(9)", 3.0),
        ("LOG(100)", 2.0),
        ("LOG(8, 2)", 3.0),
        ("ROUNDUP(1.21, 1)", 1.3),
        ("ROUNDUP(1.1, 1)", 1.1),
        ("ROUNDUP(-1.25, 1)", -1.2),
        ("ROUNDDOWN(1.29, 1)", 1.2),
        ("ROUNDDOWN(1234.5, -2)", 1200.0),
        ("CEILING(4.2)", 5.0),
        ("CEILING(4.2, 0.5)", 4.5),
        ("FLOOR(4.8)", 4.0),
        ("FLOOR(7, 5)", 5.0),
        ("FLOOR(7, 0)", 7.0),
        ("COUNT(1, \"a\", X, TRUE)", 2.0),
        ("COUNT()", 0.0),
    ])
    def test_numeric(self, source, expected) -> None:
        assert evaluate(source, {}) == pytest.approx(expected)

    @pytest.mark.parametrize("source", [
        "SQRT(-1)",
        "SQRT(X)",
        "POWER(X, 2)",
        "LOG(0)",
        "LOG(-5)",
        "LOG(8, 1)",
        "LOG(8, -2)",
        "ROUNDUP(X, 1)",
        "CEILING(X)",
        "NOTNULL(X)",
    ])
    def test_missing_results(self, source) -> None:
        assert evaluate(source, {}) is MISSING

    def test_power_edge_values(self) -> None:
        assert evaluate("POWER(0, -1)") == math.inf
        assert math.isnan(evaluate("POWER(-8, 0.5)"))

    def test_log_base_defaults_to_ten_when_missing(self) -> None:
        assert evaluate("LOG(1000, X)", {}) == pytest.approx(3.0)

    @pytest.mark.parametrize("source, expected", [
        ('TRIM("  x ")', "x"),
        ("TRIM(X)", ""),
        ('CONCAT("a", 1, X)', "a1"),
        ('CONCATENATE("Q", 12)', "Q12"),
        ("CONCAT(1.5, TRUE)", "1.5TRUE"),
        ("CONCAT()", ""),
    ])
    def test_text(self, source, expected) -> None:
        assert evaluate(source, {}) == expected

    def test_notnull_returns_first_value_or_fallback(self) -> None:
        assert evaluate("NOTNULL(X, 5)", {}) == 5.0
        assert evaluate("NOTNULL(3, 5)", {}) == 3.0
        assert evaluate("NOTNULL(0, 5)", {}) == 0.0

    def test_names_are_case_insensitive(self) -> None:
        assert evaluate("sqrt(power(3, 2))") == 3.0
        assert evaluate('concatenate("a", "b")') == "ab"

    @pytest.mark.parametrize("source", [
        "SQRT(1, 2)",
        "LOG()",
        "ROUNDUP(1)",
        "POWER(2)",
        "TRIM()",
        "CEILING(1, 2, 3)",
        "NOTNULL()",
    ])
    def test_arity_is_checked_at_compile_time(self, source) -> None:
        with pytest.raises(FormulaSyntaxError):
            compile_formula(source)


class TestReferences:

    def test_metric_quarter_references(self) -> None:
        env = {"OPM[Q12]": 15, "OPM[Q11]": 10}
        assert evaluate("OPM[Q12] - OPM[Q11]", env) == 5.0

    def test_prior_and_bare_indexes(self) -> None:
        env = {"OPM[Q12]": 15, "OPM[Q11]": 10}
        # Pn reads Q(n+1); a bare number reads Qn
        assert evaluate("OPM[P11]", env) == 15.0
        assert evaluate("OPM[P10]", env) == 10.0
        assert evaluate("OPM[11]", env) == 10.0

    def test_references_are_collected(self) -> None:
        compiled = compile_formula("IF(AND(Q12 > 1, OPM[P10] > Q12), Sales, 0)")
        assert compiled.references == ("Q12", "OPM[Q11]", "Sales")

    def test_identifiers_are_case_sensitive(self) -> None:
        assert evaluate("q12", {"Q12": 1}) is MISSING

    def test_string_escapes(self) -> None:
        assert evaluate('"say ""hi"""') == 'say "hi"'
        assert evaluate("'single'") == "single"


class TestSyntaxErrors:

    @pytest.mark.parametrize("source, position", [
        ("", 0),
        ("1 +", 3),
        ("(1 + 2", 6),
        ("1 + 2)", 5),
        ("1 $ 2", 2),
        ('"open', 0),
        ("FOO(1)", 0),
        ("IF(1)", 0),
        ("NOT(1, 2)", 0),
        ("OPM[X1]", 4),
        ("OPM[Q0]", 4),
        ("1 2", 2),
        ("AND(1 2)", 6),
    ])
    def test_reports_position(self, source, position) -> None:
        with pytest.raises(FormulaSyntaxError) as exc_info:
            compile_formula(source)
        assert exc_info.value.position == position

    def test_leading_equals_is_ignored(self) -> None:
        assert evaluate("=1+1") == 2.0

    def test_leading_equals_shifts_error_position(self) -> None:
        with pytest.raises(FormulaSyntaxError) as exc_info:
            compile_formula("=1 $ 2")
        assert exc_info.value.position == 3

    def test_comparisons_do_not_chain(self) -> None:
        with pytest.raises(FormulaSyntaxError):
            compile_formula("1 < 2 < 3")

    def test_error_is_a_value_error(self) -> None:
        assert issubclass(FormulaSyntaxError, ValueError)

    def test_deep_nesting_is_a_syntax_error(self) -> None:
        with pytest.raises(FormulaSyntaxError):
            compile_formula("(" * 5000 + "1" + ")" * 5000)


class TestValidation:

    def test_valid_formula(self) -> None:
        result = validate_formula('IF(Q12>=20%, "BUY")')
        assert result.valid
        assert result.error is None

    def test_invalid_formula_reports_message_and_position(self) -> None:
        result = validate_formula("AND(Q12 > 1,")
        assert not result.valid
        assert result.position is not None
        assert "position" not in result.error

    def test_tokenizer_maps_not_equal(self) -> None:
        assert [t.text for t in tokenize("a != b")][:3] == ["a", "<>", "b"]

    def test_compiled_formulas_are_cached(self) -> None:
        assert compile_formula("1 + 1") is compile_formula("1 + 1")
