"""Tests for the formula engine."""

import pytest

from sheetopia import formula
from sheetopia.formula import (
    InvalidRangeError,
    Reference,
    SheetValues,
    average_values,
    col_to_index,
    count_values,
    evaluate_arithmetic,
    evaluate_formula,
    extract_range,
    format_result,
    index_to_col,
    max_values,
    min_values,
    parse_cell_ref,
    parse_parameters,
    resolve_ref,
    split_function_call,
    sum_values,
    to_number,
)


@pytest.fixture
def square():
    return SheetValues.from_rows([
        [1, 2, 3],
        [4, 5, 6],
        [7, 8, 9],
    ])


class TestColumnCodec:
    def test_round_trip(self) -> None:
        for i in range(10001):
            assert col_to_index(index_to_col(i)) == i

    @pytest.mark.parametrize("index, letters", [
        (0, "A"), (25, "Z"), (26, "AA"), (701, "ZZ"), (702, "AAA"), (18277, "ZZZ"),
    ])
    def test_spot_values(self, index: int, letters: str) -> None:
        assert index_to_col(index) == letters
        assert col_to_index(letters) == index

    def test_negative_index_rejected(self) -> None:
        with pytest.raises(ValueError):
            index_to_col(-1)


class TestParseCellRef:
    def test_relative(self) -> None:
        assert parse_cell_ref("B3") == Reference(2, 1, False, False)

    def test_absolute_both_axes(self) -> None:
        assert parse_cell_ref("$A$1") == Reference(0, 0, True, True)

    def test_mixed_markers_bind_to_their_group(self) -> None:
        ref = parse_cell_ref("A$1")
        assert ref.row_absolute
        assert not ref.col_absolute
        ref = parse_cell_ref("$A1")
        assert ref.col_absolute
        assert not ref.row_absolute

    @pytest.mark.parametrize("token", ["a1", "A", "1", "A1:B2", "A1B", "SUM(A1)", ""])
    def test_not_a_reference(self, token: str) -> None:
        assert parse_cell_ref(token) is None

    def test_relative_axes_store_offset_from_anchor(self) -> None:
        assert parse_cell_ref("A1", (5, 5)) == Reference(-5, -5, False, False)

    def test_absolute_axes_ignore_anchor(self) -> None:
        assert parse_cell_ref("$A$1", (5, 5)) == Reference(0, 0, True, True)


class TestResolveRef:
    def test_absolute_resolves_regardless_of_anchor(self) -> None:
        ref = parse_cell_ref("$A$1", (5, 5))
        assert resolve_ref(ref, (5, 5)) == (0, 0)
        assert resolve_ref(ref, (9, 2)) == (0, 0)

    def test_relative_resolves_at_parse_anchor(self) -> None:
        ref = parse_cell_ref("A1", (5, 5))
        assert resolve_ref(ref, (5, 5)) == (0, 0)

    def test_relative_offset_preserved_when_reanchored(self) -> None:
        ref = parse_cell_ref("A1", (0, 0))
        assert resolve_ref(ref, (2, 2)) == (2, 2)

    def test_mixed_reference_moves_on_relative_axis_only(self) -> None:
        ref = parse_cell_ref("$A2", (3, 3))
        assert resolve_ref(ref, (4, 4)) == (2, 0)


class TestTokenizer:
    def test_function_call(self) -> None:
        assert split_function_call("SUM(A1:B2,C3)") == ("SUM", "A1:B2,C3")

    def test_arithmetic_is_not_a_call(self) -> None:
        assert split_function_call("A1+B1") is None
        assert split_function_call("SUM(A1)+1") is None

    def test_parameters_are_trimmed(self) -> None:
        assert parse_parameters("A1, B2:C3 ,D4") == ["A1", "B2:C3", "D4"]

    def test_nested_commas_are_kept(self) -> None:
        assert parse_parameters("SUM(A1,B1),C1") == ["SUM(A1,B1)", "C1"]

    def test_empty_and_trailing(self) -> None:
        assert parse_parameters("") == []
        assert parse_parameters("A1,") == ["A1"]


class TestExtractRange:
    def test_block_is_row_major(self, square) -> None:
        assert extract_range("A1:B2", square, (0, 0)) == [[1, 2], [4, 5]]

    def test_backwards_range_is_normalized(self, square) -> None:
        assert extract_range("B3:A1", square, (0, 0)) == extract_range("A1:B3", square, (0, 0))

    def test_clamped_to_grid(self, square) -> None:
        assert extract_range("B2:Z99", square, (0, 0)) == [[5, 6], [8, 9]]

    def test_single_cell(self, square) -> None:
        assert extract_range("C3", square, (0, 0)) == [[9]]

    def test_same_block_from_any_anchor(self, square) -> None:
        assert extract_range("A1:A2", square, (2, 2)) == [[1], [4]]
        assert extract_range("$A$1:A2", square, (1, 0)) == [[1], [4]]

    def test_missing_cells_are_none(self) -> None:
        values = SheetValues({(0, 0): 1}, 2, 2)
        assert extract_range("A1:B2", values, (0, 0)) == [[1, None], [None, None]]

    @pytest.mark.parametrize("token", ["A1:B2:C3", "A1:FOO", "FOO", ":A1"])
    def test_malformed(self, square, token: str) -> None:
        with pytest.raises(InvalidRangeError):
            extract_range(token, square, (0, 0))


class TestAggregates:
    def test_to_number(self) -> None:
        assert to_number(5) == 5
        assert to_number("3") == 3.0
        assert to_number("12px") == 12.0
        assert to_number("  -1.5e2") == -150.0
        assert to_number("abc") is None
        assert to_number(None) is None

    def test_mixed_content(self) -> None:
        items = ["3", "x", 5, None]
        assert sum_values(items) == 8
        assert count_values(items) == 2
        assert average_values(items) == 4
        assert max_values(items) == 5
        assert min_values(items) == 3

    def test_no_numbers(self) -> None:
        assert average_values(["x", None]) == 0
        assert max_values([]) == 0
        assert min_values(["x"]) == 0
        assert sum_values([]) == 0

    @pytest.mark.parametrize("text, expected", [
        ("=SUM(A1:D1)", 8),
        ("=COUNT(A1:D1)", 2),
        ("=AVERAGE(A1:D1)", 4),
        ("=MAX(A1:D1)", 5),
        ("=MIN(A1:D1)", 3),
        ("=sum(a1:d1)", 8),
        ("=SUM(A1, C1)", 8),
        ("=COUNT(A1:B1, C1)", 2),
        ("=SUM(D1:A1)", 8),
    ])
    def test_formulas_over_mixed_row(self, mixed_row_values, text: str, expected) -> None:
        assert evaluate_formula(text, mixed_row_values, 0, 5) == expected

    def test_non_reference_arguments_contribute_nothing(self, mixed_row_values) -> None:
        assert evaluate_formula("=SUM(A1, 10)", mixed_row_values, 0, 5) == 3

    @pytest.mark.parametrize("text, row", [
        ("=SUM(A1:B1)", ["1e999", 5]),
        ("=MAX(A1:B1)", ["1e999", 5]),
        ("=MIN(A1:B1)", ["-1e999", 5]),
        ("=AVERAGE(A1:B1)", ["1e999", "-1e999"]),
    ])
    def test_non_finite_results_are_zero(self, text: str, row) -> None:
        result = evaluate_formula(text, SheetValues.from_rows([row]), 1, 0)
        assert result == 0
        assert isinstance(result, int)


class TestTextFunctions:
    @pytest.fixture
    def values(self):
        return SheetValues.from_rows([["  Hello  ", 42]])

    def test_trim(self, values) -> None:
        assert evaluate_formula("=TRIM(A1)", values, 1, 0) == "Hello"

    def test_upper_and_lower(self, values) -> None:
        assert evaluate_formula("=UPPER(A1)", values, 1, 0) == "  HELLO  "
        assert evaluate_formula("=lower(a1)", values, 1, 0) == "  hello  "

    def test_non_text_passes_through(self, values) -> None:
        assert evaluate_formula("=UPPER(B1)", values, 1, 0) == 42

    def test_out_of_bounds_is_empty(self, values) -> None:
        assert evaluate_formula("=TRIM(Z99)", values, 1, 0) is None

    @pytest.mark.parametrize("text", ["=TRIM(A1:B1)", "=TRIM(A1,B1)", "=TRIM()"])
    def test_wrong_arguments(self, values, text: str) -> None:
        assert evaluate_formula(text, values, 1, 0) == "Error: TRIM requires a cell reference"


class TestArithmetic:
    @pytest.fixture
    def values(self):
        return SheetValues.from_rows([[2, 3, None]])

    def test_relative_refs(self, values) -> None:
        assert evaluate_formula("=A1+B1", values, 0, 2) == 5

    def test_precedence_and_parentheses(self, values) -> None:
        assert evaluate_formula("=A1*B1-(B1/A1)", values, 0, 2) == 4.5

    def test_absolute_refs(self, values) -> None:
        assert evaluate_formula("=$A$1*2", values, 0, 2) == 4

    def test_unary_minus(self, values) -> None:
        assert evaluate_formula("=-A1", values, 0, 2) == -2
        assert evaluate_formula("=A1*-B1", values, 0, 2) == -6

    def test_missing_cells_read_as_zero(self, values) -> None:
        assert evaluate_formula("=A1+Z9", values, 0, 2) == 2
        assert evaluate_formula("=A1+C1", values, 0, 2) == 2

    def test_numeric_text_is_used(self) -> None:
        values = SheetValues.from_rows([["4", 3, "abc"]])
        assert evaluate_formula("=A1+B1", values, 1, 0) == 7
        assert evaluate_formula("=C1+B1", values, 1, 0) == 3

    @pytest.mark.parametrize("text", ["=A1+", "=1/0", "=HELLO", "=(1+2", "=1..2", "=SUM(A1)+1"])
    def test_failures_evaluate_to_zero(self, values, text: str) -> None:
        assert evaluate_formula(text, values, 0, 2) == 0

    def test_deep_nesting_is_bounded(self, values) -> None:
        text = "=" + "(" * 500 + "1" + ")" * 500
        assert evaluate_formula(text, values, 0, 2) == 0

    def test_integral_results_are_ints(self, values) -> None:
        result = evaluate_formula("=1.5+1.5", values, 0, 2)
        assert result == 3
        assert isinstance(result, int)

    def test_small_values_survive_substitution(self) -> None:
        values = SheetValues.from_rows([[1e-7]])
        assert evaluate_formula("=A1*2", values, 1, 1) == pytest.approx(2e-7)

    def test_evaluate_arithmetic_directly(self, values) -> None:
        assert evaluate_arithmetic("A1+B1", values, (0, 2)) == 5


class TestEvaluateFormula:
    def test_unknown_function(self, mixed_row_values) -> None:
        assert evaluate_formula("=FOO(A1)", mixed_row_values, 0, 0) == "Error: Unknown function FOO"

    def test_malformed_range_becomes_text(self, mixed_row_values) -> None:
        result = evaluate_formula("=SUM(A1:B2:C3)", mixed_row_values, 0, 0)
        assert result == "Error: Invalid range: A1:B2:C3"

    def test_non_formula_input_is_returned(self, mixed_row_values) -> None:
        assert evaluate_formula("hello", mixed_row_values, 0, 0) == "hello"
        assert evaluate_formula(5, mixed_row_values, 0, 0) == 5

    def test_internal_failure_never_escapes(self, mixed_row_values, monkeypatch) -> None:
        def boom(items):
            raise RuntimeError("broken")

        monkeypatch.setitem(formula.AGGREGATES, "SUM", boom)
        assert evaluate_formula("=SUM(A1)", mixed_row_values, 0, 0) == "Error: Formula evaluation failed"


class TestFormatResult:
    def test_integral(self) -> None:
        assert format_result(8.0) == "8"
        assert format_result(8) == "8"

    def test_fractional(self) -> None:
        assert format_result(2.5) == "2.5"
        assert format_result(1 / 3) == "0.3333333333"
