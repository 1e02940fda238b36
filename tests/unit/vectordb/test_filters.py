"""Tests for the metadata filter language."""

from __future__ import annotations

import pytest

from faiss_vdb.errors import InvalidFilterSyntax
from faiss_vdb.vectordb.filters import Node, format_literal, parse_filter

_METADATA = {"site": "docs", "rank": 3, "score": 0.5, "public": True, "title": "Intro to vectors"}


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("", True),
        ("   ", True),
        ('site == "docs"', True),
        ("site == 'blog'", False),
        ("site != 'blog'", True),
        ("rank >= 3", True),
        ("rank > 3", False),
        ("score < 1", True),
        ("rank == 3.0", True),
        ("public == true", True),
        ("PUBLIC == true", False),
        ("public == TRUE", True),
        ("site in ['docs', 'blog']", True),
        ("site not in ['docs']", False),
        ("rank in [1, 2, 3]", True),
        ("rank in []", False),
        ("title like 'Intro%'", True),
        ("title like '%vector_'", True),
        ("title not like '%intro%'", True),
        ("exists score", True),
        ("exists missing", False),
        ("not exists missing", True),
        ("!(rank < 3)", True),
        ("rank > 5 or site == 'docs' and public == true", True),
        ("(rank > 5 or site == 'docs') and public == false", False),
        ("rank > 1 && rank < 5", True),
        ("rank > 5 || score == 0.5", True),
    ],
)
def test_expression_evaluation(expression: str, expected: bool) -> None:
    assert parse_filter(expression).matches("doc-1", _METADATA) is expected


def test_missing_field_is_false_for_both_polarities() -> None:
    """Predicates on absent fields are false; negation applies afterwards."""
    expression = parse_filter("missing == 1")

    assert expression.matches("doc-1", _METADATA) is False
    assert parse_filter("not missing == 1").matches("doc-1", _METADATA) is True
    assert parse_filter("missing not in [1]").matches("doc-1", _METADATA) is False


def test_type_mismatch_does_not_match() -> None:
    assert parse_filter("rank == '3'").matches("doc-1", _METADATA) is False
    assert parse_filter("public == 1").matches("doc-1", _METADATA) is False
    assert parse_filter("site > 1").matches("doc-1", _METADATA) is False


def test_id_field_targets_record_identifier() -> None:
    assert parse_filter("id == 'doc-1'").matches("doc-1", {}) is True
    assert parse_filter("id in ['doc-2']").matches("doc-1", {}) is False


def test_default_host_filter_matches_every_record() -> None:
    expression = parse_filter("id not in [0]")

    assert expression.matches("doc-1", {}) is True
    assert expression.matches("0", {}) is True


def test_and_binds_tighter_than_or() -> None:
    expression = parse_filter("a == 1 or b == 1 and c == 1")

    assert expression.matches("x", {"a": 1}) is True
    assert expression.matches("x", {"b": 1}) is False


def test_string_escapes() -> None:
    expression = parse_filter(r'quote == "say \"hi\"\n"')

    assert expression.matches("x", {"quote": 'say "hi"\n'}) is True


def test_empty_expression_matches_all() -> None:
    assert parse_filter(None).matches_all
    assert not parse_filter("rank > 1").matches_all


@pytest.mark.parametrize(
    "expression",
    [
        "rank >",
        "rank = 3",
        "(rank > 1",
        "rank > 1 and",
        "site in 'docs'",
        "site in ['a',]",
        "title like 3",
        "site not == 'docs'",
        "rank > 1 rank < 3",
        "site == @",
        "exists 'site'",
    ],
)
def test_malformed_expressions_raise(expression: str) -> None:
    with pytest.raises(InvalidFilterSyntax) as excinfo:
        parse_filter(expression)

    assert excinfo.value.expression == expression
    assert 0 <= excinfo.value.position <= len(expression)


def test_syntax_error_reports_offset() -> None:
    with pytest.raises(InvalidFilterSyntax) as excinfo:
        parse_filter("rank > 1 and $")

    assert excinfo.value.position == 13


@pytest.mark.parametrize("value", ["plain", 'with "quotes" and \\ slash', "line\nbreak", 42, -1.5, True, False])
def test_format_literal_round_trips_through_parser(value: object) -> None:
    expression = parse_filter(f"field == {format_literal(value)}")

    assert expression.matches("x", {"field": value}) is True


@pytest.mark.parametrize("expression", ["(" * 2000 + "rank == 3" + ")" * 2000, "not " * 2000 + "rank == 3"])
def test_deep_nesting_is_a_syntax_error(expression: str) -> None:
    with pytest.raises(InvalidFilterSyntax, match="nested deeper"):
        parse_filter(expression)


def test_nesting_within_limit_parses() -> None:
    expression = "(" * 50 + "rank == 3" + ")" * 50

    assert parse_filter(expression).matches("a", _METADATA)


def test_node_base_class_is_abstract() -> None:
    with pytest.raises(TypeError):
        Node()
