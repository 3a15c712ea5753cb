"""Tests for core.filters: parsing, binding and evaluation."""

import datetime

import pytest

from core.errors import InvalidFilterSyntax, TypeMismatch
from core.filters import (
    And, Comparison, Constant, Not, Or, compile_filter, evaluate, like_to_regex,
    parse_filter, select, tokenize
)
from core.schema import Feature, FieldDef, GeometryType, Schema


SCHEMA = Schema('places', GeometryType.POINT, (
    FieldDef.text('name', 40),
    FieldDef.integer('number'),
    FieldDef.double('score'),
    FieldDef.date('founded'),
))

A = Feature('places.1', None, {'name': 'A', 'number': 1, 'score': 0.5,
                               'founded': datetime.date(1900, 1, 1)})
B = Feature('places.2', None, {'name': 'B', 'number': 2, 'score': 2.5,
                               'founded': datetime.date(2001, 6, 15)})
NULLS = Feature('places.3', None, {'name': None, 'number': None, 'score': None, 'founded': None})


def _ids(text, features=(A, B, NULLS)):
    return [f.id for f in select(compile_filter(text, SCHEMA), features)]


class TestTokenizer:
    """Lexical forms accepted by the filter language."""

    @pytest.mark.unit
    def test_keywords_are_case_insensitive(self):
        kinds = [t.kind for t in tokenize("a = 1 and not b like 'x' or include")]
        assert kinds == ['word', 'op', 'number', 'AND', 'NOT', 'word', 'op', 'string', 'OR', 'INCLUDE']

    @pytest.mark.unit
    def test_not_equal_spellings(self):
        assert tokenize('a <> 1')[1].value == '!='
        assert tokenize('a != 1')[1].value == '!='

    @pytest.mark.unit
    def test_quote_escape(self):
        assert tokenize("name = 'O''Brien'")[2].value == "O'Brien"

    @pytest.mark.unit
    def test_number_literals(self):
        assert [t.value for t in tokenize('a = -3')][2] == -3
        assert [t.value for t in tokenize('a = 2.5e1')][2] == 25.0


class TestParser:
    """Precedence is NOT > AND > OR; parentheses group."""

    @pytest.mark.unit
    def test_and_binds_tighter_than_or(self):
        tree = parse_filter("a = 1 OR b = 2 AND c = 3")
        assert isinstance(tree, Or)
        assert isinstance(tree.right, And)

    @pytest.mark.unit
    def test_parentheses_override(self):
        tree = parse_filter("(a = 1 OR b = 2) AND c = 3")
        assert isinstance(tree, And)
        assert isinstance(tree.left, Or)

    @pytest.mark.unit
    def test_not_applies_to_next_factor(self):
        tree = parse_filter("NOT a = 1 AND b = 2")
        assert isinstance(tree, And)
        assert tree.left == Not(Comparison('a', '=', 1))

    @pytest.mark.unit
    def test_include_exclude(self):
        assert parse_filter('INCLUDE') == Constant(True)
        assert parse_filter('exclude') == Constant(False)

    @pytest.mark.unit
    @pytest.mark.parametrize('text', [
        '',
        '   ',
        '(number = 1',
        'number = 1)',
        'number >> 1',
        'number ~ 1',
        'number = ',
        'number 1',
        "name = 'unterminated",
        'number = 1 name',
        'AND number = 1',
        'number = other',
    ])
    def test_malformed(self, text):
        with pytest.raises(InvalidFilterSyntax):
            parse_filter(text)


class TestBinding:
    """Field names and literal types are checked before evaluation."""

    @pytest.mark.unit
    def test_unknown_field(self):
        with pytest.raises(InvalidFilterSyntax, match='Unknown field'):
            compile_filter('height > 3', SCHEMA)

    @pytest.mark.unit
    def test_field_names_match_ignoring_case(self):
        assert _ids("NUMBER = 2") == ['places.2']

    @pytest.mark.unit
    @pytest.mark.parametrize('text', [
        "number = 'one'",
        "number LIKE '1%'",
        "name = 5",
        "name > 'A'",
        "founded = 2001",
        "founded = 'yesterday'",
        "founded LIKE '2001%'",
    ])
    def test_type_mismatch(self, text):
        with pytest.raises(TypeMismatch):
            compile_filter(text, SCHEMA)

    @pytest.mark.unit
    def test_passthrough(self):
        bound = compile_filter('number = 1', SCHEMA)
        assert compile_filter(bound, SCHEMA) is bound
        assert compile_filter(None, SCHEMA) is None


class TestEvaluation:
    """Three-valued logic collapsed to boolean; null attributes never match."""

    @pytest.mark.unit
    def test_compound_filter(self):
        assert _ids("number > 1 AND name != 'A'", (A, B)) == ['places.2']

    @pytest.mark.unit
    def test_or_and_not(self):
        assert _ids("number = 1 OR score >= 2.5") == ['places.1', 'places.2']
        assert _ids("NOT number = 1") == ['places.2', 'places.3']

    @pytest.mark.unit
    def test_null_comparison_is_false(self):
        assert _ids("number != 5") == ['places.1', 'places.2']

    @pytest.mark.unit
    def test_integer_field_against_decimal_literal(self):
        assert _ids("number < 1.5") == ['places.1']

    @pytest.mark.unit
    def test_text_is_case_sensitive(self):
        assert _ids("name = 'a'") == []
        assert _ids("name = 'A'") == ['places.1']

    @pytest.mark.unit
    def test_dates(self):
        assert _ids("founded >= '2000-01-01'") == ['places.2']
        assert _ids("founded = '1900-01-01'") == ['places.1']

    @pytest.mark.unit
    def test_include_exclude(self):
        assert _ids('INCLUDE') == ['places.1', 'places.2', 'places.3']
        assert _ids('EXCLUDE') == []

    @pytest.mark.unit
    def test_evaluate_function(self):
        bound = compile_filter("name <> 'B'", SCHEMA)
        assert evaluate(bound, A) is True
        assert evaluate(bound, B) is False

    @pytest.mark.unit
    def test_select_without_filter(self):
        assert select(None, [A, B]) == [A, B]


class TestLike:
    """% matches any run of characters, _ exactly one; the whole value must match."""

    @pytest.mark.unit
    def test_wildcards(self):
        features = [
            Feature('s.1', None, {'name': 'Springfield'}),
            Feature('s.2', None, {'name': 'Shelbyville'}),
            Feature('s.3', None, {'name': 'Spring'}),
        ]
        assert _ids("name LIKE 'Spring%'", features) == ['s.1', 's.3']
        assert _ids("name LIKE 'S_ring'", features) == ['s.3']
        assert _ids("name LIKE '%ville'", features) == ['s.2']
        assert _ids("name LIKE 'spring%'", features) == []

    @pytest.mark.unit
    def test_regex_characters_are_literal(self):
        pattern = like_to_regex('a.b%')
        assert pattern.fullmatch('a.bc')
        assert not pattern.fullmatch('axbc')
