"""
Unit tests for the filter and sort grammar.
"""

import pytest

from dbaas.chronos_server.errors import ValidationError
from dbaas.chronos_server.index.filters import (
    Cursor,
    Predicate,
    SortSpec,
    decode_page_token,
    encode_page_token,
    matches,
    parse_filter,
    parse_sort,
)

INDEXED = {"status", "age", "tags"}


class TestParseFilter:
    """Tests for parse_filter."""

    def test_literal_is_equality(self):
        assert parse_filter({"status": "active"}, INDEXED) == [Predicate("status", "eq", "active")]

    def test_operator_document(self):
        predicates = parse_filter({"age": {"$gte": 18, "$lt": 65}}, INDEXED)
        assert predicates == [Predicate("age", "gte", 18), Predicate("age", "lt", 65)]

    def test_in_operand_becomes_tuple(self):
        assert parse_filter({"tags": {"$in": ["a", "b"]}}, INDEXED) == [Predicate("tags", "in", ("a", "b"))]

    def test_none_matches_everything(self):
        assert parse_filter(None, INDEXED) == []

    def test_non_indexed_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_filter({"email": "a@b.c"}, INDEXED)
        assert exc_info.value.field_name == "email"

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            parse_filter({"age": {"$regex": "1.*"}}, INDEXED)

    @pytest.mark.parametrize(
        "condition",
        [{"$gt": True}, {"$gt": [1]}, {"$in": "abc"}, {"$exists": 1}, {"$eq": {"nested": 1}}],
    )
    def test_bad_operands_rejected(self, condition):
        with pytest.raises(ValidationError):
            parse_filter({"age": condition}, INDEXED)

    def test_any_path_allowed_without_field_list(self):
        assert parse_filter({"profile.country": "NZ"}) == [Predicate("profile.country", "eq", "NZ")]

    def test_filter_must_be_mapping(self):
        with pytest.raises(ValidationError):
            parse_filter(["status"], INDEXED)


class TestParseSort:
    def test_default_sorts_by_id(self):
        assert parse_sort(None, INDEXED) == SortSpec("id", 1)

    def test_indexed_field(self):
        assert parse_sort({"age": -1}, INDEXED) == SortSpec("age", -1)

    def test_multiple_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_sort({"age": 1, "status": 1}, INDEXED)

    def test_bad_direction_rejected(self):
        with pytest.raises(ValidationError):
            parse_sort({"age": 2}, INDEXED)

    def test_non_indexed_rejected(self):
        with pytest.raises(ValidationError):
            parse_sort({"email": 1}, INDEXED)


class TestPageToken:
    def test_token_carries_cursor(self):
        sort = SortSpec("age", -1)
        token = encode_page_token(Cursor(42, "item-9"), sort)
        assert "=" not in token
        assert decode_page_token(token, sort) == Cursor(42, "item-9")

    def test_token_for_other_sort_rejected(self):
        token = encode_page_token(Cursor(42, "item-9"), SortSpec("age", -1))
        with pytest.raises(ValidationError):
            decode_page_token(token, SortSpec("age", 1))

    def test_garbage_token_rejected(self):
        with pytest.raises(ValidationError):
            decode_page_token("not-a-token!!", SortSpec())


class TestMatches:
    """Tests for in-process predicate evaluation."""

    DOC = {"status": "active", "age": 30, "tags": ["a", "b"], "profile": {"country": "NZ"}, "flag": True}

    def check(self, filter_doc):
        return matches(self.DOC, parse_filter(filter_doc))

    def test_equality(self):
        assert self.check({"status": "active"})
        assert not self.check({"status": "banned"})

    def test_array_element_match(self):
        assert self.check({"tags": "a"})
        assert not self.check({"tags": "z"})

    def test_dotted_path(self):
        assert self.check({"profile.country": "NZ"})

    def test_ranges(self):
        assert self.check({"age": {"$gt": 18, "$lte": 30}})
        assert not self.check({"age": {"$lt": 30}})

    def test_range_ignores_other_types(self):
        assert not self.check({"status": {"$gt": 1}})

    def test_in_and_nin(self):
        assert self.check({"tags": {"$in": ["b", "x"]}})
        assert not self.check({"tags": {"$nin": ["b"]}})
        assert self.check({"status": {"$nin": ["banned"]}})

    def test_ne_on_missing_field(self):
        assert self.check({"missing": {"$ne": 1}})

    def test_exists(self):
        assert self.check({"age": {"$exists": True}})
        assert self.check({"missing": {"$exists": False}})
        assert not self.check({"missing": {"$exists": True}})

    def test_bool_is_not_int(self):
        assert self.check({"flag": True})
        assert not self.check({"flag": 1})

    def test_all_predicates_must_hold(self):
        assert not self.check({"status": "active", "age": 99})
