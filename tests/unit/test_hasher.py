"""Tests for canonical hashing helpers."""

from __future__ import annotations

from retour.core.hasher import (
    canonical_json_bytes,
    compute_idempotency_key,
    content_address,
    normalize_rule_text,
)


class TestCanonicalJson:
    def test_sorted_and_compact(self):
        assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_non_ascii_escaped(self):
        assert canonical_json_bytes({"x": "é"}) == b'{"x":"\\u00e9"}'

    def test_content_address_prefix(self):
        assert content_address({"a": 1}).startswith("sha256:")
        assert content_address({"a": 1}) == content_address({"a": 1})


class TestIdempotencyKey:
    def test_same_inputs_same_key(self):
        k1 = compute_idempotency_key("r1", 1, "generation", {"payload_ref": ["a"]})
        k2 = compute_idempotency_key("r1", 1, "generation", {"payload_ref": ["a"]})
        assert k1 == k2
        assert len(k1) == 64

    def test_any_field_changes_key(self):
        base = compute_idempotency_key("r1", 1, "generation")
        assert compute_idempotency_key("r2", 1, "generation") != base
        assert compute_idempotency_key("r1", 2, "generation") != base
        assert compute_idempotency_key("r1", 1, "comparison") != base
        assert compute_idempotency_key("r1", 1, "generation", {"x": 1}) != base

    def test_none_payload_equals_empty(self):
        assert compute_idempotency_key("r1", 1, "s", None) == compute_idempotency_key("r1", 1, "s", {})


class TestNormalizeRuleText:
    def test_digits_folded(self):
        a = normalize_rule_text("Floor plan has only 1 spaces, expected at least 2")
        b = normalize_rule_text("Floor plan has only 0 spaces, expected at least 2")
        assert a == b == "floor plan has only # spaces, expected at least #"

    def test_whitespace_collapsed(self):
        assert normalize_rule_text("  Missing   Kitchen\n") == "missing kitchen"
