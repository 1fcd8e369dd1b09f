from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from trackrecord.domain.canonical import (
    CanonicalField,
    FieldKind,
    canonical_encode,
    canonical_encode_mapping,
    fields_from_mapping,
    format_fixed,
    format_integer,
    infer_field,
    integer_field,
    money_field,
    price_field,
    string_field,
    wire_encode,
)
from trackrecord.domain.digest import sha256_hex

TRADE_OPEN_FIELDS = {
    "ticket": "T1",
    "openPrice": 1.2345,
    "lots": 0.1,
    "sl": 0,
    "direction": "BUY",
    "symbol": "EURUSD",
    "tp": 1.25,
}


GOLDEN_CASES = json.loads(
    (Path(__file__).parent / "fixtures" / "canonical_golden.json").read_text(encoding="utf-8")
)["cases"]


def _golden_field(spec: dict) -> CanonicalField:
    kind = FieldKind(spec["kind"])
    value = spec["value"]
    if kind in (FieldKind.MONEY, FieldKind.PRICE):
        value = Decimal(value)
    elif kind is FieldKind.INTEGER:
        value = int(value)
    return CanonicalField(spec["name"], value, kind)


@pytest.mark.parametrize("case", GOLDEN_CASES, ids=[case["name"] for case in GOLDEN_CASES])
def test_golden_encodings(case: dict) -> None:
    fields = [_golden_field(spec) for spec in case["fields"]]

    encoded = canonical_encode(fields)

    assert encoded == case["encoded"]
    if "sha256" in case:
        assert sha256_hex(encoded) == case["sha256"]
    if "wire" in case:
        assert wire_encode(fields) == case["wire"]


def test_trade_open_mapping_matches_golden_case() -> None:
    (case,) = [case for case in GOLDEN_CASES if case["name"] == "trade_open_payload"]

    assert canonical_encode_mapping(TRADE_OPEN_FIELDS) == case["encoded"]


def test_output_has_no_whitespace_outside_string_values() -> None:
    encoded = canonical_encode_mapping({"x": 1.0, "y": "v", "seqNo": 3})

    assert " " not in encoded
    assert "\n" not in encoded


@given(st.permutations(sorted(TRADE_OPEN_FIELDS.items())))
def test_insertion_order_does_not_change_encoding(items) -> None:
    assert canonical_encode_mapping(dict(items)) == canonical_encode_mapping(TRADE_OPEN_FIELDS)


@pytest.mark.parametrize(
    ("value", "places", "expected"),
    [
        (Decimal("2.345"), 2, "2.35"),
        (Decimal("-2.345"), 2, "-2.35"),
        (2.675, 2, "2.68"),
        (1.005, 2, "1.01"),
        (Decimal("1.123456785"), 8, "1.12345679"),
        (0, 8, "0.00000000"),
        (Decimal("1E+3"), 2, "1000.00"),
    ],
)
def test_fixed_formatting_rounds_half_away_from_zero(value, places, expected) -> None:
    assert format_fixed(value, places) == expected


@pytest.mark.parametrize("value", [-0.001, Decimal("-0.004"), Decimal("-0"), -0.0])
def test_negative_zero_renders_as_positive_zero(value) -> None:
    assert format_fixed(value, 2) == "0.00"


def test_non_finite_numbers_are_rejected() -> None:
    with pytest.raises(ValueError, match="non-finite"):
        format_fixed(float("nan"), 2)


def test_integer_fields_have_no_decimal_point() -> None:
    assert format_integer(1700000000) == "1700000000"
    assert format_integer(12.9) == "12"
    assert format_integer(-1.5) == "-2"
    assert integer_field("seqNo", 7).render() == '"seqNo":7'


def test_booleans_are_not_numbers() -> None:
    with pytest.raises(TypeError):
        format_integer(True)
    with pytest.raises(TypeError):
        money_field("balance", True).render()


def test_keys_use_the_same_escaping() -> None:
    assert string_field('we"ird', "v").render() == '"we\\"ird":"v"'


def test_duplicate_field_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate canonical field: ticket"):
        canonical_encode([string_field("ticket", "1"), string_field("ticket", "2")])


def test_field_kind_inference_follows_registered_names() -> None:
    assert infer_field("closePrice", 1.1).kind is FieldKind.PRICE
    assert infer_field("uptimeSeconds", 60).kind is FieldKind.INTEGER
    assert infer_field("commission", -3.5).kind is FieldKind.MONEY
    assert infer_field("somethingNew", 1).kind is FieldKind.MONEY
    assert infer_field("recoveryMode", True).kind is FieldKind.BOOLEAN
    assert infer_field("ticket", "T1").kind is FieldKind.STRING


def test_unsupported_values_are_rejected() -> None:
    with pytest.raises(TypeError, match="unsupported type"):
        infer_field("nested", {"a": 1})


def test_none_values_are_omitted() -> None:
    fields = fields_from_mapping({"balance": None, "ticket": "T1"})

    assert fields == (CanonicalField("ticket", "T1", FieldKind.STRING),)


def test_boolean_field_renders_lowercase_literal() -> None:
    assert canonical_encode_mapping({"recoveryMode": True}) == '{"recoveryMode":true}'
    assert price_field("sl", Decimal("1.1")).render() == '"sl":1.10000000'


def test_wire_form_escapes_control_characters_and_keeps_number_text() -> None:
    fields = [
        string_field("broker", "Acme\tMarkets\u0001"),
        price_field("openPrice", Decimal("1.2")),
        integer_field("openTrades", 3),
    ]

    wire = wire_encode(fields)

    assert wire == '{"broker":"Acme\\tMarkets\\u0001","openPrice":1.20000000,"openTrades":3}'
    assert json.loads(wire)["broker"] == "Acme\tMarkets\u0001"


def test_wire_form_equals_hash_form_for_plain_strings() -> None:
    fields = fields_from_mapping(TRADE_OPEN_FIELDS)

    assert wire_encode(fields) == canonical_encode(fields)
