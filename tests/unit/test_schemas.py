"""Tests for the bus wire format."""

import json

import pytest

from report_aggregator.bus.schemas import DATA_FIELD, decode_fields, encode_event
from report_aggregator.core.events import InboundEvent


def test_encode_model_drops_none():
    fields = encode_event(InboundEvent(id="e1", payload={"total": 3}))
    assert json.loads(fields[DATA_FIELD]) == {"id": "e1", "payload": {"total": 3}}


def test_encode_mapping_as_is():
    fields = encode_event({"id": "e1", "data": {"x": 1}, "extra": True})
    assert json.loads(fields[DATA_FIELD]) == {"id": "e1", "data": {"x": 1}, "extra": True}


def test_decode_bytes():
    event = decode_fields({DATA_FIELD: b'{"id": "e1", "data": {"total": 2}}'})
    assert event.id == "e1"
    assert event.payload == {"total": 2}


@pytest.mark.parametrize(
    "fields",
    [
        {},
        {DATA_FIELD: ""},
        {DATA_FIELD: "{not json"},
        {DATA_FIELD: "[1, 2]"},
        {DATA_FIELD: '"just a string"'},
    ],
)
def test_decode_malformed_returns_none(fields):
    assert decode_fields(fields) is None
