"""Tests for the JSON mapping of dynamic values"""

import math

import pytest
from pytest import raises

from grpcdyn.client.json_io import from_json_value, to_json_value
from grpcdyn.proto import EncodeError


@pytest.fixture
def scalars(registry):
    return registry.find_message("test.Scalars")


def describe_from_json_value():
    def decodes_base64_bytes(scalars, codec, expect):
        expect(from_json_value({"bytes_value": "aGk="}, scalars, codec)) == {"bytes_value": b"hi"}
        expect(from_json_value({"bytes_value": "-_8"}, scalars, codec)) == {"bytes_value": b"\xfb\xff"}

    def rejects_bad_base64(scalars, codec):
        with raises(EncodeError, match="base64"):
            from_json_value({"bytes_value": "a"}, scalars, codec)

    def reads_named_floats(scalars, codec, expect):
        value = from_json_value({"double_value": "NaN", "float_value": "-Infinity"}, scalars, codec)
        expect(math.isnan(value["double_value"])) == True
        expect(value["float_value"]) == -math.inf

    def reads_integers_from_strings(scalars, codec, expect):
        value = from_json_value({"int64_value": "-9007199254740993", "uint32_value": 7.0}, scalars, codec)
        expect(value) == {"int64_value": -9007199254740993, "uint32_value": 7}

    def rejects_unparseable_numbers(scalars, codec):
        with raises(EncodeError, match="int64_value"):
            from_json_value({"int64_value": "ten"}, scalars, codec)

    def converts_map_keys(registry, codec, expect):
        maps = registry.find_message("test.Maps")
        value = from_json_value({"by_id": {"7": {"value": 1}}, "flags": {"true": "BLUE"}}, maps, codec)
        expect(value) == {"by_id": {7: {"value": 1}}, "flags": {True: "BLUE"}}

    def rejects_bad_bool_keys(registry, codec):
        with raises(EncodeError, match="yes"):
            from_json_value({"flags": {"yes": "BLUE"}}, registry.find_message("test.Maps"), codec)

    def converts_repeated_values(registry, codec, expect):
        repeated = registry.find_message("test.Repeated")
        value = from_json_value({"doubles": ["Infinity", 1.5], "packed_ints": ["1", 2]}, repeated, codec)
        expect(value) == {"doubles": [math.inf, 1.5], "packed_ints": [1, 2]}

    def follows_any_types(registry, codec, expect):
        holder = registry.find_message("test.Holder")
        data = {"item": {"@type": "type.googleapis.com/test.Scalars", "bytes_value": "aGk="}}
        expect(from_json_value(data, holder, codec)) == {
            "item": {"@type": "type.googleapis.com/test.Scalars", "bytes_value": b"hi"}
        }

    def leaves_unknown_fields_for_the_codec(scalars, codec, expect):
        expect(from_json_value({"nope": "aGk="}, scalars, codec)) == {"nope": "aGk="}


def describe_to_json_value():
    def encodes_bytes_as_base64(scalars, codec, expect):
        expect(to_json_value({"bytes_value": b"\xfb\xff"}, scalars, codec)) == {"bytes_value": "+/8="}

    def names_non_finite_floats(scalars, codec, expect):
        value = {"double_value": math.nan, "float_value": math.inf, "int32_value": 3}
        expect(to_json_value(value, scalars, codec)) == {
            "double_value": "NaN",
            "float_value": "Infinity",
            "int32_value": 3,
        }

    def stringifies_map_keys(registry, codec, expect):
        maps = registry.find_message("test.Maps")
        value = {"by_id": {7: {"value": 1}}, "flags": {False: "RED"}}
        expect(to_json_value(value, maps, codec)) == {"by_id": {"7": {"value": 1}}, "flags": {"false": "RED"}}

    def converts_nested_and_repeated_messages(registry, codec, expect):
        holder = registry.find_message("test.Holder")
        value = {"items": [{"@type": "type.googleapis.com/test.Scalars", "bytes_value": b"hi"}]}
        expect(to_json_value(value, holder, codec)) == {
            "items": [{"@type": "type.googleapis.com/test.Scalars", "bytes_value": "aGk="}]
        }
