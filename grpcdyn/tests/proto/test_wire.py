"""Tests for wire format primitives"""

from pytest import raises

from grpcdyn.proto.wire import (
    DecodeError,
    WireReader,
    WireType,
    WireWriter,
    encode_varint,
    end_group_tag,
    make_tag,
    tag_number,
    tag_wire_type,
    to_signed,
    varint_size,
    zigzag_decode,
    zigzag_encode,
)


def describe_tags():
    def packs_number_and_wire_type(expect):
        tag = make_tag(1, WireType.VARINT)
        expect(tag) == 0x08
        expect(tag_number(tag)) == 1
        expect(tag_wire_type(tag)) == WireType.VARINT

        expect(make_tag(2, WireType.LENGTH_DELIMITED)) == 0x12

    def matches_end_group_to_start_group(expect):
        expect(end_group_tag(make_tag(4, WireType.START_GROUP))) == 0x24

    def rejects_field_number_zero():
        with raises(ValueError):
            make_tag(0, WireType.VARINT)


def describe_varints():
    def encodes_small_and_multi_byte_values(expect):
        expect(encode_varint(0)) == b"\x00"
        expect(encode_varint(1)) == b"\x01"
        expect(encode_varint(300)) == b"\xac\x02"

    def sign_extends_negatives_to_ten_bytes(expect):
        expect(encode_varint(-1)) == b"\xff" * 9 + b"\x01"
        expect(varint_size(-1)) == 10

    def sizes_match_encoding(expect):
        for value in [0, 1, 127, 128, 16383, 16384, 2**32, 2**63, 2**64 - 1]:
            expect(varint_size(value)) == len(encode_varint(value))

    def zigzag_maps_small_magnitudes_to_small_values(expect):
        expect(zigzag_encode(0, 32)) == 0
        expect(zigzag_encode(-1, 32)) == 1
        expect(zigzag_encode(1, 32)) == 2
        expect(zigzag_encode(-2, 64)) == 3
        expect(zigzag_encode(-(2**31), 32)) == 2**32 - 1
        expect(zigzag_decode(2**32 - 1)) == -(2**31)
        expect(zigzag_decode(3)) == -2

    def truncates_to_signed_width(expect):
        expect(to_signed(2**64 - 1, 32)) == -1
        expect(to_signed(2**31, 32)) == -(2**31)
        expect(to_signed(5, 64)) == 5


def describe_wire_reader():
    def reads_tags_until_the_end(expect):
        reader = WireReader(bytes.fromhex("0805"))
        expect(reader.read_tag()) == 0x08
        expect(reader.read_varint()) == 5
        expect(reader.read_tag()) == 0
        expect(reader.at_limit) == True

    def peeks_without_consuming(expect):
        reader = WireReader(bytes.fromhex("08051001"))
        expect(reader.read_tag()) == 0x08
        expect(reader.read_varint()) == 5

        expect(reader.peek_tag()) == 0x10
        expect(reader.peek_tag()) == 0x10
        expect(reader.at_limit) == False
        expect(reader.read_tag()) == 0x10
        expect(reader.read_varint()) == 1

    def drops_a_peeked_tag(expect):
        reader = WireReader(bytes.fromhex("1001"))
        expect(reader.peek_tag()) == 0x10
        reader.drop_peeked()
        expect(reader.read_varint()) == 1

    def limits_reads_to_a_nested_length(expect):
        reader = WireReader(bytes.fromhex("0a0208011005"))
        expect(reader.read_tag()) == 0x0A
        old_end = reader.push_limit(reader.read_length())
        expect(reader.read_tag()) == 0x08
        expect(reader.read_varint()) == 1
        expect(reader.read_tag()) == 0
        reader.pop_limit(old_end)

        expect(reader.read_tag()) == 0x10
        expect(reader.read_varint()) == 5

    def reads_fixed_width_values(expect):
        reader = WireReader(bytes.fromhex("0000c03f"))
        expect(reader.read_fixed("<f", 4)) == 1.5

    def accepts_bytearray_and_memoryview(expect):
        expect(WireReader(bytearray(b"\x08\x05")).read_tag()) == 0x08
        expect(WireReader(memoryview(b"\x08\x05")).read_tag()) == 0x08

    def fails_on_truncated_varint():
        with raises(DecodeError):
            WireReader(b"\x80").read_varint()

    def fails_on_overlong_varint():
        with raises(DecodeError):
            WireReader(b"\xff" * 11).read_varint()

    def fails_on_field_number_zero():
        with raises(DecodeError):
            WireReader(b"\x00").read_tag()

    def fails_when_length_exceeds_buffer():
        reader = WireReader(bytes.fromhex("0568"))
        with raises(DecodeError):
            reader.read_bytes()

    def refuses_to_narrow_with_peeked_tags():
        reader = WireReader(bytes.fromhex("0a00"))
        reader.peek_tag()
        with raises(DecodeError):
            reader.push_limit(0)


def describe_wire_writer():
    def writes_tags_and_values(expect):
        writer = WireWriter()
        writer.write_tag(make_tag(1, WireType.VARINT))
        writer.write_varint(5)
        writer.write_tag(make_tag(2, WireType.LENGTH_DELIMITED))
        writer.write_bytes(b"hi")
        expect(writer.getvalue()) == bytes.fromhex("0805") + bytes.fromhex("12026869")
        expect(len(writer)) == 6

    def writes_fixed_width_values(expect):
        writer = WireWriter()
        writer.write_fixed("<i", -2)
        expect(writer.getvalue()) == b"\xfe\xff\xff\xff"
