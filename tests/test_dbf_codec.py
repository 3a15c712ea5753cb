"""Tests for codec.dbf: attribute table and code page sidecar."""

import datetime
import struct

import pytest

from codec.dbf import (
    HEADER_LENGTH, decode_attribute_file, decode_code_page, encode_attribute_file,
    encode_code_page, truncate_encoded
)
from core.errors import MalformedAttributes
from core.schema import FieldDef, FieldType


FIELDS = (
    FieldDef.text('name', 10),
    FieldDef.integer('count'),
    FieldDef.double('ratio'),
    FieldDef.date('visited'),
)

ROWS = [
    ['Alpha', 42, 3.25, datetime.date(2024, 1, 31)],
    ['Beta', None, None, None],
    [None, -7, 0.1, datetime.date(1999, 12, 1)],
]


@pytest.fixture
def table_bytes():
    return encode_attribute_file(FIELDS, ROWS, modified=datetime.date(2024, 6, 1))


def _header_length(fields):
    return HEADER_LENGTH + 32 * len(fields) + 1


def _record_length(fields):
    return 1 + sum(f.length for f in fields)


class TestLayout:
    """Header and column directory bytes."""

    @pytest.mark.unit
    def test_header_fields(self, table_bytes):
        assert table_bytes[0] == 0x03
        assert tuple(table_bytes[1:4]) == (124, 6, 1)
        assert struct.unpack_from('<IHH', table_bytes, 4) == (
            3, _header_length(FIELDS), _record_length(FIELDS))

    @pytest.mark.unit
    def test_column_descriptors(self, table_bytes):
        first = table_bytes[32:64]
        assert first[:11].rstrip(b'\x00') == b'name'
        assert first[11:12] == b'C'
        assert first[16] == 10

        double = table_bytes[96:128]
        assert double[11:12] == b'N'
        assert (double[16], double[17]) == (33, 15)

        assert table_bytes[_header_length(FIELDS) - 1] == 0x0D

    @pytest.mark.unit
    def test_eof_marker(self, table_bytes):
        assert table_bytes.endswith(b'\x1a')

    @pytest.mark.unit
    def test_long_column_names_are_cut_to_ten_bytes(self):
        data = encode_attribute_file([FieldDef.integer('population_2020')], [[1]])
        table = decode_attribute_file(data)
        assert table.fields[0].name == 'population'


class TestRoundTrip:
    """Values survive an encode/decode cycle, after truncation to column width."""

    @pytest.mark.unit
    def test_values(self, table_bytes):
        table = decode_attribute_file(table_bytes)

        assert [f.name for f in table.fields] == ['name', 'count', 'ratio', 'visited']
        assert [f.type for f in table.fields] == [
            FieldType.TEXT, FieldType.INTEGER, FieldType.DOUBLE, FieldType.DATE]
        assert table.records[0] == ['Alpha', 42, 3.25, datetime.date(2024, 1, 31)]
        assert table.records[1] == ['Beta', None, None, None]
        assert table.records[2][1:] == [-7, 0.1, datetime.date(1999, 12, 1)]
        assert table.deleted == set()

    @pytest.mark.unit
    def test_blank_text_decodes_as_empty_string(self, table_bytes):
        table = decode_attribute_file(table_bytes)
        assert table.records[2][0] == ''

    @pytest.mark.unit
    def test_text_is_truncated_to_width(self):
        fields = [FieldDef.text('name', 10)]
        table = decode_attribute_file(encode_attribute_file(fields, [['abcdefghijklmnop']]))
        assert table.records[0][0] == 'abcdefghij'

    @pytest.mark.unit
    def test_truncation_never_splits_a_character(self):
        # 'ö' is two bytes in UTF-8 and would straddle byte 9
        assert truncate_encoded('héllo wörld', 9, 'utf-8') == 'héllo w'.encode('utf-8')

        fields = [FieldDef.text('city', 9)]
        table = decode_attribute_file(encode_attribute_file(fields, [['héllo wörld']]))
        assert table.records[0][0] == 'héllo w'

    @pytest.mark.unit
    def test_legacy_code_page(self):
        fields = [FieldDef.text('city', 10)]
        data = encode_attribute_file(fields, [['Zürich']], encoding='cp1252')
        assert 'Zürich'.encode('cp1252') in data
        assert decode_attribute_file(data, 'cp1252').records[0][0] == 'Zürich'

    @pytest.mark.unit
    def test_wide_double_falls_back_to_exponent(self):
        fields = [FieldDef('big', FieldType.DOUBLE, 10, 4)]
        table = decode_attribute_file(encode_attribute_file(fields, [[1e12]]))
        assert table.records[0][0] == pytest.approx(1e12)

    @pytest.mark.unit
    def test_integer_wider_than_column(self):
        fields = [FieldDef('n', FieldType.INTEGER, 3)]
        with pytest.raises(MalformedAttributes):
            encode_attribute_file(fields, [[12345]])


class TestTypeCodes:
    """Column type codes map onto the closed value type set."""

    @staticmethod
    def _patch_type(data, column, code):
        patched = bytearray(data)
        patched[32 + 32 * column + 11] = ord(code)
        return bytes(patched)

    @pytest.mark.unit
    def test_float_code_is_double(self, table_bytes):
        table = decode_attribute_file(self._patch_type(table_bytes, 2, 'F'))
        assert table.fields[2].type == FieldType.DOUBLE
        assert table.records[0][2] == 3.25

    @pytest.mark.unit
    def test_logical_code_reads_as_text(self):
        data = encode_attribute_file([FieldDef.text('flag', 1)], [['T']])
        table = decode_attribute_file(self._patch_type(data, 0, 'L'))
        assert table.fields[0].type == FieldType.TEXT
        assert table.records[0][0] == 'T'

    @pytest.mark.unit
    def test_unsupported_code(self, table_bytes):
        with pytest.raises(MalformedAttributes, match='Unsupported column type'):
            decode_attribute_file(self._patch_type(table_bytes, 0, 'M'))


class TestMalformed:
    """Structural inconsistencies are errors; trailing bytes are not."""

    @pytest.mark.unit
    def test_deleted_rows_keep_their_position(self, table_bytes):
        patched = bytearray(table_bytes)
        patched[_header_length(FIELDS)] = ord('*')
        table = decode_attribute_file(bytes(patched))

        assert table.deleted == {0}
        assert len(table.records) == 3

    @pytest.mark.unit
    def test_missing_rows(self, table_bytes):
        cut = table_bytes[:_header_length(FIELDS) + _record_length(FIELDS)]
        with pytest.raises(MalformedAttributes, match='Row count mismatch'):
            decode_attribute_file(cut)

    @pytest.mark.unit
    def test_row_cut_short(self, table_bytes):
        cut = table_bytes[:_header_length(FIELDS) + _record_length(FIELDS) + 5]
        with pytest.raises(MalformedAttributes, match='truncated'):
            decode_attribute_file(cut)

    @pytest.mark.unit
    def test_row_width_mismatch(self, table_bytes):
        patched = bytearray(table_bytes)
        struct.pack_into('<H', patched, 10, _record_length(FIELDS) + 1)
        with pytest.raises(MalformedAttributes, match='Row width mismatch'):
            decode_attribute_file(bytes(patched))

    @pytest.mark.unit
    def test_trailing_bytes_are_ignored(self, table_bytes):
        table = decode_attribute_file(table_bytes + b'junk')
        assert len(table.records) == 3

    @pytest.mark.unit
    def test_missing_terminator(self, table_bytes):
        patched = bytearray(table_bytes)
        patched[_header_length(FIELDS) - 1] = 0x20
        with pytest.raises(MalformedAttributes):
            decode_attribute_file(bytes(patched))


class TestCodePage:
    """The .cpg sidecar names the attribute text encoding."""

    @pytest.mark.unit
    def test_encode(self):
        assert encode_code_page('utf-8') == 'UTF-8'
        assert encode_code_page('cp1252') == 'CP1252'

    @pytest.mark.unit
    def test_decode(self):
        assert decode_code_page('UTF-8\n') == 'utf-8'
        assert decode_code_page('cp1252') == 'cp1252'
        assert decode_code_page('not-a-code-page') is None
        assert decode_code_page('   ') is None
