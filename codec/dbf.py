"""
Attribute file codec (.dbf) and code page sidecar (.cpg).

File layout (dBase III):
    32-byte header: version, last update date, row count (uint32), header
    length and row width (uint16), all little-endian.
    One 32-byte descriptor per column: name (11 bytes, NUL padded), type code,
    length, decimal count. The descriptor list ends with 0x0D.
    Fixed-width rows, each starting with a deletion flag (' ' or '*') and
    followed by space-padded cells. The file ends with 0x1A.

Functions:
    read_attribute_header: Parse the header and column directory
    iter_attribute_records: Lazily decode rows from a stream
    decode_attribute_file: Decode a complete attribute file
    encode_attribute_file: Encode columns and rows
    encode_code_page / decode_code_page: .cpg sidecar text
"""

import codecs
import datetime
import io
import struct
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterator, List, Optional, Sequence, Set, Tuple

from core.errors import InvalidSchema, MalformedAttributes
from core.schema import FieldDef, FieldType, MAX_FIELD_NAME_BYTES
from utils.logger import get_logger

logger = get_logger(__name__)

DBF_VERSION = 0x03
HEADER_LENGTH = 32
DESCRIPTOR_LENGTH = 32
TERMINATOR = 0x0D
EOF_MARKER = b'\x1a'
DELETED_FLAG = ord('*')

_TYPE_CODES = {
    FieldType.TEXT: b'C',
    FieldType.INTEGER: b'N',
    FieldType.DOUBLE: b'N',
    FieldType.DATE: b'D',
}


@dataclass(frozen=True)
class DbfHeader:
    num_records: int
    header_length: int
    record_length: int
    fields: Tuple[FieldDef, ...]


@dataclass
class AttributeTable:
    fields: Tuple[FieldDef, ...]
    records: List[List[Any]] = field(default_factory=list)
    deleted: Set[int] = field(default_factory=set)


# ---------------------------------------------------------------- header

def _field_from_descriptor(name: str, type_code: str, length: int, decimals: int) -> FieldDef:
    try:
        if type_code == 'C':
            return FieldDef(name, FieldType.TEXT, length)
        if type_code == 'N' and decimals == 0:
            return FieldDef(name, FieldType.INTEGER, length)
        if type_code in ('N', 'F'):
            return FieldDef(name, FieldType.DOUBLE, length, decimals)
        if type_code == 'D':
            return FieldDef(name, FieldType.DATE, length)
        if type_code == 'L':
            logger.debug(f"Reading logical column '{name}' as Text")
            return FieldDef(name, FieldType.TEXT, length)
    except InvalidSchema as e:
        raise MalformedAttributes(f"Bad column descriptor '{name}': {e.message}")
    raise MalformedAttributes(f"Unsupported column type '{type_code}' for column '{name}'")


def read_attribute_header(stream: BinaryIO, encoding: str = 'utf-8') -> DbfHeader:
    """
    Read the header and column directory at the current stream position.

    Raises:
        MalformedAttributes: On a truncated header or when the declared row
            width does not match the column directory
    """
    head = stream.read(HEADER_LENGTH)
    if len(head) < HEADER_LENGTH:
        raise MalformedAttributes(f"Attribute file header truncated: {len(head)} bytes")

    num_records, header_length, record_length = struct.unpack_from('<IHH', head, 4)
    if header_length < HEADER_LENGTH + 1:
        raise MalformedAttributes(f"Declared header length {header_length} is too short")

    directory = stream.read(header_length - HEADER_LENGTH)
    if len(directory) < header_length - HEADER_LENGTH:
        raise MalformedAttributes("Attribute file column directory truncated")

    fields = []
    for position in range(0, len(directory), DESCRIPTOR_LENGTH):
        if directory[position] == TERMINATOR:
            break
        descriptor = directory[position:position + DESCRIPTOR_LENGTH]
        if len(descriptor) < DESCRIPTOR_LENGTH:
            raise MalformedAttributes("Column descriptor truncated")
        raw_name, raw_type, length, decimals = struct.unpack('<11sc4xBB14x', descriptor)
        name = raw_name.split(b'\x00', 1)[0].decode(encoding, errors='replace').strip()
        fields.append(_field_from_descriptor(name, raw_type.decode('ascii', errors='replace'),
                                             length, decimals))
    else:
        raise MalformedAttributes("Column directory is missing its terminator")

    expected_width = 1 + sum(f.length for f in fields)
    if record_length != expected_width:
        raise MalformedAttributes(
            f"Row width mismatch: header declares {record_length}, columns need {expected_width}")

    return DbfHeader(num_records, header_length, record_length, tuple(fields))


# ---------------------------------------------------------------- decode

def _decode_cell(field_def: FieldDef, raw: bytes, encoding: str, row: int) -> Any:
    if field_def.type == FieldType.TEXT:
        return raw.decode(encoding, errors='replace').rstrip(' \x00')

    text = raw.decode('ascii', errors='replace').strip(' \x00')
    if not text or text.startswith('*'):
        return None

    try:
        if field_def.type == FieldType.INTEGER:
            try:
                return int(text)
            except ValueError:
                return int(float(text))
        if field_def.type == FieldType.DOUBLE:
            return float(text)
        if text == '00000000':
            return None
        return datetime.datetime.strptime(text, '%Y%m%d').date()
    except ValueError:
        raise MalformedAttributes(
            f"Row {row}: cannot read {field_def.type.value} value {text!r} in '{field_def.name}'")


def iter_attribute_records(stream: BinaryIO,
                           header: DbfHeader,
                           encoding: str = 'utf-8') -> Iterator[Tuple[int, bool, List[Any]]]:
    """
    Lazily decode rows as (row_index, deleted, values).

    Bytes after the declared rows are ignored. Fewer rows than declared, or a
    row cut short, raise MalformedAttributes.
    """
    for index in range(header.num_records):
        raw = stream.read(header.record_length)
        if len(raw) < header.record_length:
            if raw in (b'', EOF_MARKER):
                raise MalformedAttributes(
                    f"Row count mismatch: header declares {header.num_records} rows, "
                    f"file holds {index}")
            raise MalformedAttributes(
                f"Row {index + 1} truncated ({len(raw)} of {header.record_length} bytes)")

        deleted = raw[0] == DELETED_FLAG
        values = []
        position = 1
        for field_def in header.fields:
            cell = raw[position:position + field_def.length]
            values.append(_decode_cell(field_def, cell, encoding, index + 1))
            position += field_def.length
        yield index, deleted, values


def decode_attribute_file(data: bytes, encoding: str = 'utf-8') -> AttributeTable:
    """Decode a complete attribute file."""
    stream = io.BytesIO(data)
    header = read_attribute_header(stream, encoding)
    table = AttributeTable(header.fields)
    for index, deleted, values in iter_attribute_records(stream, header, encoding):
        table.records.append(values)
        if deleted:
            table.deleted.add(index)
    return table


# ---------------------------------------------------------------- encode

def truncate_encoded(text: str, width: int, encoding: str) -> bytes:
    """Encode text and cut it to ``width`` bytes without splitting a character."""
    data = text.encode(encoding, errors='replace')
    if len(data) <= width:
        return data
    return data[:width].decode(encoding, errors='ignore').encode(encoding)


def _format_double(value: float, length: int, decimals: int) -> str:
    text = f"{value:.{decimals}f}"
    if len(text) <= length:
        return text
    for precision in range(min(decimals, length), -1, -1):
        text = f"{value:.{precision}e}"
        if len(text) <= length:
            return text
    raise MalformedAttributes(f"Value {value} does not fit a numeric column of width {length}")


def _encode_cell(field_def: FieldDef, value: Any, encoding: str) -> bytes:
    width = field_def.length
    if value is None:
        return b' ' * width

    if field_def.type == FieldType.TEXT:
        return truncate_encoded(str(value), width, encoding).ljust(width, b' ')

    if field_def.type == FieldType.INTEGER:
        text = str(int(value))
    elif field_def.type == FieldType.DOUBLE:
        text = _format_double(float(value), width, field_def.decimals)
    else:
        text = f"{value.year:04d}{value.month:02d}{value.day:02d}"

    if len(text) > width:
        raise MalformedAttributes(
            f"Value {value!r} does not fit column '{field_def.name}' (width {width})")
    return text.encode('ascii').rjust(width, b' ')


def _pack_descriptor(field_def: FieldDef, encoding: str) -> bytes:
    name = truncate_encoded(field_def.name, MAX_FIELD_NAME_BYTES, encoding)
    return struct.pack('<11sc4xBB14x', name, _TYPE_CODES[field_def.type],
                       field_def.length, field_def.decimals)


def encode_attribute_file(fields: Sequence[FieldDef],
                          rows: Sequence[Sequence[Any]],
                          encoding: str = 'utf-8',
                          modified: Optional[datetime.date] = None) -> bytes:
    """
    Encode columns and rows into attribute file bytes.

    Args:
        fields: Column definitions in order
        rows: One sequence of values per row, in column order
        encoding: Text encoding of names and Text cells
        modified: Date stored in the header (defaults to today)

    Returns:
        Attribute file bytes, terminated with 0x1A
    """
    modified = modified or datetime.date.today()
    header_length = HEADER_LENGTH + DESCRIPTOR_LENGTH * len(fields) + 1
    record_length = 1 + sum(f.length for f in fields)

    out = io.BytesIO()
    out.write(struct.pack('<BBBBIHH20x', DBF_VERSION, modified.year - 1900, modified.month,
                          modified.day, len(rows), header_length, record_length))
    for field_def in fields:
        out.write(_pack_descriptor(field_def, encoding))
    out.write(bytes([TERMINATOR]))

    for row_number, row in enumerate(rows, start=1):
        if len(row) != len(fields):
            raise MalformedAttributes(
                f"Row {row_number} has {len(row)} values for {len(fields)} columns")
        out.write(b' ')
        for field_def, value in zip(fields, row):
            out.write(_encode_cell(field_def, value, encoding))

    out.write(EOF_MARKER)
    return out.getvalue()


# ---------------------------------------------------------------- code page

def encode_code_page(encoding: str) -> str:
    return codecs.lookup(encoding).name.upper()


def decode_code_page(text: str) -> Optional[str]:
    """Return the Python codec named by a .cpg file, or None if unknown."""
    name = text.strip()
    if not name:
        return None
    try:
        return codecs.lookup(name).name
    except LookupError:
        logger.debug(f"Unknown code page {name!r}")
        return None
