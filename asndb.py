"""
This module provides the ASNRecord and ASNDB classes, for looking up the
autonomous system announcing an IPv4 address.

The database is built from the ip2asn-v4.tsv file published by IPtoASN
(https://iptoasn.com/), and can be stored in a compact binary form for fast
reloading.
"""

from __future__ import annotations
import csv
import io
import ipaddress
import logging
import random
import struct
import unittest
from bisect import bisect_left
from typing import BinaryIO, Callable, Iterable, Iterator, List, Optional, Tuple, Union

log = logging.getLogger(__name__)

DATABASE_DATA_TAG = b"ASDB"
DATABASE_DATA_VERSION = b"bin1"

# No network larger than a /8 is ever produced from a source range.
MIN_PREFIX_LEN = 8

# Owner values used by the source data for unassigned address space.
UNROUTED_OWNERS = ("Not routed", "None")

IPTOASN_URL = "https://iptoasn.com/data/ip2asn-v4.tsv.gz"

_U64 = struct.Struct("<Q")
_RECORD_HEAD = struct.Struct("<IBI")

AddressLike = Union[ipaddress.IPv4Address, str, int]


class ASNDBError(Exception):
    """Base class for all errors raised by this module."""


class TsvParseError(ASNDBError):
    """
    A row of the TSV source could not be turned into records.

    The lower-level exception is available as `error` (and as __cause__ when
    raised), `context` says what was being attempted and `line_num` is the
    source line the row ended on, if known.
    """

    description = "TSV format error"

    def __init__(self, error: Optional[Exception], context: str, line_num: Optional[int] = None) -> None:
        super().__init__(error, context, line_num)
        self.error = error
        self.context = context
        self.line_num = line_num

    def __str__(self) -> str:
        msg = "%s while %s" % (self.description, self.context)
        if self.line_num is not None:
            msg += " (line %i)" % self.line_num
        if self.error is not None:
            msg += ": %s" % self.error
        return msg


class TsvFormatError(TsvParseError):
    """A structurally malformed row (bad quoting, wrong number of columns)."""


class AddrFieldParseError(TsvParseError):
    """The range_start or range_end column is not an IPv4 address."""
    description = "error parsing IP address"


class IntFieldParseError(TsvParseError):
    """The as_number column is not an unsigned 32-bit integer."""
    description = "error parsing integer"


class DbError(ASNDBError):
    """Base class for errors building, loading or storing an ASNDB."""

    def __init__(self, error: Optional[Exception], context: str) -> None:
        super().__init__(error, context)
        self.error = error
        self.context = context


class DbTsvError(DbError):
    """Building a database from TSV data failed on a bad row."""

    def __init__(self, error: TsvParseError) -> None:
        super().__init__(error, "opening ASN DB from TSV file")

    def __str__(self) -> str:
        return "error opening ASN DB from TSV file: %s" % self.error


class DbDataError(DbError):
    """The binary data is not a database this module can read."""

    def __init__(self, message: str) -> None:
        super().__init__(None, message)

    def __str__(self) -> str:
        return "error while reading database: %s" % self.context


class DbBadTagError(DbDataError):
    def __init__(self, tag: bytes) -> None:
        super().__init__("bad database data tag")
        self.tag = tag


class DbUnsupportedVersionError(DbDataError):
    def __init__(self, version: bytes) -> None:
        super().__init__("unsupported database version")
        self.version = version


class DbFileError(DbError):
    """An I/O error (or premature end of data) while reading or writing."""

    def __str__(self) -> str:
        return "error accessing ASN DB file while %s: %s" % (self.context, self.error)


class DbDecodeError(DbError):
    """The record payload of a binary database is malformed."""

    def __str__(self) -> str:
        return "error decoding ASN DB while %s: %s" % (self.context, self.error)


def range_to_subnets(start: int, end: int, min_prefix_len: int = MIN_PREFIX_LEN) -> Iterator[Tuple[int, int]]:
    """
    Decompose the closed address range [start, end] into CIDR networks.

    Yields (base, prefix_len) pairs in ascending order. The networks are
    disjoint and their union is exactly [start, end]. Each one is the largest
    aligned block that fits the rest of the range, except that prefix_len is
    never below min_prefix_len; with the default of 8, the full address space
    comes out as 256 /8 networks rather than a single /0.

    start > end is a precondition violation and yields nothing.
    """
    if start > end:
        return
    for net in ipaddress.summarize_address_range(ipaddress.IPv4Address(start), ipaddress.IPv4Address(end)):
        if net.prefixlen < min_prefix_len:
            for subnet in net.subnets(new_prefix=min_prefix_len):
                yield int(subnet.network_address), subnet.prefixlen
        else:
            yield int(net.network_address), net.prefixlen


class ASNRecord:
    """
    A class for objects representing one network announced by an AS.

    ASNRecord objects have ip, prefix_len, as_number, country and owner
    fields. ip is the network base address as an integer (host byte order),
    and must be aligned to prefix_len.

    The textual representation is of the form
    "[subnet] AS[asn] [country] [owner]", so for example
    "1.1.1.0/24 AS13335 US CLOUDFLARENET - Cloudflare, Inc.".
    """

    __slots__ = ("ip", "prefix_len", "as_number", "country", "owner")

    def __init__(self, ip: int, prefix_len: int, as_number: int, country: str, owner: str) -> None:
        assert 0 <= ip <= 0xffffffff
        assert 0 <= prefix_len <= 32
        assert 0 <= as_number <= 0xffffffff
        self.ip = ip
        self.prefix_len = prefix_len
        self.as_number = as_number
        self.country = country
        self.owner = owner

    def network(self) -> ipaddress.IPv4Network:
        """Construct an ipaddress.IPv4Network object for the network."""
        assert self.ip & ((1 << (32 - self.prefix_len)) - 1) == 0, "bad network"
        return ipaddress.IPv4Network((self.ip, self.prefix_len))

    def last_ip(self) -> int:
        """Get the highest address in the network, as an integer."""
        return self.ip + (1 << (32 - self.prefix_len)) - 1

    def contains(self, ip: int) -> bool:
        return self.ip <= ip <= self.last_ip()

    def sort_key(self) -> int:
        """Records are ordered by network base address only."""
        return self.ip

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ASNRecord):
            return (self.ip, self.prefix_len, self.as_number, self.country, self.owner) == \
                   (other.ip, other.prefix_len, other.as_number, other.country, other.owner)
        return NotImplemented

    __hash__ = None  # type: ignore

    def __str__(self) -> str:
        return "%s AS%i %s %s" % (self.network(), self.as_number, self.country, self.owner)

    def __repr__(self) -> str:
        return "ASNRecord(ip=%i, prefix_len=%i, as_number=%i, country=%r, owner=%r)" % (
            self.ip, self.prefix_len, self.as_number, self.country, self.owner)


def _parse_addr(text: str, context: str, line_num: Optional[int]) -> int:
    try:
        return int(ipaddress.IPv4Address(text))
    except ValueError as err:
        raise AddrFieldParseError(err, context, line_num) from err


def _parse_u32(text: str, context: str, line_num: Optional[int]) -> int:
    try:
        # int() alone would also accept "-", whitespace and underscores.
        digits = text[1:] if text.startswith("+") else text
        if not digits.isascii() or not digits.isdigit():
            raise ValueError("invalid digit found in string %r" % text)
        val = int(digits)
        if val > 0xffffffff:
            raise ValueError("number too large to fit in 32 bits: %s" % text)
    except ValueError as err:
        raise IntFieldParseError(err, context, line_num) from err
    return val


def _parse_row(row: List[str], line_num: Optional[int]) -> Optional[List[ASNRecord]]:
    """Turn one TSV row into records; None for unrouted space."""
    if len(row) != 5:
        raise TsvFormatError(ValueError("expected 5 fields, found %i" % len(row)), "reading row", line_num)
    owner = row[4]
    if owner in UNROUTED_OWNERS:
        return None
    range_start = _parse_addr(row[0], "parsing range_start IP", line_num)
    range_end = _parse_addr(row[1], "parsing range_end IP", line_num)
    as_number = _parse_u32(row[2], "parsing as_number", line_num)
    country = row[3]
    return [ASNRecord(ip, prefix_len, as_number, country, owner)
            for ip, prefix_len in range_to_subnets(range_start, range_end)]


def read_asn_tsv(data: Iterable[str],
                 on_error: Optional[Callable[[TsvParseError], None]] = None) -> Iterator[ASNRecord]:
    """
    Read ASN records from ip2asn-v4.tsv formatted text.

    Arguments:
        data:     A text stream (or any iterable of lines) with five
                  tab-separated columns per row and no header: range_start,
                  range_end, as_number, country, owner.
        on_error: Called with the TsvParseError for every row that cannot be
                  parsed, after which reading continues with the next row.
                  If None, the first such error is raised.

    Rows whose owner is "Not routed" or "None" are skipped. Every other row
    yields one ASNRecord per network its range decomposes into, in source
    order.
    """
    reader = csv.reader(data, delimiter="\t")
    while True:
        try:
            row = next(reader)
        except StopIteration:
            return
        except csv.Error as err:
            error: TsvParseError = TsvFormatError(err, "reading row", reader.line_num)
            if on_error is None:
                raise error from err
            on_error(error)
            continue
        if not row:
            # Blank line.
            continue
        try:
            records = _parse_row(row, reader.line_num)
        except TsvParseError as err:
            if on_error is None:
                raise
            on_error(err)
            continue
        if records is not None:
            yield from records


def _read(stream: BinaryIO, size: int, context: str) -> Optional[bytes]:
    """Read exactly size bytes, or return None if the data ends first."""
    chunks = []
    while size:
        try:
            chunk = stream.read(min(size, 1 << 16))
        except OSError as err:
            raise DbFileError(err, context) from err
        if not chunk:
            return None
        chunks.append(chunk)
        size -= len(chunk)
    return b"".join(chunks)


def _read_exact(stream: BinaryIO, size: int, context: str) -> bytes:
    data = _read(stream, size, context)
    if data is None:
        err = EOFError("failed to fill whole buffer")
        raise DbFileError(err, context) from err
    return data


def _read_payload(stream: BinaryIO, size: int) -> bytes:
    """Read part of the record payload, where running out of data means corruption."""
    data = _read(stream, size, "reading records")
    if data is None:
        err = EOFError("unexpected end of record data")
        raise DbDecodeError(err, "decoding records") from err
    return data


def _read_str(stream: BinaryIO) -> str:
    size, = _U64.unpack(_read_payload(stream, _U64.size))
    try:
        return _read_payload(stream, size).decode("utf-8")
    except UnicodeDecodeError as err:
        raise DbDecodeError(err, "decoding records") from err


def _write_str(parts: List[bytes], val: str) -> None:
    encoded = val.encode("utf-8")
    parts.append(_U64.pack(len(encoded)))
    parts.append(encoded)


class ASNDB:
    """
    A loaded ASN database, optimized for looking up the AS by IP address.

    Records are kept in a list sorted by network base address; lookups are a
    binary search for the closest network starting at or before the address.
    An ASNDB is not modified after construction, so it can be shared between
    threads for lookups without locking.

    Use ASNDB.from_tsv() to build it from the IPtoASN ip2asn-v4.tsv file,
    store() to write the binary form and load() to read it back.
    """

    def __init__(self, records: List[ASNRecord]) -> None:
        """Construct an ASNDB object from records sorted by base address. Internal use only."""
        self._records = records
        self._ips = [record.ip for record in records]

    @staticmethod
    def from_records(records: Iterable[ASNRecord]) -> ASNDB:
        """
        Construct an ASNDB object from records in source order.

        Records are sorted by base address. When several records share a base
        address, the one that came last in the input is kept.
        """
        by_ip = {}
        for record in records:
            by_ip[record.sort_key()] = record
        return ASNDB(sorted(by_ip.values(), key=ASNRecord.sort_key))

    @staticmethod
    def from_tsv(data: Iterable[str],
                 on_error: Optional[Callable[[TsvParseError], None]] = None) -> ASNDB:
        """
        Build a database from ip2asn-v4.tsv formatted text.

        By default the first bad row aborts the build with a DbTsvError. If
        on_error is given, bad rows are passed to it and skipped (see
        read_asn_tsv).
        """
        try:
            db = ASNDB.from_records(read_asn_tsv(data, on_error))
        except TsvParseError as err:
            raise DbTsvError(err) from err
        log.info("Built ASN database from TSV data: %i records", len(db))
        return db

    @staticmethod
    def load(db_data: BinaryIO) -> ASNDB:
        """Load a database previously written by store(); much faster than parsing TSV data."""
        tag = _read_exact(db_data, len(DATABASE_DATA_TAG), "reading database tag")
        if tag != DATABASE_DATA_TAG:
            raise DbBadTagError(tag)

        version = _read_exact(db_data, len(DATABASE_DATA_VERSION), "reading database version")
        if version != DATABASE_DATA_VERSION:
            raise DbUnsupportedVersionError(version)

        count, = _U64.unpack(_read_exact(db_data, _U64.size, "reading records"))
        records: List[ASNRecord] = []
        last_ip = -1
        for _ in range(count):
            ip, prefix_len, as_number = _RECORD_HEAD.unpack(_read_payload(db_data, _RECORD_HEAD.size))
            country = _read_str(db_data)
            owner = _read_str(db_data)
            if prefix_len > 32 or ip & ((1 << (32 - prefix_len)) - 1):
                err = ValueError("invalid network %s/%i" % (ipaddress.IPv4Address(ip), prefix_len))
                raise DbDecodeError(err, "decoding records") from err
            if ip < last_ip:
                err = ValueError("records not sorted by network address")
                raise DbDecodeError(err, "decoding records") from err
            last_ip = ip
            records.append(ASNRecord(ip, prefix_len, as_number, country, owner))

        log.info("Loaded ASN database: %i records", len(records))
        return ASNDB(records)

    @staticmethod
    def from_bytes(data: bytes) -> ASNDB:
        """Decode a database from the binary encoding produced by to_bytes()."""
        return ASNDB.load(io.BytesIO(data))

    def store(self, db_data: BinaryIO) -> None:
        """
        Write the database in binary form.

        The format is the 4-byte tag "ASDB", the 4-byte version "bin1", the
        record count as a little-endian u64, then for every record: ip (u32),
        prefix_len (u8), as_number (u32), and country and owner as a u64 byte
        length followed by UTF-8 text. All integers are little-endian.
        """
        try:
            db_data.write(DATABASE_DATA_TAG)
        except OSError as err:
            raise DbFileError(err, "writing database tag") from err
        try:
            db_data.write(DATABASE_DATA_VERSION)
        except OSError as err:
            raise DbFileError(err, "writing database version") from err

        parts = [_U64.pack(len(self._records))]
        for record in self._records:
            parts.append(_RECORD_HEAD.pack(record.ip, record.prefix_len, record.as_number))
            _write_str(parts, record.country)
            _write_str(parts, record.owner)
        try:
            db_data.write(b"".join(parts))
        except OSError as err:
            raise DbFileError(err, "writing records") from err
        log.info("Stored ASN database: %i records", len(self._records))

    def to_bytes(self) -> bytes:
        """Encode this database in the binary format written by store()."""
        out = io.BytesIO()
        self.store(out)
        return out.getvalue()

    def lookup(self, ip: AddressLike) -> Optional[ASNRecord]:
        """
        Find the record for the network containing ip, or None.

        ip may be an ipaddress.IPv4Address, a dotted-quad string or an
        integer; anything else that ipaddress rejects raises ValueError.
        """
        num = int(ipaddress.IPv4Address(ip))
        index = bisect_left(self._ips, num)
        if index < len(self._ips) and self._ips[index] == num:
            # The address is a network base address.
            return self._records[index]
        if index == 0:
            return None
        record = self._records[index - 1]
        if record.contains(num):
            return record
        return None

    @property
    def records(self) -> List[ASNRecord]:
        """A copy of the records, sorted by base address."""
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ASNRecord]:
        return iter(self._records)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ASNDB):
            return self._records == other._records
        return False

    __hash__ = None  # type: ignore

    def __repr__(self) -> str:
        return "asndb.ASNDB[total records: %i]" % len(self._records)


TEST_TSV = (
    "1.0.0.0\t1.0.0.255\t13335\tUS\tCLOUDFLARENET - Cloudflare, Inc.\n"
    "1.0.1.0\t1.0.3.255\t0\tNone\tNot routed\n"
    "1.1.1.0\t1.1.1.255\t13335\tUS\tCLOUDFLARENET - Cloudflare, Inc.\n"
    "8.8.4.0\t8.8.4.255\t15169\tUS\tGOOGLE - Google LLC\n"
    "8.8.8.0\t8.8.8.255\t15169\tUS\tGOOGLE - Google LLC\n"
    "8.8.9.0\t8.8.9.255\t0\tNone\tNone\n"
    "31.13.64.0\t31.13.127.255\t32934\tUS\tFACEBOOK - Facebook, Inc.\n"
    "41.0.0.0\t41.0.2.127\t29975\tZA\tVODACOM-\n"
)


def _random_range() -> Tuple[int, int]:
    """Pick a random range, biased towards edge cases."""
    kind = random.randrange(4)
    if kind == 0:
        start = random.randrange(1 << 32)
        return start, random.randrange(start, min(start + (1 << random.randrange(33)), 1 << 32))
    if kind == 1:
        bits = random.randrange(33)
        start = random.randrange(1 << (32 - bits)) << bits if bits < 32 else 0
        return start, min(start + (1 << bits) - 1, 0xffffffff)
    if kind == 2:
        return 0, random.randrange(1 << 32)
    start = random.randrange(1 << 32)
    return start, 0xffffffff


class TestRangeToSubnets(unittest.TestCase):
    """Unit tests for range_to_subnets."""

    def test_aligned_range(self) -> None:
        self.assertEqual(list(range_to_subnets(0x01010100, 0x010101ff)), [(0x01010100, 24)])

    def test_single_address(self) -> None:
        self.assertEqual(list(range_to_subnets(0x08080808, 0x08080808)), [(0x08080808, 32)])

    def test_unaligned_range(self) -> None:
        # 41.0.0.0 - 41.0.2.127
        nets = [(str(ipaddress.IPv4Address(ip)), plen) for ip, plen in range_to_subnets(0x29000000, 0x2900027f)]
        self.assertEqual(nets, [("41.0.0.0", 23), ("41.0.2.0", 25)])

    def test_prefix_floor(self) -> None:
        nets = list(range_to_subnets(0, 0xffffffff))
        self.assertEqual(len(nets), 256)
        self.assertEqual(nets[0], (0, 8))
        self.assertEqual(nets[-1], (0xff000000, 8))
        nets = list(range_to_subnets(0x0a000000, 0x0bffffff, min_prefix_len=0))
        self.assertEqual(nets, [(0x0a000000, 7)])

    def test_floor_splits_large_blocks(self) -> None:
        # 9.255.255.0 - 12.0.0.255 summarizes to a /7 in the middle, which the floor splits.
        nets = [(str(ipaddress.IPv4Address(ip)), plen) for ip, plen in range_to_subnets(0x09ffff00, 0x0c0000ff)]
        self.assertEqual(nets, [("9.255.255.0", 24), ("10.0.0.0", 8), ("11.0.0.0", 8), ("12.0.0.0", 24)])

    def test_empty_range(self) -> None:
        self.assertEqual(list(range_to_subnets(5, 4)), [])

    def test_restartable(self) -> None:
        self.assertEqual(list(range_to_subnets(3, 1000)), list(range_to_subnets(3, 1000)))

    def test_random_coverage(self) -> None:
        """Decompositions are contiguous, aligned, exact and respect the /8 floor."""
        for _ in range(2000):
            start, end = _random_range()
            pos = start
            for ip, prefix_len in range_to_subnets(start, end):
                self.assertEqual(ip, pos)
                self.assertGreaterEqual(prefix_len, MIN_PREFIX_LEN)
                self.assertLessEqual(prefix_len, 32)
                self.assertEqual(ip & ((1 << (32 - prefix_len)) - 1), 0)
                pos = ip + (1 << (32 - prefix_len))
            self.assertEqual(pos, end + 1)


class TestASNRecord(unittest.TestCase):
    """Unit tests for ASNRecord."""

    def test_network(self) -> None:
        record = ASNRecord(0x01010100, 24, 13335, "US", "CLOUDFLARENET - Cloudflare, Inc.")
        self.assertEqual(record.network(), ipaddress.IPv4Network("1.1.1.0/24"))
        self.assertEqual(str(record), "1.1.1.0/24 AS13335 US CLOUDFLARENET - Cloudflare, Inc.")
        self.assertTrue(record.contains(0x010101ff))
        self.assertFalse(record.contains(0x01010200))

    def test_misaligned_network(self) -> None:
        record = ASNRecord(0x01010101, 24, 13335, "US", "CLOUDFLARENET")
        with self.assertRaises(AssertionError):
            record.network()

    def test_sort_ignores_text(self) -> None:
        a = ASNRecord(0x02000000, 8, 1, "ZZ", "a")
        b = ASNRecord(0x01000000, 8, 2, "AA", "b")
        self.assertEqual(sorted([a, b], key=ASNRecord.sort_key), [b, a])


class TestASNDB(unittest.TestCase):
    """Unit tests for ASNDB."""

    def setUp(self) -> None:
        self.db = ASNDB.from_tsv(io.StringIO(TEST_TSV))

    def test_lookup(self) -> None:
        record = self.db.lookup("1.1.1.1")
        assert record is not None
        self.assertEqual(record.as_number, 13335)
        self.assertEqual(record.country, "US")
        self.assertIn("CLOUDFLARENET", record.owner)
        self.assertEqual(record.network(), ipaddress.IPv4Network("1.1.1.0/24"))
        self.assertIsNone(self.db.lookup("1.1.0.255"))
        self.assertIsNone(self.db.lookup("1.1.2.0"))
        self.assertIn("GOOGLE", self.db.lookup(ipaddress.IPv4Address("8.8.8.8")).owner)
        self.assertIn("GOOGLE", self.db.lookup("8.8.4.4").owner)
        self.assertEqual(self.db.lookup("31.13.100.1").as_number, 32934)
        self.assertEqual(self.db.lookup(0x2900027f).as_number, 29975)
        self.assertIsNone(self.db.lookup(0x29000280))

    def test_lookup_boundaries(self) -> None:
        first = self.db.records[0]
        self.assertIs(self.db.lookup(first.ip), first)
        self.assertIsNone(self.db.lookup(first.ip - 1))
        self.assertIsNone(self.db.lookup("0.0.0.0"))
        self.assertIsNone(self.db.lookup("255.255.255.255"))
        last = self.db.records[-1]
        self.assertIs(self.db.lookup(last.last_ip()), last)
        self.assertIsNone(self.db.lookup(last.last_ip() + 1))

    def test_lookup_idempotent(self) -> None:
        results = [self.db.lookup("8.8.8.8") for _ in range(10)]
        self.assertTrue(all(result is results[0] for result in results))

    def test_lookup_invalid_address(self) -> None:
        with self.assertRaises(ValueError):
            self.db.lookup("1.1.1")
        with self.assertRaises(ValueError):
            self.db.lookup("::1")

    def test_empty(self) -> None:
        db = ASNDB.from_tsv(io.StringIO(""))
        self.assertEqual(len(db), 0)
        self.assertIsNone(db.lookup("1.1.1.1"))
        self.assertEqual(ASNDB.from_bytes(db.to_bytes()), db)

    def test_unrouted_filtered(self) -> None:
        self.assertIsNone(self.db.lookup("1.0.1.1"))
        self.assertIsNone(self.db.lookup("8.8.9.9"))
        self.assertFalse(any(record.owner in UNROUTED_OWNERS for record in self.db))
        db = ASNDB.from_tsv(io.StringIO("1.0.1.0\t1.0.3.255\t0\tNone\tNot routed\n"
                                        "2.0.0.0\t2.0.0.255\tbogus\tNone\tNone\n"))
        self.assertEqual(len(db), 0)

    def test_sorted(self) -> None:
        lines = TEST_TSV.splitlines(keepends=True)
        random.shuffle(lines)
        db = ASNDB.from_tsv(io.StringIO("".join(lines)))
        ips = [record.ip for record in db]
        self.assertEqual(ips, sorted(ips))
        self.assertEqual(db, self.db)

    def test_last_row_wins(self) -> None:
        db = ASNDB.from_tsv(io.StringIO("9.9.9.0\t9.9.9.255\t1\tAA\tfirst\n"
                                        "9.9.8.0\t9.9.8.255\t3\tCC\tother\n"
                                        "9.9.9.0\t9.9.9.127\t2\tBB\tsecond\n"))
        self.assertEqual(len(db), 2)
        self.assertEqual(db.lookup("9.9.9.1").owner, "second")
        # The surviving /25 no longer covers the upper half of the first /24.
        self.assertIsNone(db.lookup("9.9.9.200"))

    def test_overlap_prefers_nearest(self) -> None:
        db = ASNDB.from_tsv(io.StringIO("10.0.0.0\t10.0.255.255\t1\tAA\touter\n"
                                        "10.0.1.0\t10.0.1.255\t2\tBB\tinner\n"))
        self.assertEqual(db.lookup("10.0.0.5").owner, "outer")
        self.assertEqual(db.lookup("10.0.1.5").owner, "inner")
        # Nearest preceding base is the inner /24, which does not contain it.
        self.assertIsNone(db.lookup("10.0.2.5"))

    def test_repr(self) -> None:
        self.assertEqual(repr(self.db), "asndb.ASNDB[total records: %i]" % len(self.db))


class TestReadTsv(unittest.TestCase):
    """Unit tests for TSV ingestion and its errors."""

    def test_records(self) -> None:
        records = list(read_asn_tsv(io.StringIO("41.0.0.0\t41.0.2.127\t29975\tZA\tVODACOM-\n")))
        self.assertEqual(records, [ASNRecord(0x29000000, 23, 29975, "ZA", "VODACOM-"),
                                   ASNRecord(0x29000200, 25, 29975, "ZA", "VODACOM-")])

    def test_bad_start_address(self) -> None:
        with self.assertRaises(AddrFieldParseError) as ctx:
            list(read_asn_tsv(io.StringIO(TEST_TSV + "1.1.1\t1.1.1.255\t1\tUS\tX\n")))
        self.assertEqual(ctx.exception.context, "parsing range_start IP")
        self.assertEqual(ctx.exception.line_num, 9)
        self.assertIsInstance(ctx.exception.error, ValueError)
        self.assertIs(ctx.exception.__cause__, ctx.exception.error)
        self.assertIn("error parsing IP address while parsing range_start IP (line 9)", str(ctx.exception))

    def test_bad_end_address(self) -> None:
        with self.assertRaises(AddrFieldParseError) as ctx:
            list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.256\t1\tUS\tX\n")))
        self.assertEqual(ctx.exception.context, "parsing range_end IP")

    def test_bad_as_number(self) -> None:
        for asn in ("AS1", "-1", "4294967296", "", " 1", "1_0", "+", "++1", "+-1", "+ 1"):
            with self.assertRaises(IntFieldParseError) as ctx:
                list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.255\t%s\tUS\tX\n" % asn)))
            self.assertEqual(ctx.exception.context, "parsing as_number")
        records = list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.255\t4294967295\tUS\tX\n")))
        self.assertEqual(records[0].as_number, 0xffffffff)

    def test_plus_sign_as_number(self) -> None:
        records = list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.255\t+13335\tUS\tX\n")))
        self.assertEqual(records[0].as_number, 13335)

    def test_blank_lines(self) -> None:
        data = ("1.1.1.0\t1.1.1.255\t13335\tUS\tCLOUDFLARENET\n"
                "\n"
                "8.8.8.0\t8.8.8.255\t15169\tUS\tGOOGLE\n"
                "\n")
        db = ASNDB.from_tsv(io.StringIO(data))
        self.assertEqual(len(db), 2)
        self.assertEqual(db.lookup("1.1.1.1").as_number, 13335)
        self.assertEqual(db.lookup("8.8.8.8").as_number, 15169)
        errors: List[TsvParseError] = []
        self.assertEqual(len(list(read_asn_tsv(io.StringIO(data), on_error=errors.append))), 2)
        self.assertEqual(errors, [])

    def test_bad_row(self) -> None:
        with self.assertRaises(TsvFormatError):
            list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.255\t13335\tUS\n")))
        with self.assertRaises(TsvFormatError):
            list(read_asn_tsv(io.StringIO("1.1.1.0\t1.1.1.255\t13335\tUS\tX\textra\n")))

    def test_fail_fast(self) -> None:
        with self.assertRaises(DbTsvError) as ctx:
            ASNDB.from_tsv(io.StringIO(TEST_TSV + "bogus\t1.1.1.255\t1\tUS\tX\n"))
        self.assertIsInstance(ctx.exception.error, AddrFieldParseError)
        self.assertIsInstance(ctx.exception, DbError)

    def test_recovery(self) -> None:
        errors: List[TsvParseError] = []
        data = ("bogus\t1.1.1.255\t1\tUS\tX\n"
                "1.1.1.0\t1.1.1.255\t13335\tUS\tCLOUDFLARENET\n"
                "8.8.8.0\t8.8.8.255\tx\tUS\tGOOGLE\n"
                "short\n"
                "8.8.4.0\t8.8.4.255\t15169\tUS\tGOOGLE\n")
        db = ASNDB.from_tsv(io.StringIO(data), on_error=errors.append)
        self.assertEqual([type(err) for err in errors], [AddrFieldParseError, IntFieldParseError, TsvFormatError])
        self.assertEqual([err.line_num for err in errors], [1, 3, 4])
        self.assertEqual(len(db), 2)
        self.assertEqual(db.lookup("1.1.1.1").as_number, 13335)
        self.assertEqual(db.lookup("8.8.4.4").as_number, 15169)
        self.assertIsNone(db.lookup("8.8.8.8"))


class TestCodec(unittest.TestCase):
    """Unit tests for the binary database format."""

    def setUp(self) -> None:
        self.db = ASNDB.from_tsv(io.StringIO(TEST_TSV))

    def test_roundtrip(self) -> None:
        db = ASNDB.from_bytes(self.db.to_bytes())
        self.assertEqual(db, self.db)
        self.assertEqual(db.records, self.db.records)
        self.assertIn("GOOGLE", db.lookup("8.8.8.8").owner)

    def test_random_roundtrip(self) -> None:
        for _ in range(50):
            records = []
            for _ in range(random.randrange(20)):
                start, end = _random_range()
                country = random.choice(["US", "", "None", "PL"])
                owner = random.choice(["x", "", "Zażółć gęślą jaźń", "a\tb"])
                records.extend(ASNRecord(ip, prefix_len, random.randrange(1 << 32), country, owner)
                               for ip, prefix_len in range_to_subnets(start, end))
            db = ASNDB.from_records(records)
            self.assertEqual(ASNDB.from_bytes(db.to_bytes()).records, db.records)

    def test_store_file(self) -> None:
        out = io.BytesIO()
        self.db.store(out)
        out.seek(0)
        self.assertEqual(ASNDB.load(out), self.db)

    def test_layout(self) -> None:
        db = ASNDB([ASNRecord(0x01010100, 24, 13335, "US", "CF")])
        self.assertEqual(db.to_bytes(),
                         b"ASDB" b"bin1" +
                         bytes([1, 0, 0, 0, 0, 0, 0, 0]) +
                         bytes([0x00, 0x01, 0x01, 0x01]) + bytes([24]) + bytes([0x17, 0x34, 0, 0]) +
                         bytes([2, 0, 0, 0, 0, 0, 0, 0]) + b"US" +
                         bytes([2, 0, 0, 0, 0, 0, 0, 0]) + b"CF")

    def test_bad_tag(self) -> None:
        data = self.db.to_bytes()
        with self.assertRaises(DbBadTagError) as ctx:
            ASNDB.from_bytes(b"ASDC" + data[4:])
        self.assertEqual(ctx.exception.tag, b"ASDC")
        self.assertIsInstance(ctx.exception, DbDataError)
        self.assertEqual(str(ctx.exception), "error while reading database: bad database data tag")
        # The tag is checked before anything else is read.
        with self.assertRaises(DbBadTagError):
            ASNDB.from_bytes(b"XXXX")

    def test_bad_version(self) -> None:
        data = self.db.to_bytes()
        with self.assertRaises(DbUnsupportedVersionError) as ctx:
            ASNDB.from_bytes(data[:4] + b"bin2" + data[8:])
        self.assertEqual(ctx.exception.version, b"bin2")
        with self.assertRaises(DbUnsupportedVersionError):
            ASNDB.from_bytes(b"ASDBbin0")

    def test_truncated_header(self) -> None:
        for data, context in [(b"", "reading database tag"),
                              (b"AS", "reading database tag"),
                              (b"ASDBbi", "reading database version"),
                              (b"ASDBbin1\x01", "reading records")]:
            with self.assertRaises(DbFileError) as ctx:
                ASNDB.from_bytes(data)
            self.assertEqual(ctx.exception.context, context)

    def test_truncated_records(self) -> None:
        data = self.db.to_bytes()
        for cut in (1, 5, 20, len(data) - 17):
            with self.assertRaises(DbDecodeError) as ctx:
                ASNDB.from_bytes(data[:-cut])
            self.assertEqual(ctx.exception.context, "decoding records")

    def test_invalid_payload(self) -> None:
        header = DATABASE_DATA_TAG + DATABASE_DATA_VERSION + _U64.pack(1)
        bad_utf8 = header + _RECORD_HEAD.pack(0x01010100, 24, 1) + _U64.pack(1) + b"\xff" + _U64.pack(0)
        bad_prefix = header + _RECORD_HEAD.pack(0x01010100, 33, 1) + _U64.pack(0) + _U64.pack(0)
        misaligned = header + _RECORD_HEAD.pack(0x01010101, 24, 1) + _U64.pack(0) + _U64.pack(0)
        for data in (bad_utf8, bad_prefix, misaligned):
            with self.assertRaises(DbDecodeError):
                ASNDB.from_bytes(data)

    def test_unsorted_payload(self) -> None:
        db = ASNDB([ASNRecord(0x02000000, 8, 1, "", ""), ASNRecord(0x01000000, 8, 1, "", "")])
        with self.assertRaises(DbDecodeError):
            ASNDB.from_bytes(db.to_bytes())

    def test_write_error(self) -> None:
        class FailingWriter(io.RawIOBase):
            def __init__(self, fail_at: int) -> None:
                self.calls = 0
                self.fail_at = fail_at

            def writable(self) -> bool:
                return True

            def write(self, b) -> int:
                self.calls += 1
                if self.calls == self.fail_at:
                    raise OSError("disk full")
                return len(b)

        for fail_at, context in [(1, "writing database tag"),
                                 (2, "writing database version"),
                                 (3, "writing records")]:
            with self.assertRaises(DbFileError) as ctx:
                self.db.store(FailingWriter(fail_at))
            self.assertEqual(ctx.exception.context, context)
            self.assertIsInstance(ctx.exception.error, OSError)


if __name__ == '__main__':
    unittest.main()
