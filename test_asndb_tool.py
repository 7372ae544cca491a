"""Tests for asndb-tool.py."""

import contextlib
import gzip
import importlib.util
import io
import os
import tempfile
import unittest

import asndb

_spec = importlib.util.spec_from_file_location(
    "asndb_tool", os.path.join(os.path.dirname(os.path.abspath(__file__)), "asndb-tool.py"))
asndb_tool = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(asndb_tool)


class TestASNDBTool(unittest.TestCase):
    """End-to-end tests of the asndb-tool subcommands."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name
        self.tsv = self.path("ip2asn-v4.tsv")
        with open(self.tsv, "w", encoding="utf-8", newline="") as f:
            f.write(asndb.TEST_TSV)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def path(self, name: str) -> str:
        return os.path.join(self.tmpdir, name)

    def run_tool(self, *argv: str) -> str:
        # The parser defaults refer to sys.stdout.buffer, so capture through a binary buffer.
        out = io.TextIOWrapper(io.BytesIO(), encoding="utf-8", newline="")
        with contextlib.redirect_stdout(out):
            asndb_tool.main(list(argv))
        out.flush()
        return out.buffer.getvalue().decode("utf-8")

    def test_encode(self) -> None:
        dat = self.path("asn.dat")
        self.run_tool("encode", self.tsv, dat)
        with open(dat, "rb") as f:
            db = asndb.ASNDB.load(f)
        with open(self.tsv, encoding="utf-8", newline="") as f:
            self.assertEqual(db, asndb.ASNDB.from_tsv(f))

    def test_encode_gzip(self) -> None:
        gz = self.path("ip2asn-v4.tsv.gz")
        with gzip.open(gz, "wt", encoding="utf-8") as f:
            f.write(asndb.TEST_TSV)
        dat = self.path("asn.dat")
        self.run_tool("encode", gz, dat)
        with open(dat, "rb") as f:
            self.assertEqual(asndb.ASNDB.load(f).lookup("1.1.1.1").as_number, 13335)

    def test_encode_bad_row(self) -> None:
        with open(self.tsv, "a", encoding="utf-8") as f:
            f.write("1.2.3\t1.2.3.255\t1\tUS\tX\n")
        with self.assertRaises(SystemExit) as ctx:
            self.run_tool("encode", self.tsv, self.path("asn.dat"))
        self.assertIn("range_start", str(ctx.exception.code))

        dat = self.path("asn-kept.dat")
        with self.assertLogs("asndb-tool", level="WARNING") as logs:
            self.run_tool("encode", "--keep-going", self.tsv, dat)
        self.assertEqual(len(logs.records), 1)
        with open(dat, "rb") as f:
            self.assertEqual(asndb.ASNDB.load(f).lookup("8.8.8.8").as_number, 15169)

    def test_lookup(self) -> None:
        dat = self.path("asn.dat")
        self.run_tool("encode", self.tsv, dat)
        for infile in (self.tsv, dat):
            out = self.run_tool("lookup", infile, "1.1.1.1", "1.1.2.0")
            self.assertEqual(out.splitlines(), [
                "1.1.1.1\t1.1.1.0/24\tAS13335\tUS\tCLOUDFLARENET - Cloudflare, Inc.",
                "1.1.2.0 not found",
            ])
        with self.assertRaises(SystemExit):
            self.run_tool("lookup", dat, "not-an-ip")

    def test_decode(self) -> None:
        dat = self.path("asn.dat")
        txt = self.path("asn.txt")
        self.run_tool("encode", self.tsv, dat)
        self.run_tool("decode", dat, txt)
        with open(txt, encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(lines[0], "1.0.0.0/24\tAS13335\tUS\tCLOUDFLARENET - Cloudflare, Inc.")
        self.assertEqual(lines[-1], "41.0.2.0/25\tAS29975\tZA\tVODACOM-")
        self.assertEqual(len(lines), 7)

    def test_bad_binary(self) -> None:
        dat = self.path("asn.dat")
        with open(dat, "wb") as f:
            f.write(b"ASDBbin9")
        with self.assertRaises(SystemExit) as ctx:
            self.run_tool("lookup", dat, "1.1.1.1")
        self.assertIn("unsupported database version", str(ctx.exception.code))

    def test_not_text(self) -> None:
        bad = self.path("garbage")
        with open(bad, "wb") as f:
            f.write(b"\xff\xfe\x00")
        with self.assertRaises(SystemExit):
            self.run_tool("decode", bad, self.path("out.txt"))


if __name__ == '__main__':
    unittest.main()
