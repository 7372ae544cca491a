# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

import argparse
import gzip
import io
import logging
import os
import shutil
import sys
import urllib.request

import asndb

log = logging.getLogger("asndb-tool")

GZIP_MAGIC = b"\x1f\x8b"

def load_file(input_file, keep_going=False):
    try:
        contents = input_file.read()
    except OSError as err:
        sys.exit("Input file '%s' cannot be read: %s." % (input_file.name, err.strerror))
    if contents.startswith(asndb.DATABASE_DATA_TAG):
        try:
            return asndb.ASNDB.from_bytes(contents)
        except asndb.DbError as err:
            sys.exit("Input file '%s' is not a valid binary database: %s." % (input_file.name, err))
    if contents.startswith(GZIP_MAGIC):
        try:
            contents = gzip.decompress(contents)
        except (OSError, EOFError) as err:
            sys.exit("Input file '%s' cannot be decompressed: %s." % (input_file.name, err))
    try:
        txt_contents = str(contents, encoding="utf-8")
    except UnicodeError:
        sys.exit("Input file '%s' is neither a binary database nor valid UTF-8 TSV data." % input_file.name)

    def skip_row(err):
        log.warning("%s: skipping row: %s", input_file.name, err)

    try:
        return asndb.ASNDB.from_tsv(io.StringIO(txt_contents, newline=""),
                                    on_error=skip_row if keep_going else None)
    except asndb.DbError as err:
        sys.exit("Input file '%s' is not valid TSV data: %s." % (input_file.name, err))

def save_binary(output_file, db):
    try:
        db.store(output_file)
        output_file.close()
    except asndb.DbFileError as err:
        sys.exit("Output file '%s' cannot be written to: %s." % (output_file.name, err.error))
    except OSError as err:
        sys.exit("Output file '%s' cannot be written to: %s." % (output_file.name, err.strerror))

def save_text(output_file, db):
    try:
        for record in db:
            print("%s\tAS%i\t%s\t%s" % (record.network(), record.as_number, record.country, record.owner),
                  file=output_file)
        output_file.close()
    except OSError as err:
        sys.exit("Output file '%s' cannot be written to: %s." % (output_file.name, err.strerror))

def lookup(db, ips):
    for ip in ips:
        try:
            record = db.lookup(ip)
        except ValueError:
            sys.exit("Invalid IPv4 address '%s'." % ip)
        if record is None:
            print("%s not found" % ip)
        else:
            print("%s\t%s\tAS%i\t%s\t%s" % (ip, record.network(), record.as_number, record.country, record.owner))

def download(url, fullpath):
    log.info("Downloading %s to %s", url, fullpath)
    if os.path.exists(fullpath + ".part"):
        os.remove(fullpath + ".part")
    try:
        with urllib.request.urlopen(url) as response, open(fullpath + ".part", "wb") as out_file:
            shutil.copyfileobj(response, out_file)
        os.rename(fullpath + ".part", fullpath)
    except OSError as err:
        sys.exit("Failed to download %s: %s" % (url, err))

def main(argv=None):
    parser = argparse.ArgumentParser(description="Tool for building, converting and querying IP to ASN databases.")
    parser.add_argument('-v', '--verbose', dest="verbose", default=False, action="store_true",
                        help="log progress information to stderr")
    subparsers = parser.add_subparsers(title="valid subcommands", dest="subcommand")

    parser_encode = subparsers.add_parser("encode", help="convert ip2asn TSV data to binary format")
    parser_encode.add_argument('-k', '--keep-going', dest="keep_going", default=False, action="store_true",
                               help="skip rows that cannot be parsed instead of failing")
    parser_encode.add_argument('infile', nargs='?', type=argparse.FileType('rb'), default=sys.stdin.buffer,
                               help="input ip2asn-v4.tsv file (plain or gzipped) or binary database; default is stdin")
    parser_encode.add_argument('outfile', nargs='?', type=argparse.FileType('wb'), default=sys.stdout.buffer,
                               help="output binary database file; default is stdout")

    parser_decode = subparsers.add_parser("decode", help="convert a database to text format")
    parser_decode.add_argument('infile', nargs='?', type=argparse.FileType('rb'), default=sys.stdin.buffer,
                               help="input database file (TSV or binary); default is stdin")
    parser_decode.add_argument('outfile', nargs='?', type=argparse.FileType('w'), default=sys.stdout,
                               help="output text file; default is stdout")

    parser_lookup = subparsers.add_parser("lookup", help="look up the AS announcing IPv4 addresses")
    parser_lookup.add_argument('infile', type=argparse.FileType('rb'),
                               help="database file (TSV or binary)")
    parser_lookup.add_argument('ips', nargs='+', metavar='ip',
                               help="IPv4 address to look up")

    parser_download = subparsers.add_parser("download", help="download the latest ip2asn-v4.tsv.gz from IPtoASN")
    parser_download.add_argument('--url', dest="url", default=asndb.IPTOASN_URL,
                                 help="source URL; default is %(default)s")
    parser_download.add_argument('outfile', nargs='?', default="ip2asn-v4.tsv.gz",
                                 help="output file path; default is %(default)s")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    if args.subcommand is None:
        parser.print_help()
    elif args.subcommand == "encode":
        db = load_file(args.infile, keep_going=args.keep_going)
        save_binary(args.outfile, db)
    elif args.subcommand == "decode":
        db = load_file(args.infile)
        save_text(args.outfile, db)
    elif args.subcommand == "lookup":
        db = load_file(args.infile)
        lookup(db, args.ips)
    elif args.subcommand == "download":
        download(args.url, args.outfile)
    else:
        parser.print_help()
        sys.exit("No command provided.")

if __name__ == '__main__':
    main()
