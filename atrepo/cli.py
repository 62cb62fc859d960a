"""
atrepo CLI: AT URI tools and CAR export for a local block store.

Commands:
  atrepo uri parse   - Parse an AT URI (optionally relative to --base) and show its fields
  atrepo uri make    - Build an AT URI from authority, collection and record key
  atrepo put         - Store a file as a block in the local block store
  atrepo list        - List all blocks in the local block store
  atrepo export      - Export stored blocks as a CAR v1 archive under a root CID
  atrepo inspect     - Show the header and blocks of a CAR file
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any


def _get_store(args: argparse.Namespace):
    """Build a BlockStore from --store or config."""
    from atrepo.store import BlockStore

    config = args.config
    root = getattr(args, "store", None) or config["store_root"]
    return BlockStore(root, max_block_size=int(config["max_block_size"]))


def _parse_cid(text: str):
    from atrepo.cid import Cid, CidError

    try:
        return Cid.parse(text)
    except CidError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_uri_parse(args: argparse.Namespace) -> None:
    """Parse an AT URI and print its structured fields."""
    from atrepo.aturi import AtUri, AtUriError

    try:
        uri = AtUri.from_string(args.uri, base=args.base)
    except AtUriError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"  href:       {uri.href}")
    print(f"  host:       {uri.host}")
    print(f"  collection: {uri.collection}")
    print(f"  record_key: {uri.record_key}")
    if uri.search:
        print(f"  search:     {uri.search}")
    if uri.hash:
        print(f"  hash:       {uri.hash}")


def cmd_uri_make(args: argparse.Namespace) -> None:
    """Build an AT URI from its parts."""
    from atrepo.aturi import AtUri, AtUriError

    try:
        uri = AtUri.make(args.authority, args.collection, args.record_key)
    except AtUriError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(uri)


def cmd_put(args: argparse.Namespace) -> None:
    """Store a file as a block."""
    from atrepo.cid import DAG_CBOR, RAW
    from atrepo.store import BlockStoreError

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {args.path}", file=sys.stderr)
        sys.exit(1)

    store = _get_store(args)
    try:
        cid = store.put(path.read_bytes(), codec=RAW if args.raw else DAG_CBOR)
    except BlockStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Stored {args.path}")
    print(f"  cid: {cid}")


def cmd_list(args: argparse.Namespace) -> None:
    """List all blocks in the store."""
    store = _get_store(args)
    entries = store.list()

    if not entries:
        print("Block store is empty.")
        return

    print(f"Block store: {len(entries)} block(s)\n")
    for entry in entries:
        line = f"  {entry['cid']}  {entry.get('size', '?')} bytes"
        stored = entry.get("stored_at", "")
        if stored:
            line += f"  {stored[:19]}"
        print(line)


def cmd_export(args: argparse.Namespace) -> None:
    """Export stored blocks under a root CID as a CAR file."""
    from atrepo._car.spec import CarError
    from atrepo.export import write_car_file

    root = _parse_cid(args.root)
    cids = [_parse_cid(c) for c in args.cid] if args.cid else None

    output = args.output or f"{args.root[:16]}.car"
    if ".." in Path(output).parts:
        print("Error: Output path must not contain '..' (path traversal)", file=sys.stderr)
        sys.exit(1)

    store = _get_store(args)
    try:
        nbytes = write_car_file(root, store.entries(cids), output)
    except (CarError, OSError) as e:
        print(f"Error: Export failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Exported -> {output} ({nbytes} bytes)")


def cmd_inspect(args: argparse.Namespace) -> None:
    """Print a CAR file's roots and blocks."""
    from atrepo._car.reader import CarReader
    from atrepo._car.spec import CarDecodeError

    path = Path(args.path)
    if not path.is_file():
        print(f"Error: File not found: {args.path}", file=sys.stderr)
        sys.exit(1)

    try:
        car = CarReader.parse(path.read_bytes())
    except CarDecodeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"CAR v{car.version}")
    for root in car.roots:
        print(f"  root: {root}")
    print(f"  blocks: {len(car.blocks)}")
    for cid, data in car.blocks:
        print(f"    {cid}  {len(data)} bytes")

    if args.verify:
        bad = car.verify()
        if bad:
            for cid in bad:
                print(f"  MISMATCH: {cid}", file=sys.stderr)
            sys.exit(1)
        print("  verified: all block digests match")


def _setup_logging(config: dict[str, Any], verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(
        logging, str(config.get("log_level", "WARNING")).upper(), logging.WARNING,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="atrepo",
        description="AT URI tools and CAR export for a local block store.",
    )
    from atrepo import __version__
    parser.add_argument("--version", action="version", version=f"atrepo {__version__}")
    parser.add_argument("--store", help="Block store directory (or set ATREPO_STORE)")
    parser.add_argument("--config", dest="config_path", help="Path to config.toml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # uri (with subcommands)
    p_uri = sub.add_parser("uri", help="Parse or build AT URIs")
    uri_sub = p_uri.add_subparsers(dest="uri_command")

    p_up = uri_sub.add_parser("parse", help="Parse an AT URI and show its fields")
    p_up.add_argument("uri", help="AT URI, or a relative reference when --base is given")
    p_up.add_argument("--base", help="Base AT URI supplying the host")

    p_um = uri_sub.add_parser("make", help="Build an AT URI")
    p_um.add_argument("authority", help="DID or handle")
    p_um.add_argument("collection", nargs="?", help="Collection NSID")
    p_um.add_argument("record_key", nargs="?", help="Record key")

    # put
    p_put = sub.add_parser("put", help="Store a file as a block")
    p_put.add_argument("path", help="Path to block contents")
    p_put.add_argument("--raw", action="store_true", help="Use the raw codec instead of dag-cbor")

    # list
    sub.add_parser("list", help="List all blocks in the store")

    # export
    p_exp = sub.add_parser("export", help="Export blocks as a CAR v1 archive")
    p_exp.add_argument("root", help="Root CID for the archive header")
    p_exp.add_argument("-o", "--output", help="Output file path")
    p_exp.add_argument(
        "--cid", action="append",
        help="Export only this block (repeatable, kept in the given order)",
    )

    # inspect
    p_ins = sub.add_parser("inspect", help="Show the contents of a CAR file")
    p_ins.add_argument("path", help="Path to .car file")
    p_ins.add_argument("--verify", action="store_true", help="Check block digests")

    args = parser.parse_args(argv)

    from atrepo.config import load_config
    args.config = load_config(Path(args.config_path) if args.config_path else None)
    _setup_logging(args.config, args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.command == "uri":
        uri_commands = {
            "parse": cmd_uri_parse,
            "make": cmd_uri_make,
        }
        uc = getattr(args, "uri_command", None)
        if not uc:
            print("Usage: atrepo uri {parse|make}")
            sys.exit(0)
        uri_commands[uc](args)
        return

    commands = {
        "put": cmd_put,
        "list": cmd_list,
        "export": cmd_export,
        "inspect": cmd_inspect,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
