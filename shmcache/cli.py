"""Command-line interface for inspecting and maintaining a shared memory cache."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import TYPE_CHECKING, Any

import orjson

from shmcache.errors import SharedCacheError
from shmcache.settings import Settings
from shmcache.store import CacheStore

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_MISS = 1
EXIT_ERROR = 2


def _json_default(value: Any) -> Any:  # noqa: ANN401
    """Render values orjson cannot serialize natively."""
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return repr(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return repr(value)


def _emit(value: Any) -> None:  # noqa: ANN401
    sys.stdout.buffer.write(
        orjson.dumps(value, default=_json_default, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS) + b"\n",
    )
    sys.stdout.flush()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shmcache",
        description="Inspect and maintain a shared memory cache segment",
    )
    parser.add_argument("--segment-key", help="Explicit segment name (overrides SHMCACHE_SEGMENT_KEY)")
    parser.add_argument("--discriminator", help="Discriminator the segment name is derived from")
    parser.add_argument("--size", type=int, help="Requested segment size in bytes when creating it")
    parser.add_argument("--lock-dir", help="Directory holding the lock file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("info", help="Show segment capacity and usage")

    get_parser = subparsers.add_parser("get", help="Print a cached value as JSON")
    get_parser.add_argument("key")

    put_parser = subparsers.add_parser("put", help="Store a string value")
    put_parser.add_argument("key")
    put_parser.add_argument("value")
    put_parser.add_argument("--ttl", type=float, default=0, help="Seconds until the value expires (default: never)")

    for name, help_text in (("incr", "Increment an integer value"), ("decr", "Decrement an integer value")):
        counter_parser = subparsers.add_parser(name, help=help_text)
        counter_parser.add_argument("key")
        counter_parser.add_argument("--by", type=int, default=1, help="Amount to add or subtract (default: 1)")

    forget_parser = subparsers.add_parser("forget", help="Remove a key")
    forget_parser.add_argument("key")

    subparsers.add_parser("flush", help="Remove every key")
    subparsers.add_parser("destroy", help="Delete the segment; it is recreated empty on next use")
    return parser


def _run(store: CacheStore, args: argparse.Namespace) -> int:
    if args.command == "info":
        _emit(dataclasses.asdict(store.info()))
    elif args.command == "get":
        missing = object()
        value = store.get(args.key, missing)
        if value is missing:
            logger.info("Cache miss: %s", args.key)
            return EXIT_MISS
        _emit(value)
    elif args.command == "put":
        store.put(args.key, args.value, args.ttl)
    elif args.command == "incr":
        _emit(store.increment(args.key, args.by))
    elif args.command == "decr":
        _emit(store.decrement(args.key, args.by))
    elif args.command == "forget":
        if not store.forget(args.key):
            return EXIT_MISS
    elif args.command == "flush":
        store.flush()
    elif args.command == "destroy":
        store.destroy()
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the CLI.

    Returns:
    -------
        Exit code (0 for success, 1 for a miss, 2 for failure)

    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not args.command:
        parser.print_help()
        return EXIT_MISS

    try:
        settings = Settings(
            segment_key=args.segment_key,
            discriminator=args.discriminator,
            segment_size=args.size,
            lock_dir=args.lock_dir,
        )
        store = CacheStore.from_settings(settings)
    except ValueError as e:
        parser.error(str(e))

    with store:
        try:
            return _run(store, args)
        except (SharedCacheError, ValueError, TypeError) as e:
            logger.error("%s failed: %s", args.command, e)
            return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
