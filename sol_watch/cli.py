from __future__ import annotations

import argparse
import os
import sys
from dataclasses import fields
from typing import Any

import orjson

from .config import Config, ConfigError, _is_field_type, coerce_field
from .venues import build_venues
from .watch import EXIT_CONFIG, run_watch


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("config", "overrides for SOL_WATCH_* settings")
    for field in fields(Config):
        flag = "--" + field.name.replace("_", "-")
        if _is_field_type(field.type, bool, "bool"):
            toggle = group.add_mutually_exclusive_group()
            toggle.add_argument(flag, dest=field.name, action="store_true", default=None)
            toggle.add_argument(
                "--no-" + flag[2:], dest=field.name, action="store_false", default=None
            )
        else:
            group.add_argument(flag, dest=field.name, default=None, metavar="VALUE")


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    return {
        field.name: coerce_field(field.type, getattr(ns, field.name))
        for field in fields(Config)
        if getattr(ns, field.name, None) is not None
    }


def print_venues(config: Config) -> int:
    try:
        venues = build_venues(config)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    for venue in venues:
        sys.stdout.write(orjson.dumps(venue.to_dict()).decode("utf-8") + "\n")
    return 0


def main(argv: list[str] | None = None) -> int:
    shared = argparse.ArgumentParser(add_help=False)
    _add_config_args(shared)

    parser = argparse.ArgumentParser(prog="sol-watch")
    commands = parser.add_subparsers(dest="command", required=True)
    watch = commands.add_parser("watch", parents=[shared], help="stream swaps into NDJSON files")
    watch.add_argument("--duration-seconds", type=float, default=None)
    watch.add_argument("--run-id", default=None)
    commands.add_parser("venues", parents=[shared], help="print the resolved venue list")

    args = parser.parse_args(argv)
    try:
        config = Config.from_env_and_cli(_cli_overrides(args), dict(os.environ))
    except ValueError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    if args.command == "venues":
        return print_venues(config)
    return run_watch(config, args.run_id, duration_seconds=args.duration_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
