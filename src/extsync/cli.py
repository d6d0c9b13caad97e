from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .config import Config, config_path, load_config, save_config
from .errors import ExtsyncError
from .fetcher import HttpArchiveFetcher
from .gateway import SYNC_COMPONENTS, SyncGateway
from .mapping import MappingStore
from .models import BatchOutcome, ComponentDescriptor
from .paths import PathResolver
from .reconciler import Reconciler


class StderrChannel:
    """Host channel stand-in that prints error reports."""

    async def send(self, message: str, payload: dict[str, Any]) -> None:
        error = payload.get("error")
        if "uuids" in payload:
            print(f"{message}: {error}", file=sys.stderr)
            return
        print(f"{message}: {payload.get('identifier')} ({payload.get('uuid')}): {error}", file=sys.stderr)


def _print_table(rows: list[list[str]]) -> None:
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for r in rows:
        print("  ".join(r[i].ljust(widths[i]) for i in range(len(widths))).rstrip())


def _configure_logging(verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.getenv("EXTSYNC_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="extsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Synchronize installed extension components with a desired state.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              EXTSYNC_CONFIG_PATH, EXTSYNC_DATA_DIR, EXTSYNC_TIMEOUT_S, EXTSYNC_LOG_LEVEL
            """
        ),
    )
    p.add_argument("--data-dir", help="Directory holding the content and downloads roots")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--version", action="version", version=f"extsync {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--data-dir", dest="set_data_dir")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)

    sync = sub.add_parser("sync", help="Sync components described in a JSON file")
    sync.add_argument("file", help="JSON list of component items, or {\"componentsData\": [...]}; '-' for stdin")
    sync.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    lst = sub.add_parser("list", help="List installed components")
    lst.add_argument("--json", action="store_true", help="Print the mapping as JSON")

    rm = sub.add_parser("remove", aliases=["rm"], help="Uninstall components by uuid")
    rm.add_argument("uuids", nargs="+")
    rm.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    return p


def _effective_config(args: argparse.Namespace) -> Config:
    cfg = load_config()
    if args.data_dir:
        cfg = replace(cfg, data_dir=args.data_dir)
    if args.timeout_s is not None:
        cfg = replace(cfg, timeout_s=args.timeout_s)
    return cfg


def _make_resolver(cfg: Config) -> PathResolver:
    return PathResolver(content_root=cfg.content_root, downloads_root=cfg.downloads_root)


async def _run_sync(cfg: Config, payload: Any) -> BatchOutcome:
    resolver = _make_resolver(cfg)
    async with HttpArchiveFetcher(downloads_root=resolver.downloads_root, timeout_s=cfg.timeout_s) as fetcher:
        reconciler = Reconciler(resolver=resolver, store=MappingStore(resolver.mapping_path), fetcher=fetcher)
        gateway = SyncGateway(reconciler, StderrChannel())
        if isinstance(payload, list) and all(isinstance(d, ComponentDescriptor) for d in payload):
            return await gateway.sync(payload)
        return await gateway.handle_message(SYNC_COMPONENTS, payload)


def _report_outcome(outcome: BatchOutcome, *, as_json: bool) -> int:
    if as_json:
        payload = {
            "error": outcome.error,
            "results": [
                {"uuid": r.uuid, "identifier": r.identifier, "action": r.action, "error": r.error}
                for r in outcome.results
            ],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
    elif outcome.results:
        rows = [["UUID", "IDENTIFIER", "ACTION"]]
        rows.extend([r.uuid, r.identifier, r.action] for r in outcome.results)
        _print_table(rows)
    return 0 if outcome.ok else 1


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(config_path())
        return 0
    if args.subcmd == "show":
        cfg = _effective_config(args)
        payload = {
            "data_dir": str(cfg.data_path),
            "content_root": str(cfg.content_root),
            "downloads_root": str(cfg.downloads_root),
            "timeout_s": cfg.timeout_s,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    if args.subcmd == "set":
        cfg = load_config()
        if args.set_data_dir is not None:
            cfg = replace(cfg, data_dir=args.set_data_dir)
        if args.set_timeout_s is not None:
            cfg = replace(cfg, timeout_s=args.set_timeout_s)
        print(save_config(cfg))
        return 0
    raise AssertionError("unreachable")


def cmd_sync(args: argparse.Namespace) -> int:
    try:
        if args.file == "-":
            payload = json.load(sys.stdin)
        else:
            payload = json.loads(Path(args.file).expanduser().read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ExtsyncError(f"Could not load components from {args.file}: {e}") from e

    outcome = asyncio.run(_run_sync(_effective_config(args), payload))
    return _report_outcome(outcome, as_json=args.json)


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _effective_config(args)
    mapping = MappingStore(_make_resolver(cfg).mapping_path).read()
    if args.json:
        print(json.dumps({k: v.to_json() for k, v in mapping.items()}, indent=2, sort_keys=True))
        return 0
    if not mapping:
        print("No components installed.")
        return 0
    rows = [["UUID", "LOCATION", "VERSION"]]
    rows.extend([uuid, mapping[uuid].location, mapping[uuid].version] for uuid in sorted(mapping))
    _print_table(rows)
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    descriptors = [ComponentDescriptor(uuid=uuid, deleted=True) for uuid in args.uuids]
    outcome = asyncio.run(_run_sync(_effective_config(args), descriptors))
    return _report_outcome(outcome, as_json=args.json)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "list":
            return cmd_list(args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(args)
        raise AssertionError("unreachable")
    except ExtsyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
