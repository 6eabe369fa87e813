#!/usr/bin/env python3
"""
Note Importer command line

Operator commands for the persisted import queue, plus ``run`` to process
files end to end and ``serve`` to start the HTTP API.
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys
from types import SimpleNamespace
from typing import Any, List, Optional

from dotenv import load_dotenv

from note_importer.config import Settings
from note_importer.core.exceptions import ConfigurationException, NoteImporterException
from note_importer.core.logging_config import get_logger, setup_logging
from note_importer.models.queue_item import FileStatus
from note_importer.pipeline import ImportPipeline

logger = get_logger(__name__)


def load_collaborators(target: Optional[str]) -> Any:
    """
    Resolve ``package.module:factory`` and call the factory.

    The returned object may expose ``extractor``, ``analyzer`` and
    ``uploader`` attributes; missing ones are treated as absent.
    """
    if not target:
        return SimpleNamespace()

    module_name, _, attr = target.partition(":")
    if not attr:
        raise ConfigurationException("collaborators", f"expected 'module:factory', got '{target}'")

    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationException("collaborators", f"cannot load '{target}': {e}") from e

    return factory()


def build_pipeline(args: argparse.Namespace, config: Settings) -> ImportPipeline:
    collaborators = load_collaborators(args.collaborators)
    return ImportPipeline(
        extractor=getattr(collaborators, "extractor", None),
        analyzer=getattr(collaborators, "analyzer", None),
        uploader=getattr(collaborators, "uploader", None),
        config=config,
        tag_hints=getattr(collaborators, "tag_hints", None)
    )


def _print_items(pipeline: ImportPipeline, status: Optional[str], as_json: bool) -> None:
    items = pipeline.list_items(FileStatus(status) if status else None)
    stats = pipeline.get_stats()

    if as_json:
        print(json.dumps({"items": [i.to_dict() for i in items], "stats": stats.model_dump()}, indent=2))
        return

    for item in items:
        line = f"{FileStatus(item.status).value:<16} {item.progress:>3}%  {item.file_path}"
        if item.error_message:
            line += f"  ({item.error_message})"
        print(line)

    print(
        f"\nTotal: {stats.total}  pending: {stats.pending}  processing: {stats.processing}  "
        f"ready: {stats.ready_to_upload}  uploading: {stats.uploading}  "
        f"complete: {stats.complete}  error: {stats.error}"
    )


async def _run(pipeline: ImportPipeline, paths: List[str]) -> int:
    await pipeline.start()
    try:
        admitted = 0
        for path in paths:
            if os.path.isdir(path):
                admitted += await pipeline.admit_folder(path)
            else:
                admitted += len(pipeline.admit([os.path.abspath(path)]))
        logger.info(f"Admitted {admitted} new item(s)")
        await pipeline.wait_until_drained()
    finally:
        await pipeline.stop()

    return 1 if pipeline.get_stats().error else 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="note-importer", description="Note Importer queue tool")
    parser.add_argument("--database-url", help="Override NOTE_IMPORTER_DATABASE_URL")
    parser.add_argument(
        "--collaborators",
        default=os.getenv("NOTE_IMPORTER_COLLABORATORS"),
        help="module:factory returning extractor/analyzer/uploader"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List queue items and stats")
    list_cmd.add_argument("--status", choices=[s.value for s in FileStatus])
    list_cmd.add_argument("--json", action="store_true", help="Emit JSON")

    requeue_cmd = sub.add_parser("requeue", help="Reset an errored item to pending")
    requeue_cmd.add_argument("key")

    sub.add_parser("purge-completed", help="Delete completed records")

    purge_all = sub.add_parser("purge-all", help="Delete every record")
    purge_all.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("cleanup", help="Verify completed records remotely and remove confirmed ones")

    run_cmd = sub.add_parser("run", help="Import files or folders and wait until done")
    run_cmd.add_argument("paths", nargs="+")

    serve_cmd = sub.add_parser("serve", help="Start the HTTP API")
    serve_cmd.add_argument("--host")
    serve_cmd.add_argument("--port", type=int)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    args = create_parser().parse_args(argv)

    overrides = {"database_url": args.database_url} if args.database_url else {}
    config = Settings(**overrides)
    setup_logging(
        log_level="DEBUG" if args.verbose else config.log_level,
        log_format="text" if config.log_format == "text" else "json",
        log_file=config.log_file
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        pipeline = build_pipeline(args, config)

        if args.command == "list":
            _print_items(pipeline, args.status, args.json)

        elif args.command == "requeue":
            item = pipeline.requeue(args.key)
            print(f"Re-queued: {item.file_path}")

        elif args.command == "purge-completed":
            print(f"Deleted {pipeline.purge_completed()} completed item(s)")

        elif args.command == "purge-all":
            if not args.yes:
                answer = input("Delete every queue record? [y/N] ")
                if answer.strip().lower() != "y":
                    print("Aborted")
                    return 1
            print(f"Deleted {pipeline.purge_all()} item(s)")

        elif args.command == "cleanup":
            result = asyncio.run(pipeline.cleanup())
            print(
                f"Checked: {result.checked}  Verified: {result.verified}  "
                f"Removed: {result.removed}  Failed: {result.failed}"
            )

        elif args.command == "run":
            return asyncio.run(_run(pipeline, args.paths))

        elif args.command == "serve":
            import uvicorn
            from note_importer.main import create_app

            uvicorn.run(
                create_app(pipeline),
                host=args.host or config.api_host,
                port=args.port or config.api_port
            )

    except NoteImporterException as e:
        logger.error(f"{e.error_code}: {e.message}")
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
