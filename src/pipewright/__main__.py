"""pipewright CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import aiosqlite

from pipewright.config import EngineSettings, load_pipeline, load_settings
from pipewright.pipeline import (
    BuildRecord,
    BuildRegistry,
    BuildStatus,
    ConfigurationError,
    GateAuthorizationError,
    GateController,
    GateWaiter,
    PipelineExecutor,
    build_graph,
)

logger = logging.getLogger("pipewright.cli")

_EXIT_CODES = {
    BuildStatus.SUCCEEDED: 0,
    BuildStatus.FAILED: 1,
    BuildStatus.ABORTED: 2,
}


# ── validate ─────────────────────────────────────────────────────────────────


def _validate(path: Path) -> int:
    try:
        definition = load_pipeline(path)
        root = build_graph(definition)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    stage_count = sum(1 for _ in root.walk()) - 1
    print(f"Pipeline '{definition.name}' is valid ({stage_count} stages)")
    return 0


# ── run ──────────────────────────────────────────────────────────────────────


def _auto_approver(approve_as: str | None):
    def _on_gate_open(waiter: GateWaiter) -> None:
        if approve_as is None:
            logger.warning(
                "Gate '%s' is waiting for approval; pass --approve-as or use "
                "'pipewright serve' to approve over HTTP",
                waiter.path,
            )
            return
        try:
            waiter.approve(approve_as)
        except GateAuthorizationError as e:
            logger.error("%s; aborting gate", e)
            waiter.abort(approve_as)

    return _on_gate_open


async def _run_build(
    path: Path,
    settings: EngineSettings,
    *,
    approve_as: str | None,
    params: dict[str, str],
) -> BuildRecord:
    definition = load_pipeline(path)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(settings.db_path)) as db:
        registry = BuildRegistry(db)
        await registry.initialize()
        executor = PipelineExecutor(
            registry,
            settings=settings,
            gates=GateController(on_open=_auto_approver(approve_as)),
        )
        return await executor.run_pipeline(definition, params=params)


def _run(args, settings: EngineSettings) -> int:
    try:
        record = asyncio.run(
            _run_build(args.file, settings, approve_as=args.approve_as, params=args.param)
        )
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_report(record)
    return _EXIT_CODES.get(record.status, 1)


# ── builds ───────────────────────────────────────────────────────────────────


async def _with_registry(settings: EngineSettings, fn):
    async with aiosqlite.connect(str(settings.db_path)) as db:
        registry = BuildRegistry(db)
        await registry.initialize()
        return await fn(registry)


def _builds_list(settings: EngineSettings) -> int:
    if not settings.db_path.exists():
        print("No builds recorded yet.")
        return 0
    builds = asyncio.run(_with_registry(settings, lambda r: r.list_builds()))
    if not builds:
        print("No builds recorded yet.")
        return 0
    print(f"{'BUILD':<8} {'STATUS':<11} {'PIPELINE':<24} {'STARTED':<20} DURATION")
    for b in builds:
        started = b.started_at.strftime("%Y-%m-%d %H:%M:%S") if b.started_at else "-"
        duration = f"{b.duration_seconds:.1f}s" if b.duration_seconds is not None else "-"
        print(f"#{b.build_id:<7} {b.status.value:<11} {b.pipeline_name:<24} {started:<20} {duration}")
    return 0


def _builds_show(settings: EngineSettings, build_id: int, *, output: bool) -> int:
    record = None
    if settings.db_path.exists():
        record = asyncio.run(_with_registry(settings, lambda r: r.get_build(build_id)))
    if record is None:
        print(f"Error: build #{build_id} not found", file=sys.stderr)
        return 1
    _print_report(record, output=output)
    return 0


# ── Reporting ────────────────────────────────────────────────────────────────


def _print_report(record: BuildRecord, *, output: bool = False) -> None:
    print(f"Build #{record.build_id} ({record.pipeline_name}): {record.status.value.upper()}")
    if record.error_message:
        print(f"  {record.error_message}")
    for row in record.stage_summary():
        depth = row["path"].count("/")
        name = row["path"].rsplit("/", 1)[-1]
        status = row["status"]
        if row["propagated"] != row["status"]:
            status = f"{status} (propagated {row['propagated']})"
        extra = []
        if row["exit_code"] is not None:
            extra.append(f"exit={row['exit_code']}")
        if row["approver"]:
            extra.append(f"approver={row['approver']}")
        if row["artifacts"]:
            extra.append(f"artifacts={row['artifacts']}")
        suffix = f"  [{', '.join(extra)}]" if extra else ""
        print(f"  {'  ' * depth}{name:<{max(1, 28 - 2 * depth)}} {status}{suffix}")

    if output and record.root is not None:
        for node in record.root.walk():
            if node.command is None:
                continue
            print(f"\n── {node.path} ── $ {node.command.command}")
            if node.command.stdout:
                print(node.command.stdout.rstrip())
            if node.command.stderr:
                print(node.command.stderr.rstrip(), file=sys.stderr)


def _parse_param(value: str) -> tuple[str, str]:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{value}'")
    return key, val


# ── Entry Point ──────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    common.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory for the build database (default: $PIPEWRIGHT_DATA_DIR or .pipewright)",
    )

    parser = argparse.ArgumentParser(
        prog="pipewright",
        description="pipewright — single-node CI/CD pipeline execution engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    # pipewright validate
    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Validate a pipeline definition"
    )
    validate_parser.add_argument("file", type=Path, help="Pipeline definition YAML")

    # pipewright run
    run_parser = subparsers.add_parser("run", parents=[common], help="Run a pipeline once")
    run_parser.add_argument("file", type=Path, help="Pipeline definition YAML")
    run_parser.add_argument(
        "--approve-as",
        metavar="NAME",
        help="Approve every gate as NAME (default: gates wait for their timeout)",
    )
    run_parser.add_argument(
        "--param",
        metavar="KEY=VALUE",
        type=_parse_param,
        action="append",
        default=[],
        help="Build parameter (repeatable); overrides pipeline environment",
    )

    # pipewright builds
    builds_parser = subparsers.add_parser("builds", help="Inspect recorded builds")
    builds_sub = builds_parser.add_subparsers(dest="builds_command")
    builds_sub.add_parser("list", parents=[common], help="List recorded builds")
    show_parser = builds_sub.add_parser("show", parents=[common], help="Show one build")
    show_parser.add_argument("build_id", type=int)
    show_parser.add_argument(
        "--output", action="store_true", help="Also print captured command output"
    )

    # pipewright serve
    serve_parser = subparsers.add_parser(
        "serve", parents=[common], help="Serve the build and approval API"
    )
    serve_parser.add_argument("file", type=Path, help="Pipeline definition YAML")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")

    args = parser.parse_args(argv)

    if args.command is None or (args.command == "builds" and args.builds_command is None):
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        settings = load_settings(data_dir=args.data_dir)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    match args.command:
        case "validate":
            sys.exit(_validate(args.file))
        case "run":
            args.param = dict(args.param)
            sys.exit(_run(args, settings))
        case "builds" if args.builds_command == "list":
            sys.exit(_builds_list(settings))
        case "builds":
            sys.exit(_builds_show(settings, args.build_id, output=args.output))
        case "serve":
            if not args.file.exists():
                print(f"Error: pipeline definition not found: {args.file}", file=sys.stderr)
                sys.exit(1)

            import uvicorn

            from pipewright.server import create_app

            app = create_app(args.file, settings)
            uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
