"""Command-line entry point.

Usage:
    prebake compile [make args...]
    prebake precompile [make args...]
    prebake checksum --all | --only-local [--print] [--ignore-unavailable]
    prebake clean
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from prebake.config import ProjectConfig, load_config, load_object
from prebake.errors import ConfigError, PrebakeError
from prebake.precompiler import Precompiler
from prebake.project import Project


def cmd_compile(project: Project, args: argparse.Namespace) -> None:
    mode = project.compile(args.make_args)
    print(f"{project.config.app}: {mode}")


def cmd_precompile(project: Project, args: argparse.Namespace) -> None:
    report = project.precompile(args.make_args)
    for target, artifact in report.artifacts:
        print(f"{target}: {artifact.basename} {artifact.ledger_value}")
    print(f"Checksums written to {report.ledger_path}")


def cmd_checksum(project: Project, args: argparse.Namespace) -> None:
    mode = "all" if args.all else "only_local"
    artifacts = project.checksum(
        mode=mode,
        ignore_unavailable=True if args.ignore_unavailable else None,
    )
    if args.print:
        for artifact in sorted(artifacts, key=lambda item: item.basename):
            print(f"{artifact.checksum}  {artifact.basename}")


def cmd_clean(project: Project, args: argparse.Namespace) -> None:
    if not project.clean():
        print("No clean targets configured.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prebake",
        description="Run make and manage precompiled native artifacts",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("pyproject.toml"),
        help="Project file holding the [tool.prebake] table",
    )
    parser.add_argument("--log-json", type=Path, help="Write structured log records here")
    sub = parser.add_subparsers(dest="command", required=True)

    compile_p = sub.add_parser("compile", help="Restore a precompiled artifact or build it")
    compile_p.add_argument("make_args", nargs=argparse.REMAINDER)

    precompile_p = sub.add_parser("precompile", help="Precompile every buildable target")
    precompile_p.add_argument("make_args", nargs=argparse.REMAINDER)

    checksum_p = sub.add_parser("checksum", help="Fetch published artifacts and write checksums")
    scope = checksum_p.add_mutually_exclusive_group(required=True)
    scope.add_argument("--all", action="store_true", help="Every published target")
    scope.add_argument("--only-local", action="store_true", help="The current host target")
    checksum_p.add_argument("--print", action="store_true", help="Print the checksums")
    checksum_p.add_argument(
        "--ignore-unavailable",
        action="store_true",
        help="Skip artifacts that cannot be downloaded",
    )

    sub.add_parser("clean", help="Run the configured make clean targets")
    return parser


def load_project(config_path: Path) -> Project:
    config, precompiler_path = load_config(config_path)
    precompiler = _load_precompiler(precompiler_path, config) if precompiler_path else None
    return Project(config=config, precompiler=precompiler)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args, extra = parser.parse_known_args(argv)
    if extra:
        if args.command not in ("compile", "precompile"):
            parser.error(f"unrecognized arguments: {' '.join(extra)}")
        args.make_args = [*extra, *args.make_args]
    commands = {
        "compile": cmd_compile,
        "precompile": cmd_precompile,
        "checksum": cmd_checksum,
        "clean": cmd_clean,
    }
    project: Project | None = None
    try:
        project = load_project(args.config)
        commands[args.command](project, args)
    except PrebakeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        if project is not None and args.log_json is not None:
            project.logger.to_json_lines(args.log_json)
    return 0


def _load_precompiler(path: str, config: ProjectConfig) -> Precompiler:
    factory = load_object(path)
    if not callable(factory):
        raise ConfigError(
            "Precompiler must be a callable accepting the project configuration.",
            context={"path": path},
        )
    return factory(config)


if __name__ == "__main__":
    sys.exit(main())
