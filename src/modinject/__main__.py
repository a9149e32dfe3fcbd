"""Module entrypoint.

Allows: python -m modinject
"""

from __future__ import annotations

import argparse
import json
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TextIO, cast

from . import __version__
from .archive import read_entry_text
from .config import InjectorConfig, PatchMode
from .descriptor import parse_export_list
from .errors import InjectionError, MissingDependencies
from .inject import InjectionResult, inject
from .repair import format_missing_dependencies
from .schema import DESCRIPTOR_SOURCE_ENTRY
from .tooling import probe_toolchain

EXIT_OK = 0
EXIT_SKIPPED = 10
EXIT_FATAL = 20
EXIT_MISSING_DEPENDENCIES = 30


@dataclass
class ConsoleCollaborator:
    assume: bool | None = None
    out: TextIO | None = None
    err: TextIO | None = None

    def _out(self) -> TextIO:
        return self.out or sys.stdout

    def _err(self) -> TextIO:
        return self.err or sys.stderr

    def confirm_overwrite(self, existing_descriptor: str) -> bool:
        if existing_descriptor.strip():
            print(
                "Archive contains a module descriptor written by this tool:",
                file=self._out(),
            )
            print(existing_descriptor.rstrip(), file=self._out())
        else:
            print(
                "Archive contains a module descriptor not written by this tool.",
                file=self._out(),
            )
        if self.assume is not None:
            return self.assume
        try:
            answer = input("Overwrite? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def report_success(self, result: InjectionResult) -> None:
        print(f"Module descriptor injected into {result.archive}", file=self._out())
        if result.backup_path is not None:
            print(f"Backup: {result.backup_path}", file=self._out())
        if result.removed_exports:
            print(
                "Removed empty exports: " + ", ".join(result.removed_exports),
                file=self._out(),
            )

    def report_failure(self, error: InjectionError) -> None:
        if isinstance(error, MissingDependencies):
            print(format_missing_dependencies(error.names), file=self._err())
            return
        print(f"{error.token}: {error}", file=self._err())
        if error.output.strip():
            print("--- tool output ---", file=self._err())
            print(error.output.rstrip(), file=self._err())


def _build_parser() -> argparse.ArgumentParser:
    epilog = textwrap.dedent(
        """\
        Exit codes:
          0   Success
          10  Skipped (existing descriptor kept)
          20  Fatal error
          30  Missing dependencies (add archives and retry)
        """
    )

    parser = argparse.ArgumentParser(
        prog="modinject",
        description="Inject a module descriptor into a legacy JAR.",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _ = parser.add_argument(
        "--version",
        action="version",
        version=f"modinject {__version__}",
        help="Print version and exit.",
    )
    sub = parser.add_subparsers(dest="command")

    inj = sub.add_parser("inject", help="Generate, compile and inject module-info.class.")
    _ = inj.add_argument("archive", help="Path to the JAR to modify.")
    _ = inj.add_argument(
        "--dep",
        dest="deps",
        action="append",
        default=[],
        metavar="PATH",
        help="Dependency archive placed on the module path (repeatable).",
    )
    _ = inj.add_argument(
        "--module-name",
        default=None,
        help="Synthesize the descriptor for this module instead of running jdeps.",
    )
    _ = inj.add_argument(
        "--exports",
        default="",
        help="Comma separated packages to export (with --module-name).",
    )
    answer = inj.add_mutually_exclusive_group()
    _ = answer.add_argument(
        "--yes",
        dest="assume",
        action="store_const",
        const=True,
        default=None,
        help="Overwrite an existing descriptor without asking.",
    )
    _ = answer.add_argument(
        "--no",
        dest="assume",
        action="store_const",
        const=False,
        help="Keep an existing descriptor without asking.",
    )
    _ = inj.add_argument(
        "--patch-mode",
        choices=["replace", "rebuild"],
        default=None,
        help="How the archive is rewritten (default: replace).",
    )
    _ = inj.add_argument("--jdeps", default=None, help="jdeps executable.")
    _ = inj.add_argument("--javac", default=None, help="javac executable.")
    _ = inj.add_argument(
        "--timeout-s",
        type=float,
        default=None,
        help="Per tool invocation timeout in seconds.",
    )
    _ = inj.add_argument("--log", default=None, help="Append a run log to this file.")
    _ = inj.add_argument(
        "--report-json",
        default=None,
        help="Write the injection result as JSON to this file.",
    )

    show = sub.add_parser(
        "show", help="Print the module descriptor source stored in an archive."
    )
    _ = show.add_argument("archive", help="Path to the JAR.")

    tools = sub.add_parser("tools", help="Probe jdeps/javac availability.")
    _ = tools.add_argument("--jdeps", default=None, help="jdeps executable.")
    _ = tools.add_argument("--javac", default=None, help="javac executable.")

    return parser


def _config_from_args(args: argparse.Namespace) -> InjectorConfig:
    cfg = InjectorConfig.from_env()
    jdeps = cast(str | None, getattr(args, "jdeps", None))
    javac = cast(str | None, getattr(args, "javac", None))
    if jdeps:
        cfg = replace(cfg, jdeps=jdeps)
    if javac:
        cfg = replace(cfg, javac=javac)
    timeout_s = cast(float | None, getattr(args, "timeout_s", None))
    if timeout_s is not None:
        cfg = replace(cfg, tool_timeout_s=timeout_s)
    patch_mode = cast(str | None, getattr(args, "patch_mode", None))
    if patch_mode:
        cfg = replace(cfg, patch_mode=cast(PatchMode, patch_mode))
    log = cast(str | None, getattr(args, "log", None))
    if log:
        cfg = replace(cfg, log_path=Path(log).expanduser())
    return cfg


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )


def _exit_code(result: InjectionResult) -> int:
    if result.status == "ok":
        return EXIT_OK
    if result.status == "skipped":
        return EXIT_SKIPPED
    if result.missing_dependencies:
        return EXIT_MISSING_DEPENDENCIES
    return EXIT_FATAL


def main(argv: Sequence[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv))
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else EXIT_FATAL

    command = cast(str | None, getattr(args, "command", None))
    if command is None:
        parser.print_help()
        return EXIT_OK

    try:
        cfg = _config_from_args(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FATAL

    if command == "tools":
        report = probe_toolchain(cfg)
        print(json.dumps(report, indent=2, sort_keys=True))
        return EXIT_FATAL if report.get("missing_tools") else EXIT_OK

    if command == "show":
        archive = Path(cast(str, args.archive))
        try:
            text = read_entry_text(archive, DESCRIPTOR_SOURCE_ENTRY)
        except InjectionError as e:
            print(f"{e.token}: {e}", file=sys.stderr)
            return EXIT_FATAL
        if not text:
            print(f"No {DESCRIPTOR_SOURCE_ENTRY} in {archive}", file=sys.stderr)
            return EXIT_SKIPPED
        print(text.rstrip())
        return EXIT_OK

    module_name = cast(str | None, args.module_name)
    exports = parse_export_list(cast(str, args.exports))
    if exports and not module_name:
        print("--exports requires --module-name", file=sys.stderr)
        return EXIT_FATAL

    collaborator = ConsoleCollaborator(assume=cast(bool | None, args.assume))
    try:
        result = inject(
            Path(cast(str, args.archive)),
            [Path(d) for d in cast(list[str], args.deps)],
            collaborator,
            config=cfg,
            module_name=module_name,
            exports=exports,
        )
    except ValueError as e:
        print(f"Invalid module declaration: {e}", file=sys.stderr)
        return EXIT_FATAL

    report_json = cast(str | None, args.report_json)
    if report_json:
        _write_json(Path(report_json), result.to_json())

    if result.status == "skipped":
        print("Existing module descriptor kept; nothing injected.")
    return _exit_code(result)


if __name__ == "__main__":
    raise SystemExit(main())
