"""CLI entrypoints for typdocs commands."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .config import ConfigError
from .logging import configure_logging
from .models import DEFAULT_FAIL_ON
from .orchestrator import BuildResult, Orchestrator
from .serialize import render_report


def _add_logging_options(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    # Subparsers must not reset values given before the command.
    flag_default: object = argparse.SUPPRESS if suppress_default else False
    path_default: object = argparse.SUPPRESS if suppress_default else None
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=flag_default,
        help="Show debug output such as cache hits and phase timings.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=flag_default,
        help="Only log warnings and errors.",
    )
    parser.add_argument(
        "--log-file",
        default=path_default,
        help="Also write debug-level logs to this file.",
    )


def _add_path_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Path to the documentation root containing typdocs.yml (defaults to current directory).",
    )


def _add_render_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel workers for parsing and rendering.",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore the persistent example cache for this run.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="typdocs",
        description="Build the reference and guide documentation tree with rendered examples.",
    )
    _add_logging_options(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser(
        "build",
        help="Build the page tree and write it to the output directory.",
    )
    _add_logging_options(build_parser, suppress_default=True)
    _add_path_argument(build_parser)
    build_parser.add_argument(
        "-o",
        "--output",
        default=None,
        help="Output directory (defaults to output_dir from typdocs.yml).",
    )
    _add_render_options(build_parser)

    check_parser = subparsers.add_parser(
        "check",
        help="Run every phase and report diagnostics without writing output.",
    )
    _add_logging_options(check_parser, suppress_default=True)
    _add_path_argument(check_parser)
    _add_render_options(check_parser)

    serve_parser = subparsers.add_parser(
        "serve",
        help="Expose builds over HTTP.",
    )
    _add_logging_options(serve_parser, suppress_default=True)
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for typdocs commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(
        verbose=bool(args.verbose),
        quiet=bool(args.quiet),
        log_file=Path(args.log_file) if args.log_file else None,
    )

    if args.command == "serve":
        from .service import run_service

        try:
            run_service(host=args.host, port=args.port)
        except RuntimeError as exc:
            parser.exit(1, f"{exc}\n")
        return

    orchestrator = Orchestrator(
        workers=getattr(args, "workers", None),
        use_cache=not bool(getattr(args, "no_cache", False)),
    )

    try:
        if args.command == "build":
            result = orchestrator.build(args.path, args.output)
        elif args.command == "check":
            result = orchestrator.run(args.path)
        else:  # pragma: no cover - argparse enforces choices
            parser.exit(1, "Unknown command\n")
    except ConfigError as exc:
        parser.exit(2, f"{exc}\n")
    except Exception as exc:  # pragma: no cover
        parser.exit(1, f"typdocs {args.command} failed: {exc}\nRun with --verbose for more details.\n")

    _print_result(result, args.command, getattr(args, "output", None))
    if result.exit_code:
        parser.exit(result.exit_code)


def _print_result(result: BuildResult, command: str, output: str | None) -> None:
    fail_on = result.config.fail_on if result.config is not None else DEFAULT_FAIL_ON
    print(render_report(result.report, fail_on, pages=result.page_count if result.tree is not None else None), end="")
    if command == "build" and result.config is not None:
        target = Path(output) if output else result.config.root / result.config.output_dir
        print(f"Output written to {_relativize(target)}")


def _relativize(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)


if __name__ == "__main__":
    main(sys.argv[1:])
