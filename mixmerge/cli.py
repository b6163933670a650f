"""Command-line interface for MixMerge.

WHY: Operators need to start the API server, and it is handy to run the
exact merge the service would run on local files, without uploading
anything, to check an ffmpeg install or reproduce a failed job.

HOW: argparse with two subcommands:
  serve — run the FastAPI app under uvicorn
  merge — probe the inputs for their durations, then run MergeExecutor
          directly, printing progress to stderr
Logging is configured once for the process from LOG_LEVEL (or --log-level).

RULES:
- Status and progress output goes to stderr (not stdout)
- merge exits 1 on any mixmerge error, printing the engine diagnostics
- merge refuses fewer than MIN_MERGE_INPUTS inputs, like the API
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from mixmerge.config import (
    HOST,
    LOG_LEVEL,
    MERGE_TIMEOUT_SECONDS,
    MIN_MERGE_INPUTS,
    PORT,
)
from mixmerge.engine.executor import MergeExecutor
from mixmerge.engine.probe import probe_audio
from mixmerge.errors import MixMergeError, ValidationError

logger = logging.getLogger("mixmerge")

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once with a consistent, readable format."""
    level_name = (level or LOG_LEVEL or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_LOG_FORMAT,
        stream=sys.stderr,
    )


def _print_progress(pct: float) -> None:
    print("\rMerging... {:5.1f}%".format(pct), end="", file=sys.stderr, flush=True)


async def _run_merge(args: argparse.Namespace) -> Path:
    inputs = [Path(p) for p in args.inputs]
    if len(inputs) < MIN_MERGE_INPUTS:
        raise ValidationError(
            "A merge needs at least {} input files (got {})".format(
                MIN_MERGE_INPUTS, len(inputs)
            )
        )

    durations = [probe_audio(p).duration_s for p in inputs if p.is_file()]
    total = sum(durations) if durations and all(d > 0 for d in durations) else None
    if total:
        print("Total input duration: {:.1f}s".format(total), file=sys.stderr)

    executor = MergeExecutor(timeout_s=args.timeout)
    result = await executor.execute(
        inputs,
        Path(args.output),
        args.remove_silence,
        on_progress=_print_progress,
        total_duration_s=total,
    )
    print("", file=sys.stderr)
    return result.output_path


def _cmd_merge(args: argparse.Namespace) -> int:
    try:
        output = asyncio.run(_run_merge(args))
    except MixMergeError as exc:
        print("", file=sys.stderr)
        print("Error: {}".format(exc), file=sys.stderr)
        return 1
    print("Wrote {}".format(output), file=sys.stderr)
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    from mixmerge.server.app import run_api

    run_api(host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() makes the CLI
    testable — tests can inspect the parser without running anything.
    """
    parser = argparse.ArgumentParser(
        prog="mixmerge",
        description="Merge audio files with ffmpeg, locally or as an HTTP service.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: LOG_LEVEL env or INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default=HOST, help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=PORT, help="Port (default: %(default)s).")
    serve.set_defaults(func=_cmd_serve)

    merge = sub.add_parser("merge", help="Merge local audio files into one MP3.")
    merge.add_argument("inputs", nargs="+", help="Input audio files, in order.")
    merge.add_argument("-o", "--output", required=True, help="Output file path.")
    merge.add_argument(
        "--remove-silence",
        action="store_true",
        help="Strip silences of 5 seconds or longer from each input.",
    )
    merge.add_argument(
        "--timeout",
        type=float,
        default=MERGE_TIMEOUT_SECONDS,
        help="Kill ffmpeg after this many seconds (default: %(default)s, 0 = none).",
    )
    merge.set_defaults(func=_cmd_merge)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m mixmerge`` and the console script."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
