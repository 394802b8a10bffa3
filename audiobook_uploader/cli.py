"""Command line interface.

Commands:
    audiobook-uploader run CONFIG [--resume] [--json]
        Run the pipeline in a worker process and render its progress.
        --json passes the channel messages through unchanged (JSON Lines).
    audiobook-uploader next-run-dir ROOT [--no-create]
        Print the next numbered run folder (video_1, video_2, ...).
    audiobook-uploader history [--json] [--limit N]
        List recorded pipeline runs, newest first.

Exit codes: 0 on success, 1 on pipeline failure, 2 on usage errors.
"""

import argparse
import asyncio
import json
import signal
import sys
import textwrap
from pathlib import Path
from typing import TextIO

from audiobook_uploader import __version__
from audiobook_uploader.config import get_history_path, get_log_level
from audiobook_uploader.exceptions import ConfigurationError
from audiobook_uploader.schemas.messages import (
    ChannelMessage,
    ErrorMessage,
    LogMessage,
    ProgressMessage,
)
from audiobook_uploader.schemas.pipeline import PipelineResult, PipelineStep, StepStatus
from audiobook_uploader.services.progress_channel import PipelineProcessClient
from audiobook_uploader.services.project_history import JsonProjectHistoryStore
from audiobook_uploader.utils.artifacts import get_next_run_dir
from audiobook_uploader.utils.logging import configure_logging, get_logger
from audiobook_uploader.workers.pipeline_worker import load_config_file

log = get_logger(__name__)

STATUS_ICONS = {
    StepStatus.PENDING: "·",
    StepStatus.IN_PROGRESS: "…",
    StepStatus.COMPLETED: "✓",
    StepStatus.FAILED: "✗",
}


def indent_continuation(text: str, indent: str = "    ") -> str:
    """Keep the first line as is and indent every following line.

    Example:
        >>> indent_continuation("Compose Video failed\\nffmpeg exited 1")
        'Compose Video failed\\n    ffmpeg exited 1'
    """
    first, *rest = text.splitlines() or [""]
    return "\n".join([first, *(f"{indent}{line}" for line in rest)])


def format_step_line(step: PipelineStep) -> str:
    line = f"{STATUS_ICONS[step.status]} {step.name:<24} {step.progress:>3}%  {step.message}"
    if step.status == StepStatus.FAILED and step.error:
        detail = indent_continuation(f"error ({step.error_kind}): {step.error}")
        line += "\n" + textwrap.indent(detail, "      ")
    return line.rstrip()


class HumanRenderer:
    """Render channel messages as readable progress lines."""

    def __init__(self, out: TextIO, verbose: bool = False) -> None:
        self.out = out
        self.verbose = verbose
        self._last_lines: dict[str, str] = {}

    def __call__(self, message: ChannelMessage) -> None:
        if isinstance(message, ProgressMessage):
            line = format_step_line(message.step)
            # Encoder progress repeats; print only changes
            if self._last_lines.get(message.step.name) != line:
                self._last_lines[message.step.name] = line
                print(line, file=self.out, flush=True)
        elif isinstance(message, ErrorMessage):
            print(indent_continuation(f"error: {message.error}"), file=self.out, flush=True)
        elif isinstance(message, LogMessage) and self.verbose:
            print(f"  [{message.level}] {message.module}: {message.message}", file=self.out)

    def summary(self, result: PipelineResult) -> None:
        print("", file=self.out)
        if result.success:
            print("Pipeline completed", file=self.out)
            print(f"  video:     {result.video_path}", file=self.out)
            thumbnail_note = " (placeholder)" if result.thumbnail_is_placeholder else ""
            print(f"  thumbnail: {result.thumbnail_path}{thumbnail_note}", file=self.out)
            if result.audio_duration:
                print(f"  duration:  {result.audio_duration:.1f}s", file=self.out)
            if result.publish_result:
                print(f"  published: {result.publish_result.url}", file=self.out)
        else:
            print(indent_continuation(result.error or "Pipeline failed"), file=self.out)
        print("", file=self.out)
        for step in result.steps:
            print(format_step_line(step), file=self.out)


def _json_passthrough(message: ChannelMessage) -> None:
    print(message.model_dump_json(), flush=True)


async def _run_in_worker(args: argparse.Namespace) -> PipelineResult:
    config = load_config_file(args.config, resume=args.resume)
    client = PipelineProcessClient()
    renderer = _json_passthrough if args.json else HumanRenderer(sys.stdout, verbose=args.verbose)

    loop = asyncio.get_running_loop()
    # Ctrl+C asks the worker to cancel; the worker still reports a result
    try:
        loop.add_signal_handler(signal.SIGINT, client.cancel)
    except (NotImplementedError, RuntimeError):
        signal.signal(signal.SIGINT, lambda signum, frame: client.cancel())

    result = await client.run(config, on_message=renderer)
    if not args.json:
        renderer.summary(result)
    return result


def cmd_run(args: argparse.Namespace) -> int:
    try:
        result = asyncio.run(_run_in_worker(args))
    except ConfigurationError as e:
        print(indent_continuation(f"error: {e}"), file=sys.stderr)
        return 2
    return 0 if result.success else 1


def cmd_next_run_dir(args: argparse.Namespace) -> int:
    run_dir, number = get_next_run_dir(args.root, create=not args.no_create)
    log.debug("next_run_dir", path=str(run_dir), number=number)
    print(run_dir)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    store = JsonProjectHistoryStore(args.history_path or get_history_path())
    records = store.list_records()[: args.limit]
    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in records], ensure_ascii=False, indent=2))
        return 0
    if not records:
        print("No runs recorded")
        return 0
    for record in records:
        created = record.created_at.strftime("%Y-%m-%d %H:%M")
        duration = f"{record.audio_duration:.0f}s" if record.audio_duration else "-"
        print(f"{created}  {record.status:<9} {duration:>6}  {record.title}")
        for line in (record.error or "").splitlines():
            print(f"      {line}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audiobook-uploader",
        description="Turn a story into a narrated cooking video and publish it.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the pipeline for a config file")
    run_parser.add_argument("config", type=Path, help="Run config JSON file")
    run_parser.add_argument("--resume", action="store_true", help="Reuse existing artifacts")
    run_parser.add_argument("--json", action="store_true", help="Emit JSON Lines messages")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Show worker log lines")
    run_parser.set_defaults(func=cmd_run)

    next_parser = subparsers.add_parser("next-run-dir", help="Print the next run folder")
    next_parser.add_argument("root", type=Path, help="Output root folder")
    next_parser.add_argument("--no-create", action="store_true", help="Do not create the folder")
    next_parser.set_defaults(func=cmd_next_run_dir)

    history_parser = subparsers.add_parser("history", help="List recorded runs")
    history_parser.add_argument("--json", action="store_true", help="Emit JSON")
    history_parser.add_argument("--limit", type=int, default=20, help="Maximum runs to list")
    history_parser.add_argument("--history-path", type=Path, help="History JSON file")
    history_parser.set_defaults(func=cmd_history)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_log_level(), json_output=False)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
