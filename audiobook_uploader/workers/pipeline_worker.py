"""Pipeline Worker process.

Runs one pipeline for one config file and reports over stdout using the
JSON Lines channel (services/progress_channel.py). Application logs go to
stderr as JSON and are also forwarded on the channel as ``log`` messages.

Key Responsibilities:
- Load and validate the run config file
- Build adapters from the environment and run PipelineOrchestrator
- Translate SIGTERM/SIGINT into cooperative cancellation
- Emit exactly one ``result`` message, even when the config is invalid or
  the run crashes

Usage:
    python -m audiobook_uploader.workers.pipeline_worker --config run.json
    python -m audiobook_uploader.workers.pipeline_worker --config run.json --resume

Exit Codes:
    0: Pipeline succeeded
    1: Pipeline failed, was cancelled, or the config was invalid
"""

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from audiobook_uploader.config import get_history_path, get_log_level
from audiobook_uploader.constants import DOWNLOAD_TIMEOUT_SECONDS
from audiobook_uploader.exceptions import (
    ConfigurationError,
    classify_error,
)
from audiobook_uploader.schemas.pipeline import PipelineConfig, PipelineResult, PipelineStep
from audiobook_uploader.services.pipeline_orchestrator import (
    PipelineOrchestrator,
    PipelineServices,
    ProgressObserver,
)
from audiobook_uploader.services.progress_channel import JsonLinesChannelWriter
from audiobook_uploader.services.project_history import JsonProjectHistoryStore
from audiobook_uploader.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

# Global shutdown flag (set by SIGTERM/SIGINT handler)
SHUTDOWN_REQUESTED = False

_cancel_event: asyncio.Event | None = None
_loop: asyncio.AbstractEventLoop | None = None


def signal_handler(signum: int, frame: Any) -> None:
    """Handle SIGTERM/SIGINT by cancelling the running pipeline.

    The orchestrator marks the interrupted step failed with kind "cancelled"
    and the worker still emits its result message before exiting.

    Args:
        signum: Signal number received
        frame: Current stack frame (unused)
    """
    global SHUTDOWN_REQUESTED
    SHUTDOWN_REQUESTED = True
    log.info("shutdown_signal_received", signal=signum, signal_name=signal.Signals(signum).name)
    if _loop is not None and _cancel_event is not None:
        _loop.call_soon_threadsafe(_cancel_event.set)


def load_config_file(path: Path, resume: bool = False) -> PipelineConfig:
    """Read a run config from a JSON file.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    if resume:
        raw["resume_on_exist"] = True

    try:
        return PipelineConfig.model_validate(raw)
    except ValidationError as e:
        problems = "\n".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid config file {path}\n{problems}") from e


async def run_pipeline(
    config: PipelineConfig,
    observer: ProgressObserver | Callable[[PipelineStep], None] | None = None,
    cancel_event: asyncio.Event | None = None,
    history_path: Path | None = None,
) -> PipelineResult:
    """Run one pipeline with adapters and history built from the environment."""
    history = JsonProjectHistoryStore(history_path or get_history_path())
    async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS) as http_client:
        orchestrator = PipelineOrchestrator(
            PipelineServices.from_environment(http_client), history=history
        )
        return await orchestrator.run(config, observer=observer, cancel_event=cancel_event)


async def process_config(
    config_path: Path, writer: JsonLinesChannelWriter, resume: bool
) -> PipelineResult:
    """Load the config and run the pipeline, reporting through writer."""
    global _cancel_event, _loop
    _loop = asyncio.get_running_loop()
    _cancel_event = asyncio.Event()
    if SHUTDOWN_REQUESTED:
        _cancel_event.set()

    config = load_config_file(config_path, resume=resume)
    log.info("worker_config_loaded", title=config.story_title, resume=config.resume_on_exist)
    return await run_pipeline(config, observer=writer, cancel_event=_cancel_event)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m audiobook_uploader.workers.pipeline_worker",
        description="Run one audiobook pipeline and report over stdout (JSON Lines).",
    )
    parser.add_argument("--config", required=True, type=Path, help="Run config JSON file")
    parser.add_argument(
        "--resume", action="store_true", help="Reuse existing artifacts in the output folder"
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Worker process entry point.

    Returns:
        Process exit code (0 on success).
    """
    args = parse_args(argv)
    writer = JsonLinesChannelWriter(sys.stdout)
    configure_logging(
        get_log_level(), json_output=True, stream=sys.stderr, listener=writer.emit_log
    )

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        result = asyncio.run(process_config(args.config, writer, args.resume))
    except ConfigurationError as e:
        log.error("worker_config_invalid", error=str(e))
        writer.emit_error(str(e), e.kind)
        result = PipelineResult(
            success=False, error=f"Invalid configuration\n{e}", error_kind=e.kind
        )
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), error_type=type(e).__name__, exc_info=True)
        kind = classify_error(e)
        writer.emit_error(str(e), kind)
        result = PipelineResult(success=False, error=f"Pipeline crashed\n{e}", error_kind=kind)

    writer.emit_result(result)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
