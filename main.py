#!/usr/bin/env python3
"""
VideoIntelAutomator v1.0.0 — Main entry point.

Usage:
    python3 main.py queue.txt
    python3 main.py queue.csv --reverse --headless --max-segment-minutes 30
    python3 main.py --diagnostics

While running: Ctrl-C stops after the current task, SIGUSR1 pauses,
SIGUSR2 resumes.
"""

import sys
import json
import signal
import logging
import argparse
import getpass
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from automator.core.constants import APP_NAME, APP_VERSION, LOG_DIR, EventType, RunPhase
from automator.core.config import AppConfig
from automator.core.job_store import JobStore
from automator.core.task_channel import TaskChannel
from automator.core.task_executor import PromptPageExecutor
from automator.core.worker_context import WorkerContextManager, PlaywrightBackend
from automator.core.report_sink import FileReportWriter, ApiReportClient, CompositeReportSink
from automator.core.security_utils import TokenProvider, keychain_set_api_token
from automator.core.broadcast import ProgressBroadcaster
from automator.core.orchestrator import Orchestrator
from automator.core.url_parse import parse_input_file
from automator.core.diagnostics import get_diagnostics

# ── Logging setup (writes to ~/Library/Logs/VideoIntelAutomator/) ─────
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "app.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(LOG_FILE, encoding="utf-8"),
        logging.StreamHandler(sys.stderr),
    ],
)
logger = logging.getLogger(APP_NAME)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="main.py",
        description="Extract AI analysis reports from a queue of videos.",
    )
    parser.add_argument("input", nargs="?", help="Queue file (.txt, .csv or .json)")
    parser.add_argument("--reverse", action="store_true", help="Process the queue last-to-first")
    parser.add_argument("--headless", action="store_true", help="Run the browser without a window")
    parser.add_argument("--max-segment-minutes", type=float, default=None,
                        help="Split videos longer than this into segments")
    parser.add_argument("--config", type=Path, default=None, help="Alternative config.json")
    parser.add_argument("--diagnostics", action="store_true", help="Print diagnostics and exit")
    parser.add_argument("--reset", action="store_true",
                        help="Discard a persisted run left behind by a crashed process")
    parser.add_argument("--store-token", action="store_true",
                        help="Prompt for the report API token and save it to the Keychain")
    return parser.parse_args(argv)


def build_orchestrator(config: AppConfig, headless: bool = False) -> Orchestrator:
    """Wire the store, channel, contexts and report sinks together."""
    store = JobStore()
    channel = TaskChannel()
    executor = PromptPageExecutor(
        selectors=config.get('selectors'),
        prompt_template=config.get('prompt_template'),
    )
    backend = PlaywrightBackend(
        headless=headless or config.get('headless'),
        storage_state_path=config.storage_state_path,
        browser_channel=config.get('browser_channel'),
    )
    contexts = WorkerContextManager(
        channel, executor, backend,
        entry_url=config.get('entry_url'),
        ready_timeout_sec=config.get('context_ready_timeout_seconds'),
    )

    sinks = [FileReportWriter(config.output_root, config.get('write_combined_report'))]
    if config.get('submit_reports_to_api'):
        sinks.append(ApiReportClient(config.get('api_base_url'), TokenProvider()))
    reports = sinks[0] if len(sinks) == 1 else CompositeReportSink(sinks)

    return Orchestrator(store, contexts, channel, reports=reports,
                        broadcaster=ProgressBroadcaster(),
                        stale_after_sec=config.stale_after_seconds)


def console_listener(event):
    prefix = f"[{event.current}/{event.total}] " if event.total else ""
    if event.type == EventType.ERROR:
        print(f"{prefix}ERROR: {event.message}", flush=True)
    else:
        print(f"{prefix}{event.message}", flush=True)


def print_summary(orchestrator: Orchestrator, run_id: str):
    for result in orchestrator.store.get_video_results(run_id):
        line = f"{result.status:<10} {result.video_id}  {result.title or ''}"
        if result.error_code:
            line += f"  [{result.error_code}]"
        print(line)
    print(f"Videos processed to date: {orchestrator.store.total_processed()}")


def install_signal_handlers(orchestrator: Orchestrator):
    signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.stop())
    # SIGUSR1/2 do not exist on Windows
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda signum, frame: orchestrator.pause())
        signal.signal(signal.SIGUSR2, lambda signum, frame: orchestrator.resume())


def main(argv=None) -> int:
    args = parse_args(argv)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    config = AppConfig(args.config) if args.config else AppConfig()

    if args.diagnostics:
        print(json.dumps(get_diagnostics(config.storage_state_path), indent=2))
        return 0

    if args.store_token:
        token = getpass.getpass("Report API token: ").strip()
        if not token or not keychain_set_api_token(token):
            print("Token not saved.", file=sys.stderr)
            return 1
        print("Token saved to Keychain.")
        return 0

    try:
        orchestrator = build_orchestrator(config, headless=args.headless)

        if args.reset:
            if orchestrator.reset():
                print("Persisted run state cleared.")
            if not args.input:
                return 0

        if not args.input:
            print("No input file given (see --help).", file=sys.stderr)
            return 2

        jobs = parse_input_file(args.input)
        if not jobs:
            print(f"No valid videos found in {args.input}", file=sys.stderr)
            return 1

        max_segment = int(args.max_segment_minutes * 60) if args.max_segment_minutes else None
        run_config = config.run_config(
            reverse_order=True if args.reverse else None,
            max_segment_duration_seconds=max_segment,
        )

        orchestrator.broadcaster.subscribe(console_listener)
        install_signal_handlers(orchestrator)

        if not orchestrator.start(jobs, run_config):
            return 1
        # Short joins keep the main thread responsive to signals.
        while not orchestrator.wait(timeout=0.5):
            pass

        state = orchestrator.status()
        logger.info("Run finished in phase %s", state.phase)
        print_summary(orchestrator, state.run_id)
        return 0 if state.phase != RunPhase.FAILED else 1

    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"Fatal error: {e}\n\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
