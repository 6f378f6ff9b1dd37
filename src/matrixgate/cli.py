from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, load_config
from .coordinator import Coordinator
from .errors import (
    FailedBuildsError,
    MatrixGateError,
    NotLeaderError,
    WaitCancelledError,
    WaitTimeoutError,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FAILED_BUILDS = 2
EXIT_NOT_LEADER = 3
EXIT_TIMEOUT = 4
EXIT_CANCELLED = 5


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matrixgate",
        description="Wait for every job of a CI build matrix before running a final step",
    )
    parser.add_argument("--config", help="Path to an optional matrixgate YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    wait_parser = subparsers.add_parser("wait", help="Block the leader job until all other jobs finish")
    wait_parser.add_argument("--interval", type=_positive_int, help="Seconds between polls")
    wait_parser.add_argument("--max-wait", type=_positive_int, help="Give up after this many seconds")
    subparsers.add_parser("status", help="Show the current build matrix")
    subparsers.add_parser("role", help="Print whether this job is the leader")
    return parser


def _report_error(exc: MatrixGateError) -> None:
    print("matrixgate failed.")
    print("")
    print(f"Error: {exc}")


def _raise_cancelled(signum: int, frame: object) -> None:
    # No locks may be taken here; the exception unwinds the main thread instead.
    raise WaitCancelledError(f"Wait cancelled by signal {signal.Signals(signum).name}")


def cmd_wait(coordinator: Coordinator) -> int:
    if coordinator.is_leader():
        print("I'm the leader.")
        print("Waiting for others to finish")

    previous_handler = signal.signal(signal.SIGTERM, _raise_cancelled)
    try:
        coordinator.wait_for_others()
    except KeyboardInterrupt:
        log_with_fields(coordinator.logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        print("Interrupted. Stopping here.")
        return EXIT_CANCELLED
    except NotLeaderError:
        print("I'm not the leader. Bailing out.")
        return EXIT_NOT_LEADER
    except FailedBuildsError as exc:
        print("Some builds failed. Stopping here.")
        for number in exc.failed_jobs:
            print(f"  failed: {number}")
        return EXIT_FAILED_BUILDS
    except WaitTimeoutError as exc:
        print(f"{exc}. Stopping here.")
        return EXIT_TIMEOUT
    except WaitCancelledError:
        print("Wait cancelled. Stopping here.")
        return EXIT_CANCELLED
    except MatrixGateError as exc:
        _report_error(exc)
        return EXIT_ERROR
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    print("Build finished. Now it's my time")
    return EXIT_OK


def cmd_status(coordinator: Coordinator) -> int:
    try:
        matrix = coordinator.fetch_matrix()
    except MatrixGateError as exc:
        _report_error(exc)
        return EXIT_ERROR

    print(f"Build {matrix.build_id}")
    for job in matrix.jobs:
        print(f"== Job {job.number}")
        print(f"Leader: {job.is_leader()}")
        print(f"Finished: {job.is_finished()}")
        print(f"Succeeded: {job.is_succeeded()}")
        print("")
    print(f"Matrix all except leader finished: {matrix.others_finished()}")
    print(f"Matrix all except leader succeeded: {matrix.others_succeeded()}")
    pending = matrix.pending()
    if pending:
        print(f"Pending: {', '.join(pending)}")
    elif matrix.failed():
        print(f"Failed: {', '.join(matrix.failed())}")
    return EXIT_OK


def cmd_role(coordinator: Coordinator) -> int:
    if coordinator.is_leader():
        print("leader")
        return EXIT_OK
    print("follower")
    return EXIT_NOT_LEADER


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    interval = getattr(args, "interval", None)
    max_wait = getattr(args, "max_wait", None)
    if interval is None and max_wait is None:
        return config
    poll = dataclasses.replace(
        config.poll,
        interval_seconds=interval if interval is not None else config.poll.interval_seconds,
        max_wait_seconds=max_wait if max_wait is not None else config.poll.max_wait_seconds,
    )
    return dataclasses.replace(config, poll=poll)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _apply_overrides(load_config(args.config), args)
    except MatrixGateError as exc:
        print(f"matrixgate: {exc}", file=sys.stderr)
        return EXIT_ERROR

    try:
        logger = setup_logger(config.log_path)
    except OSError as exc:
        print(f"matrixgate: cannot open log {config.log_path}: {exc}", file=sys.stderr)
        return EXIT_ERROR
    coordinator = Coordinator.from_config(config, logger=logger)

    if args.command == "wait":
        return cmd_wait(coordinator)
    if args.command == "status":
        return cmd_status(coordinator)
    if args.command == "role":
        return cmd_role(coordinator)
    parser.error(f"Unknown command: {args.command}")
    return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
