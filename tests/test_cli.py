from __future__ import annotations

import argparse
import io
import logging
import os
import signal
import threading
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from matrixgate import cli
from matrixgate.cli import build_parser
from matrixgate.config import AppConfig, PollConfig
from matrixgate.coordinator import Coordinator
from matrixgate.errors import (
    BuildNotFoundError,
    FailedBuildsError,
    GenericError,
    NotLeaderError,
    WaitCancelledError,
    WaitTimeoutError,
)
from matrixgate.models import Matrix


class FakeCoordinator:
    def __init__(self, *, leader: bool = True, outcome: BaseException | None = None, matrix: Matrix | None = None) -> None:
        self.leader = leader
        self.outcome = outcome
        self.matrix = matrix
        self.logger = logging.getLogger("test_matrixgate_cli")
        self.logger.addHandler(logging.NullHandler())
        self.logger.propagate = False
        self.stop_event = threading.Event()

    def is_leader(self) -> bool:
        return self.leader

    def wait_for_others(self) -> Matrix | None:
        if self.outcome is not None:
            raise self.outcome
        return self.matrix

    def fetch_matrix(self) -> Matrix:
        if self.outcome is not None:
            raise self.outcome
        assert self.matrix is not None
        return self.matrix


def run(func, coordinator: FakeCoordinator) -> tuple[int, str]:
    buffer = io.StringIO()
    with redirect_stdout(buffer):
        code = func(coordinator)
    return code, buffer.getvalue()


class ParserTest(unittest.TestCase):
    def test_wait_overrides(self) -> None:
        args = build_parser().parse_args(["--config", "gate.yaml", "wait", "--interval", "10", "--max-wait", "600"])
        self.assertEqual(args.command, "wait")
        self.assertEqual(args.config, "gate.yaml")
        self.assertEqual(args.interval, 10)
        self.assertEqual(args.max_wait, 600)

    def test_interval_must_be_positive(self) -> None:
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["wait", "--interval", "0"])


class WaitCommandTest(unittest.TestCase):
    def test_success(self) -> None:
        code, output = run(cli.cmd_wait, FakeCoordinator())
        self.assertEqual(code, cli.EXIT_OK)
        self.assertIn("I'm the leader.", output)
        self.assertIn("Now it's my time", output)

    def test_exit_codes(self) -> None:
        cases = [
            (NotLeaderError(), cli.EXIT_NOT_LEADER),
            (FailedBuildsError(["1.2", "1.4"]), cli.EXIT_FAILED_BUILDS),
            (WaitTimeoutError(60), cli.EXIT_TIMEOUT),
            (WaitCancelledError(), cli.EXIT_CANCELLED),
            (BuildNotFoundError("9"), cli.EXIT_ERROR),
            (GenericError("connect timeout"), cli.EXIT_ERROR),
            (KeyboardInterrupt(), cli.EXIT_CANCELLED),
        ]
        for outcome, expected in cases:
            with self.subTest(outcome=type(outcome).__name__):
                code, _ = run(cli.cmd_wait, FakeCoordinator(outcome=outcome))
                self.assertEqual(code, expected)

    def test_failed_jobs_are_listed(self) -> None:
        _, output = run(cli.cmd_wait, FakeCoordinator(outcome=FailedBuildsError(["1.3"])))
        self.assertIn("Some builds failed", output)
        self.assertIn("failed: 1.3", output)

    def test_generic_error_message_is_printed(self) -> None:
        _, output = run(cli.cmd_wait, FakeCoordinator(outcome=GenericError("connect timeout")))
        self.assertIn("Error: connect timeout", output)

    @unittest.skipUnless(os.name == "posix", "needs POSIX signals")
    def test_sigterm_cancels_wait_and_restores_handler(self) -> None:
        running = {
            "id": 3,
            "matrix": [
                {"number": "3.1", "finished_at": None, "result": None},
                {"number": "3.2", "finished_at": None, "result": None},
            ],
        }

        class RunningSource:
            def get_build(self, build_id: str) -> dict:
                return running

        logger = logging.getLogger("test_matrixgate_cli")
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        coordinator = Coordinator(
            AppConfig(build_id="3", job_number="3.1", poll=PollConfig(interval_seconds=30)),
            RunningSource(),
            logger=logger,
        )
        handler_before = signal.getsignal(signal.SIGTERM)
        timer = threading.Timer(0.3, os.kill, args=(os.getpid(), signal.SIGTERM))
        timer.start()
        try:
            code, output = run(cli.cmd_wait, coordinator)
        finally:
            timer.cancel()
        self.assertEqual(code, cli.EXIT_CANCELLED)
        self.assertIn("Wait cancelled", output)
        self.assertIs(signal.getsignal(signal.SIGTERM), handler_before)


class StatusAndRoleCommandTest(unittest.TestCase):
    def test_status_prints_each_job(self) -> None:
        matrix = Matrix.from_payload(
            {
                "id": 5,
                "matrix": [
                    {"number": "5.1", "finished_at": None, "result": None},
                    {"number": "5.2", "finished_at": "t", "result": 1},
                ],
            }
        )
        code, output = run(cli.cmd_status, FakeCoordinator(matrix=matrix))
        self.assertEqual(code, cli.EXIT_OK)
        self.assertIn("== Job 5.2", output)
        self.assertIn("Matrix all except leader finished: True", output)
        self.assertIn("Matrix all except leader succeeded: False", output)
        self.assertIn("Failed: 5.2", output)

    def test_status_lists_pending_jobs_before_outcome(self) -> None:
        matrix = Matrix.from_payload(
            {
                "id": 6,
                "matrix": [
                    {"number": "6.1", "finished_at": None, "result": None},
                    {"number": "6.2", "finished_at": "t", "result": 1},
                    {"number": "6.3", "finished_at": None, "result": None},
                ],
            }
        )
        _, output = run(cli.cmd_status, FakeCoordinator(matrix=matrix))
        self.assertIn("Pending: 6.3", output)
        self.assertNotIn("Failed:", output)

    def test_status_error(self) -> None:
        code, output = run(cli.cmd_status, FakeCoordinator(outcome=BuildNotFoundError("5")))
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertIn("Build 5 does not exist", output)

    def test_role(self) -> None:
        self.assertEqual(run(cli.cmd_role, FakeCoordinator(leader=True)), (cli.EXIT_OK, "leader\n"))
        self.assertEqual(run(cli.cmd_role, FakeCoordinator(leader=False)), (cli.EXIT_NOT_LEADER, "follower\n"))


class MainTest(unittest.TestCase):
    def test_missing_environment_is_reported(self) -> None:
        stderr = io.StringIO()
        with mock.patch.dict(os.environ, {}, clear=True), redirect_stderr(stderr):
            code = cli.main(["role"])
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertIn("TRAVIS_BUILD_ID", stderr.getvalue())

    def test_role_from_environment(self) -> None:
        env = {"TRAVIS_BUILD_ID": "1", "TRAVIS_JOB_NUMBER": "3.2"}
        buffer = io.StringIO()
        with mock.patch.dict(os.environ, env, clear=True), redirect_stdout(buffer), redirect_stderr(io.StringIO()):
            code = cli.main(["role"])
        self.assertEqual(code, cli.EXIT_NOT_LEADER)
        self.assertEqual(buffer.getvalue(), "follower\n")

    def test_unusable_log_path_is_reported(self) -> None:
        with TemporaryDirectory() as temp_dir:
            blocker = Path(temp_dir) / "blocker"
            blocker.write_text("not a directory", encoding="utf-8")
            env = {
                "TRAVIS_BUILD_ID": "1",
                "TRAVIS_JOB_NUMBER": "3.2",
                "LEADER_LOG_PATH": str(blocker / "logs" / "matrixgate.log"),
            }
            stderr = io.StringIO()
            with mock.patch.dict(os.environ, env, clear=True), redirect_stdout(io.StringIO()), redirect_stderr(stderr):
                code = cli.main(["role"])
        self.assertEqual(code, cli.EXIT_ERROR)
        self.assertIn("cannot open log", stderr.getvalue())


class OverridesTest(unittest.TestCase):
    def setUp(self) -> None:
        self.config = AppConfig(
            build_id="1",
            job_number="1.1",
            poll=PollConfig(interval_seconds=5, max_wait_seconds=900),
        )

    def test_no_flags_keeps_config(self) -> None:
        args = argparse.Namespace(command="status")
        self.assertIs(cli._apply_overrides(self.config, args), self.config)

    def test_interval_only(self) -> None:
        args = build_parser().parse_args(["wait", "--interval", "20"])
        config = cli._apply_overrides(self.config, args)
        self.assertEqual(config.poll, PollConfig(interval_seconds=20, max_wait_seconds=900))
        self.assertEqual(config.build_id, "1")

    def test_max_wait_only(self) -> None:
        args = build_parser().parse_args(["wait", "--max-wait", "60"])
        config = cli._apply_overrides(self.config, args)
        self.assertEqual(config.poll, PollConfig(interval_seconds=5, max_wait_seconds=60))


if __name__ == "__main__":
    unittest.main()
