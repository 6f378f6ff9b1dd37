from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Protocol

from .app_logging import log_with_fields
from .config import AppConfig
from .errors import (
    BuildNotFoundError,
    FailedBuildsError,
    GenericError,
    MatrixGateError,
    NotLeaderError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .models import Matrix, is_leader
from .remote import BuildStatusClient


class BuildSource(Protocol):
    def get_build(self, build_id: str) -> dict[str, Any]: ...


class Coordinator:
    """Leader-side barrier over the build matrix of one CI build.

    Every call to `fetch_matrix` reads the remote state again; nothing is
    cached between polls. `wait_for_others` blocks the leader until every
    peer job has finished, sleeping on `stop_event` between polls so the wait
    can be cancelled from another thread.
    """

    def __init__(
        self,
        config: AppConfig,
        source: BuildSource,
        *,
        logger: logging.Logger | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.source = source
        self.logger = logger or logging.getLogger("matrixgate")
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        source: BuildSource | None = None,
        logger: logging.Logger | None = None,
        stop_event: threading.Event | None = None,
    ) -> Coordinator:
        return cls(
            config,
            source or BuildStatusClient(config.api),
            logger=logger,
            stop_event=stop_event,
        )

    def is_leader(self) -> bool:
        return is_leader(self.config.job_number)

    def fetch_matrix(self) -> Matrix:
        build_id = self.config.build_id
        try:
            payload = self.source.get_build(build_id)
        except BuildNotFoundError:
            log_with_fields(self.logger, logging.ERROR, "build_not_found", build_id=build_id)
            raise
        except MatrixGateError as exc:
            log_with_fields(self.logger, logging.ERROR, "fetch_failed", build_id=build_id, error=str(exc))
            raise
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "fetch_failed", build_id=build_id, error=str(exc))
            raise GenericError(f"request for build {build_id} failed: {exc}") from exc

        try:
            matrix = Matrix.from_payload(payload)
        except ValueError as exc:
            log_with_fields(self.logger, logging.ERROR, "fetch_failed", build_id=build_id, error=str(exc))
            raise GenericError(f"invalid payload for build {build_id}: {exc}") from exc

        others = matrix.others()
        log_with_fields(
            self.logger,
            logging.INFO,
            "matrix_fetched",
            build_id=matrix.build_id,
            jobs=len(matrix.jobs),
            peers=len(others),
            peers_finished=sum(1 for job in others if job.is_finished()),
        )
        return matrix

    def _check_can_fetch(self, started: float, deadline: float | None) -> None:
        if self.stop_event.is_set():
            log_with_fields(self.logger, logging.WARNING, "wait_cancelled", job_number=self.config.job_number)
            raise WaitCancelledError()
        now = self.clock()
        if deadline is not None and now >= deadline:
            log_with_fields(self.logger, logging.ERROR, "wait_timed_out", waited_seconds=round(now - started, 3))
            raise WaitTimeoutError(now - started)

    def _sleep_before_next_poll(self, matrix: Matrix, started: float, deadline: float | None) -> None:
        delay = float(self.config.poll.interval_seconds)
        if deadline is not None:
            remaining = deadline - self.clock()
            if remaining <= 0:
                waited = self.clock() - started
                log_with_fields(self.logger, logging.ERROR, "wait_timed_out", waited_seconds=round(waited, 3))
                raise WaitTimeoutError(waited)
            delay = min(delay, remaining)

        log_with_fields(
            self.logger,
            logging.INFO,
            "waiting_for_peers",
            pending=matrix.pending(),
            delay_seconds=delay,
        )
        if self.stop_event.wait(delay):
            log_with_fields(self.logger, logging.WARNING, "wait_cancelled", job_number=self.config.job_number)
            raise WaitCancelledError()

    def wait_for_others(self, *, max_wait_seconds: float | None = None) -> Matrix:
        """Block until all peer jobs finish and return the confirming snapshot.

        Raises NotLeaderError without any request when this job is not the
        leader, FailedBuildsError when a peer did not succeed, and lets fetch
        errors propagate on the first occurrence.
        """
        leader = self.is_leader()
        log_with_fields(
            self.logger,
            logging.INFO,
            "role_checked",
            job_number=self.config.job_number,
            leader=leader,
        )
        if not leader:
            raise NotLeaderError()

        if max_wait_seconds is None:
            max_wait_seconds = self.config.poll.max_wait_seconds
        started = self.clock()
        deadline = None if max_wait_seconds is None else started + max_wait_seconds

        while True:
            self._check_can_fetch(started, deadline)
            matrix = self.fetch_matrix()
            if matrix.others_finished():
                break
            self._sleep_before_next_poll(matrix, started, deadline)

        log_with_fields(self.logger, logging.INFO, "peers_finished", build_id=matrix.build_id)
        # Re-read so the results match the latest state of every peer.
        matrix = self.fetch_matrix()
        if not matrix.others_succeeded():
            failed = matrix.failed()
            log_with_fields(self.logger, logging.WARNING, "peers_failed", build_id=matrix.build_id, failed=failed)
            raise FailedBuildsError(failed)

        log_with_fields(self.logger, logging.INFO, "peers_succeeded", build_id=matrix.build_id)
        return matrix
