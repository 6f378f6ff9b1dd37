from __future__ import annotations


class MatrixGateError(RuntimeError):
    default_message = "matrixgate failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class GenericError(MatrixGateError):
    pass


class ConfigError(GenericError):
    pass


class NotLeaderError(MatrixGateError):
    default_message = "This job is not the leader"


class BuildNotFoundError(MatrixGateError):
    default_message = "This build does not exist"

    def __init__(self, build_id: str | None = None) -> None:
        self.build_id = build_id
        message = f"Build {build_id} does not exist" if build_id else None
        super().__init__(message)


class FailedBuildsError(MatrixGateError):
    default_message = "Some builds failed"

    def __init__(self, failed_jobs: list[str] | None = None) -> None:
        self.failed_jobs = list(failed_jobs or [])
        message = None
        if self.failed_jobs:
            message = f"Some builds failed: {', '.join(self.failed_jobs)}"
        super().__init__(message)


class WaitTimeoutError(MatrixGateError):
    default_message = "Timed out waiting for other jobs"

    def __init__(self, waited_seconds: float | None = None) -> None:
        self.waited_seconds = waited_seconds
        message = None
        if waited_seconds is not None:
            message = f"Timed out after {waited_seconds:.0f}s waiting for other jobs"
        super().__init__(message)


class WaitCancelledError(MatrixGateError):
    default_message = "Wait for other jobs was cancelled"
