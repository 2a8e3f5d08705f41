"""Error taxonomy shared by the router, supervisor and HTTP layer.

Every request-level failure carries an ``error_class`` code and the HTTP
status the transport answers with. Run-local failures (DecodeError,
TerminateError) are logged where they happen and never reach a caller.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for typed runhub failures."""

    error_class = "HUB_ERROR"
    http_status = 500


class SpawnError(HubError):
    """The test process could not be started."""

    error_class = "SPAWN_FAILED"
    http_status = 500


class DecodeError(HubError):
    """A line from the event stream is not a valid event."""

    error_class = "DECODE_FAILED"
    http_status = 400

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class UnknownRun(HubError):
    error_class = "RUN_NOT_FOUND"
    http_status = 404

    def __init__(self, run_id: str):
        super().__init__(f"No test run found with ID {run_id}.")
        self.run_id = run_id


class NoRunInProgress(HubError):
    error_class = "NO_RUN_IN_PROGRESS"
    http_status = 400

    def __init__(self):
        super().__init__("No test run in progress.")


class NothingToRun(HubError):
    error_class = "NOTHING_TO_RUN"
    http_status = 400

    def __init__(self):
        super().__init__("No failed tests to run.")


class RunLimitExceeded(HubError):
    error_class = "RUN_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, limit: int):
        super().__init__(
            f"A maximum of {limit} concurrent test run(s) is already in progress."
        )
        self.limit = limit


class TerminateError(HubError):
    """Signal delivery to a test process failed."""

    error_class = "TERMINATE_FAILED"


class HubConfigError(HubError):
    """Raised on config validation failure. Fail-closed."""

    error_class = "CONFIG_INVALID"


class InvalidRequest(HubError):
    """The request payload does not have the expected shape."""

    error_class = "INVALID_REQUEST"
    http_status = 400
