from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PipelineErrorCode:
    code: str
    message: str


FEED_001_FETCH_FAILED = PipelineErrorCode(
    "FEED_001_FETCH_FAILED",
    "Feed could not be retrieved.",
)
FEED_002_MALFORMED = PipelineErrorCode(
    "FEED_002_MALFORMED",
    "Feed body could not be parsed.",
)
STORE_001_DUPLICATE = PipelineErrorCode(
    "STORE_001_DUPLICATE",
    "Event already stored for this organization and URL.",
)
STORE_002_WRITE_FAILED = PipelineErrorCode(
    "STORE_002_WRITE_FAILED",
    "Event or alert write failed.",
)
ANALYZER_001_TIMEOUT = PipelineErrorCode(
    "ANALYZER_001_TIMEOUT",
    "Model call timed out.",
)
ANALYZER_002_PROVIDER = PipelineErrorCode(
    "ANALYZER_002_PROVIDER",
    "Model provider failed or returned an unusable response.",
)
ANALYZER_003_UNAVAILABLE = PipelineErrorCode(
    "ANALYZER_003_UNAVAILABLE",
    "No model client is configured.",
)
PIPE_STORE_UNREACHABLE = PipelineErrorCode(
    "PIPE_STORE_UNREACHABLE",
    "Event store is unreachable.",
)
PIPE_RUN_LOCKED = PipelineErrorCode(
    "PIPE_RUN_LOCKED",
    "Another run holds the lock for this organization.",
)
PIPE_INVALID_REQUEST = PipelineErrorCode(
    "PIPE_INVALID_REQUEST",
    "Request parameters are invalid.",
)


class RiskIntelError(RuntimeError):
    def __init__(self, err: PipelineErrorCode, detail: str = "") -> None:
        suffix = f" detail={detail}" if detail else ""
        super().__init__(f"{err.code}: {err.message}{suffix}")
        self.err = err
        self.detail = detail


class FeedFetchError(RiskIntelError):
    def __init__(self, err: PipelineErrorCode, detail: str = "", *, error_type: str = "network_error",
                 http_status: int | None = None) -> None:
        super().__init__(err, detail)
        self.error_type = error_type
        self.http_status = http_status


class StoreConflictError(RiskIntelError):
    pass


class AnalyzerError(RiskIntelError):
    pass


class AnalyzerTimeoutError(AnalyzerError):
    pass


class AnalyzerProviderError(AnalyzerError):
    pass


class PersistenceError(RiskIntelError):
    pass


class PipelineFatalError(RiskIntelError):
    pass


class InvalidRequestError(RiskIntelError):
    def __init__(self, detail: str) -> None:
        super().__init__(PIPE_INVALID_REQUEST, detail)


class RunLockError(RiskIntelError):
    def __init__(self, detail: str) -> None:
        super().__init__(PIPE_RUN_LOCKED, detail)
