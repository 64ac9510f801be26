from __future__ import annotations


class ReqpulseError(Exception):
    """Base class for every error raised by the observability pipeline."""


class ConfigurationError(ReqpulseError):
    """Invalid metric descriptor or telemetry configuration. Fatal at startup."""


class DuplicateMetricError(ConfigurationError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"metric {name!r} already registered with a different schema: {reason}")
        self.name = name
        self.reason = reason


class MetricMutationError(ReqpulseError):
    """A mutation could not be applied. Logged and skipped, never raised to callers."""


class UnknownMetricError(MetricMutationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"metric {name!r} is not registered")
        self.name = name


class LabelMismatchError(MetricMutationError):
    def __init__(self, name: str, expected: tuple[str, ...], got: tuple[str, ...]) -> None:
        super().__init__(f"metric {name!r} expects labels {list(expected)}, got {list(got)}")
        self.name = name
        self.expected = expected
        self.got = got


class InvalidMutationError(MetricMutationError):
    """Operation not supported by the metric kind, or a value it cannot accept."""


class ExportError(ReqpulseError):
    """A span batch could not be delivered to the trace backend."""


class ShutdownTimeoutError(ReqpulseError):
    """Draining the trace pipeline did not finish within the shutdown timeout."""
