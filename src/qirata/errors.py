"""Exception hierarchy shared by the orchestration engine."""


class QirataError(Exception):
    """Base class for all orchestration errors."""


class GenerationError(QirataError):
    """The model gateway failed to produce a usable response."""


class SchemaValidationError(GenerationError):
    """The model answered, but the output did not match the declared schema."""


class SeparationViolation(QirataError):
    """A post draft embeds code inside its main text."""


class StageError(QirataError):
    """Recoverable failure inside a stage; recorded on the state."""


class MissingUpstreamField(QirataError):
    """A stage ran without a field an earlier stage must have produced."""

    def __init__(self, stage: str, field_name: str) -> None:
        super().__init__(f"Stage '{stage}' requires '{field_name}' to be set")
        self.stage = stage
        self.field_name = field_name


class GraphError(QirataError):
    """Broken graph wiring or an illegal state transition."""


class ExecutionCancelled(QirataError):
    """Raised at a suspension point once the session token is cancelled."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "cancelled")
        self.reason = reason


class StreamProtocolError(QirataError):
    """An event was emitted out of the start → content → terminal order."""
