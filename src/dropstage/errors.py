"""Error taxonomy for staging and download calls.

Every fatal error raised by the core derives from :class:`StagingError` so
the CLI can report a single failure. The subclasses separate the phases a
user cares about: the image could not be rendered, the engine could not be
reached, the application failed to build, or the build finished without the
expected artifact.
"""

from __future__ import annotations


class StagingError(Exception):
    """Base class for all fatal staging errors."""


class ConfigError(StagingError):
    """Local application config (``local.yml``) is malformed."""


class TemplateError(StagingError):
    """The image definition could not be rendered."""


class EngineError(StagingError):
    """A container engine call failed (transport or daemon rejection)."""

    def __init__(self, operation: str, message: str, *, status: int | None = None) -> None:
        self.operation = operation
        self.status = status
        self.message = message
        detail = f"{operation} failed"
        if status is not None:
            detail += f" ({status})"
        super().__init__(f"{detail}: {message}")


class ImageBuildError(EngineError):
    """The engine reported an error while building the staging image."""

    def __init__(self, message: str) -> None:
        super().__init__("image build", message)


class ExitStatusError(StagingError):
    """The build pipeline exited non-zero."""

    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"container exited with status {status}")


class ExtractionError(StagingError):
    """The container finished but the expected output was not there."""

    def __init__(self, path: str, reason: str = "not found") -> None:
        self.path = path
        super().__init__(f"{path}: {reason}")
