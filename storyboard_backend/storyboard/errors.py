"""
Storyboard error types.

ValidationError is raised before any provider call. ProviderError and
ParseError come out of single provider calls; the retry wrapper turns a
spent retry budget into ExhaustedRetries. Cancelled marks a normal early
stop, not a failure.
"""


class StoryboardError(Exception):
    """Base exception for all storyboard errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(StoryboardError):
    """Bad or missing run input."""
    pass


class ProviderError(StoryboardError):
    """Network or service failure from a single provider call."""
    pass


class ParseError(StoryboardError):
    """Provider answered, but not with the JSON shape we asked for."""
    pass


class ExhaustedRetries(StoryboardError):
    """Every attempt of a retried call failed."""

    def __init__(self, last_error: Exception, attempts: int):
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            {"attempts": attempts, "last_error_type": type(last_error).__name__},
        )
        self.last_error = last_error
        self.attempts = attempts


class Cancelled(StoryboardError):
    pass


class RunActiveError(StoryboardError):
    """A run is in progress, so the requested action is not allowed."""
    pass


class SceneBusyError(StoryboardError):
    """The scene already has a render outstanding."""

    def __init__(self, scene_number: int):
        super().__init__(f"Scene {scene_number} is already rendering", {"scene_number": scene_number})
        self.scene_number = scene_number


class SceneNotFoundError(StoryboardError):

    def __init__(self, scene_number: int):
        super().__init__(f"Scene {scene_number} not found", {"scene_number": scene_number})
        self.scene_number = scene_number
