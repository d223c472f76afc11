"""Exception hierarchy for the content pipeline."""

from __future__ import annotations


class TechHelpError(Exception):
    """Base class for every error raised by this package."""


class CapabilityError(TechHelpError):
    """The generation service answered with a non-success status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body[:200]
        super().__init__(f"Generation service error {status_code}: {self.body}")


class StructuredOutputError(TechHelpError):
    """The model did not return a payload matching the requested schema."""


class LongRunningJobError(TechHelpError):
    """A long-running research job ended in a failed state."""


class LongRunningTimeout(LongRunningJobError):
    """A long-running research job exceeded its wall-clock cap."""


class SlugConflictError(TechHelpError):
    """An article insert collided with an existing slug."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"Slug already exists: {slug}")


class InvalidTransitionError(TechHelpError):
    """A pipeline run was asked to move backwards or leave a terminal state."""


class NotFoundError(TechHelpError):
    """A referenced row does not exist."""


class AutomationDisabledError(TechHelpError):
    """A scheduled trigger fired while its automation is switched off."""
