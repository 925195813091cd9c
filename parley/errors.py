"""
Error kinds raised across parley.

Everything derives from ParleyError so the HTTP layer and the service
entry points can map failures to responses in one place.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base for all parley errors."""


class NoResponseError(ParleyError):
    """The router deliberately declined to answer a post."""

    def __init__(self, message: str = "not responding"):
        super().__init__(message)


class UsageRestrictionError(ParleyError):
    """Admission denied by a bot's channel or user access rules."""


class AlreadyStreamingError(ParleyError):
    """A live stream already exists for the post."""

    def __init__(self, post_id: str = ""):
        self.post_id = post_id
        super().__init__("already streaming to post")


class LLMError(ParleyError):
    """Provider failed or returned something unusable."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class LLMTimeoutError(LLMError):
    """No data from the provider within the streaming timeout."""

    def __init__(self, message: str = "timeout streaming"):
        super().__init__(message)


class TooManyFunctionCallsError(LLMError):
    """The model kept calling tools past the recursion cap."""

    def __init__(self, message: str = "too many function calls"):
        super().__init__(message)


class ToolResolveError(ParleyError):
    """A tool could not be found or its resolver failed."""


class PermissionLostError(ParleyError):
    """The requester no longer has access to referenced material."""


class JobAlreadyRunningError(ParleyError):
    """A reindex job is already running; carries the current status."""

    def __init__(self, status=None):
        self.status = status
        super().__init__("job already running")


class JobNotRunningError(ParleyError):
    """Cancel requested for a job that is not running."""

    def __init__(self, message: str = "not running"):
        super().__init__(message)


class IndexStoreError(ParleyError):
    """Vector store or embedding I/O failed."""


class TemplateNotFoundError(ParleyError):
    """No prompt template registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"template not found: {name}")


class InvalidPresetError(ParleyError):
    """Unknown channel-interval preset prompt."""

    def __init__(self, preset: str = ""):
        self.preset = preset
        super().__init__("invalid preset prompt")


class HostError(ParleyError):
    """The host platform rejected or failed a request."""


class NotFoundError(HostError):
    """The host has no object with the requested ID."""
