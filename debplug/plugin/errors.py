"""
Plugin Engine Errors.

Every failure the lifecycle engine can report derives from PluginError, so
callers that only care about "did it work" can catch a single type.

Validation errors (InvalidRequest and its subclasses) are raised before any
I/O happens. Everything else is raised from inside a running operation and
reaches the caller through the task future and the notification sink.
"""


class PluginError(Exception):
    """Base exception for plugin-related errors."""

    pass


class InvalidRequest(PluginError):
    """Raised when caller input is malformed."""

    pass


class InvalidReference(InvalidRequest):
    """Raised when a repository URL does not look like github.com/<owner>/<repo>."""

    pass


class TemplateNotFound(PluginError):
    """Raised when a hub template cannot be read."""

    pass


class NotFound(PluginError):
    """Raised when the release source reports a missing repository."""

    pass


class ReleaseNotFound(NotFound):
    """Raised when the requested tag has no release."""

    pass


class RateLimited(PluginError):
    """Raised when the release source refuses the request (HTTP 403)."""

    pass


class UpstreamError(PluginError):
    """Raised for any other remote-service failure."""

    pass


class NoCompatibleArtifact(PluginError):
    """Raised when no package matches the host architecture."""

    pass


class AmbiguousArtifact(PluginError):
    """Raised when more than one package matches the host architecture."""

    pass


class PayloadTooLarge(PluginError):
    """Raised when a download exceeds its size ceiling."""

    pass


class IntegrityFailure(PluginError):
    """Raised when a package does not match its published checksum."""

    pass


class MalformedDescriptor(PluginError):
    """Raised when plugin.config.js is missing or has no name."""

    pass


class AlreadyInstalled(PluginError):
    """Raised when the requested tag is already the installed one."""

    pass


class PackageManagerFailure(PluginError):
    """Raised when dpkg exits non-zero or times out."""

    pass


class HookFailure(PluginError):
    """Raised when a lifecycle hook fails or times out."""

    pass


class PluginNotFound(PluginError):
    """Raised when the named plugin is not installed."""

    pass
