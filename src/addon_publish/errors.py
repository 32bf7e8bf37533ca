"""
Publish pipeline error classes.

Provides the error taxonomy of the publish pipeline. Every error that escapes
a pipeline stage carries the name of that stage, so the CLI can report
exactly where publishing stopped and that no later side effect happened.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import BuildOutcome


class PipelineError(Exception):
    """
    Base class for all publish pipeline errors.

    ``stage`` is filled in by the pipeline when the error leaves a stage;
    components raising the error leave it unset.
    """

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


# Validation --------------------------------------------------------------

class ValidationError(PipelineError):
    """
    The manifest is invalid. Local, never retried, fixed by editing the manifest.
    """
    pass


class MissingField(ValidationError):
    """A required manifest field is absent or empty."""

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}")
        self.field = field


class InvalidIdentifier(ValidationError):
    """The add-on id uses characters outside lowercase alnum + hyphen."""

    def __init__(self, identifier: str):
        super().__init__(
            f"Invalid add-on id '{identifier}': only lowercase letters, digits and "
            "single hyphens are allowed"
        )
        self.identifier = identifier


class InvalidVersion(ValidationError):
    """The version is not a semantic version."""

    def __init__(self, version: str):
        super().__init__(f"Invalid version '{version}': expected a semantic version (e.g. 1.2.3)")
        self.version = version


class MissingBuildFile(ValidationError):
    """An architecture target points at a Dockerfile that does not exist."""

    def __init__(self, tag: str, path: str):
        super().__init__(f"Dockerfile for architecture {tag} not found: {path}")
        self.tag = tag
        self.path = path


class InvalidManifest(ValidationError):
    """Any other structural problem with the manifest."""
    pass


# Authentication ----------------------------------------------------------

class AuthError(PipelineError):
    """
    Authentication failed. Retried only by re-invoking the login flow.
    """
    pass


class AuthTimeout(AuthError):
    """The interactive login did not complete in time."""

    def __init__(self, timeout_s: float):
        super().__init__(f"Login did not complete within {timeout_s:g}s")
        self.timeout_s = timeout_s


class AuthDenied(AuthError):
    """The identity provider refused the login or refresh."""
    pass


# Ownership ---------------------------------------------------------------

class ConflictError(PipelineError):
    """
    The add-on belongs to a different account. Fatal, not retried.
    """
    pass


class NotOwner(ConflictError):
    """Raised when the catalog lists another account as owner of the add-on."""

    def __init__(self, addon_id: str, owner: str):
        super().__init__(f"Add-on '{addon_id}' is owned by another account ({owner})")
        self.addon_id = addon_id
        self.owner = owner


# Build -------------------------------------------------------------------

class BuildError(PipelineError):
    """
    Base class for build errors.

    Raised when:
    - the build engine reports a failure for one architecture
    - the aggregate Building stage result contains any failure
    """
    pass


class TransientPushError(BuildError):
    """
    Push failed for a reason worth retrying once.

    Raised when:
    - registry rate limiting (HTTP 429, "toomanyrequests")
    - connection resets / timeouts while uploading layers
    """
    pass


class BuildLogicError(BuildError):
    """
    Build failed for a reason a retry cannot fix (Dockerfile syntax, failing RUN step).
    """
    pass


class BuildFailed(BuildError):
    """
    Aggregate failure of the Building stage.

    ``outcomes`` lists every architecture's result, including the ones that
    succeeded or were never started, ordered by architecture tag.
    """

    def __init__(self, outcomes: List["BuildOutcome"]):
        failed = [o.tag for o in outcomes if o.status == "failed"]
        super().__init__(f"Build failed for architecture(s): {', '.join(failed) or 'none'}")
        self.outcomes = outcomes

    @property
    def failed_tags(self) -> List[str]:
        return [o.tag for o in self.outcomes if o.status == "failed"]


# Resolve -----------------------------------------------------------------

class ResolveError(PipelineError):
    """
    A pushed image could not be confirmed in the destination registry.
    """
    pass


class ImageNotVisible(ResolveError):
    """The image never became visible within the retry budget."""

    def __init__(self, tag: str, ref: Optional[str] = None):
        detail = f" ({ref})" if ref else ""
        super().__init__(f"Image for architecture {tag} is not visible in the registry{detail}")
        self.tag = tag
        self.ref = ref


# Publish -----------------------------------------------------------------

class PublishError(PipelineError):
    """
    The catalog did not record the new version. Requires user action.
    """
    pass


class CatalogRejected(PublishError):
    """The catalog rejected the publish request (duplicate version, stale ownership)."""

    def __init__(self, reason: str):
        super().__init__(f"Catalog rejected the publish request: {reason}")
        self.reason = reason


class CatalogUnavailable(PipelineError):
    """
    The catalog could not be reached or answered unexpectedly.

    Not a rejection: the same request may be retried once the service is back.
    """
    pass


# Cancellation ------------------------------------------------------------

class PipelineCancelled(PipelineError):
    """The user interrupted the pipeline before it published anything."""

    def __init__(self, message: str = "Publishing cancelled by user", *, stage: Optional[str] = None):
        super().__init__(message, stage=stage)


__all__ = [
    "PipelineError",
    "ValidationError",
    "MissingField",
    "InvalidIdentifier",
    "InvalidVersion",
    "MissingBuildFile",
    "InvalidManifest",
    "AuthError",
    "AuthTimeout",
    "AuthDenied",
    "ConflictError",
    "NotOwner",
    "BuildError",
    "TransientPushError",
    "BuildLogicError",
    "BuildFailed",
    "ResolveError",
    "ImageNotVisible",
    "PublishError",
    "CatalogRejected",
    "CatalogUnavailable",
    "PipelineCancelled",
]
