"""Error kinds surfaced by the adherence core.

Collaborator adapters raise StoreError for any transport or store failure.
The core never lets a StoreError reach a presentation layer: it is caught at
the read or mutation boundary and converted to one of the CoreError kinds
below, with the original exception kept on `.original` and as `__cause__`.

No CoreError is fatal to the process. Each one is local to a single mutation
or a single cache scope.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised by remote store, attachment store and feed adapters."""


class MutationStateError(Exception):
    """Raised on an illegal mutation state-machine transition."""


class CoreError(Exception):
    """Base class for errors the core surfaces to callers."""

    retryable: bool = False

    def __init__(self, message: str, original: BaseException | None = None) -> None:
        super().__init__(message)
        self.original = original


class RemoteWriteFailed(CoreError):
    """The store rejected a write. The mutation was rolled back."""

    retryable = True


class RemoteReadFailed(CoreError):
    """A scope's fetch failed. Stale data, if any, is kept."""

    retryable = True


class AttachmentFailed(CoreError):
    """Attachment upload or its metadata insert failed. Nothing was committed."""

    retryable = True


class NotAuthenticated(CoreError):
    """No active subject. Core operations refuse to run."""


class InvalidMutation(CoreError):
    """The requested mutation is not allowed for the target slot."""
