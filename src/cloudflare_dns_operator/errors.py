"""Error taxonomy for the operator.

Every error raised while reconciling a CloudflareDNSRecord carries a ``reason``
(used verbatim as the ``Synced`` condition reason) and a ``retryable`` flag.
Nothing here is fatal to the process: the reconciler catches ``OperatorError``
at its boundary and turns it into a condition.
"""

from __future__ import annotations

from typing import Optional


class OperatorError(Exception):
    """Base class for all errors surfaced on a resource's conditions."""

    reason = "Error"
    retryable = True

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidSpec(OperatorError):
    """The resource spec cannot be parsed into a DesiredRecord."""

    reason = "InvalidSpec"


# =============================================================================
# Resolution layer
# =============================================================================


class ResolutionError(OperatorError):
    """A content/zone indirection could not be resolved (yet)."""


class ReferenceNotFound(ResolutionError):
    reason = "ReferenceNotFound"


class ReferencePermissionDenied(ResolutionError):
    reason = "ReferencePermissionDenied"


class NoAddressAvailable(ResolutionError):
    reason = "NoAddressAvailable"


# =============================================================================
# Provider layer
# =============================================================================


class ProviderError(OperatorError):
    """An error returned by (or while talking to) the DNS provider API."""

    reason = "ProviderError"


class ProviderUnavailable(ProviderError):
    reason = "ProviderUnavailable"


class ProviderRateLimited(ProviderError):
    reason = "ProviderRateLimited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderAuthError(ProviderError):
    reason = "ProviderAuthError"


class ProviderConflict(ProviderError):
    reason = "ProviderConflict"


class ProviderNotFound(ProviderError):
    reason = "ProviderNotFound"


class ProviderRejected(ProviderError):
    """A 4xx response that is none of the above (bad content, bad TTL, ...)."""

    reason = "ProviderRejected"


# =============================================================================
# Cluster layer
# =============================================================================


class ClusterError(OperatorError):
    reason = "ClusterError"


class ClusterUnavailable(ClusterError):
    reason = "ClusterUnavailable"


class ClusterForbidden(ClusterError):
    reason = "ClusterForbidden"


class ClusterWriteError(ClusterError):
    """Persisting a finalizer or status failed; the reconcile must be redone."""

    reason = "ClusterWriteError"
