"""Exceptions raised while migrating a PVC, and Kubernetes API error translation."""

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class PVCMigrationError(Exception):
    """Base exception for PVC migration operations."""


class ConfigurationError(PVCMigrationError):
    """Invalid request or options. Raised before anything is mutated."""


class ClusterError(PVCMigrationError):
    """A Kubernetes API call failed."""

    retryable = False

    def __init__(self, action, status=None, reason=None):
        self.action = action
        self.status = status
        self.reason = reason
        detail = f"{status} {reason}" if status else (reason or "no response")
        super().__init__(f"{action} failed: {detail}")


class TransientClusterError(ClusterError):
    """Server-side or throttling error worth retrying."""

    retryable = True


class ClusterConflictError(ClusterError):
    """Object already exists or was modified concurrently."""


class ClusterNotFoundError(ClusterError):
    """Object does not exist."""


class ClusterAuthorizationError(ClusterError):
    """Credentials rejected or not allowed to perform the action."""


class ClaimExistsError(ClusterConflictError):
    """A claim with the requested name already exists."""


class ClaimNotFoundError(ClusterNotFoundError):
    """The claim to delete does not exist."""


class MultipleOwnersError(PVCMigrationError):
    """More than one workload uses the claim; refusing to pick one."""

    def __init__(self, claim, owners):
        self.claim = claim
        self.owners = list(owners)
        names = ", ".join(str(owner) for owner in self.owners)
        super().__init__(f"PVC '{claim}' is used by more than one workload: {names}")


class TransferFailedError(PVCMigrationError):
    """The data copy did not complete successfully."""


class WaitTimedOutError(PVCMigrationError):
    """A bounded wait expired before its condition was met."""


class MigrationLockedError(PVCMigrationError):
    """Another migration holds the lock for this claim."""


class MigrationCancelledError(PVCMigrationError):
    """The operator cancelled the migration."""


class MigrationAbortedError(PVCMigrationError):
    """The migration stopped at a given state; the cause is chained."""

    def __init__(self, state, cause):
        self.state = state
        self.cause = cause
        super().__init__(f"migration aborted during '{state.value}': {cause}")


def translate_api_error(exc, action, conflict=ClusterConflictError, not_found=ClusterNotFoundError):
    """Map an ApiException onto the error taxonomy."""
    status = exc.status
    if not status or status in TRANSIENT_STATUSES:
        return TransientClusterError(action, status, exc.reason)
    if status == 409:
        return conflict(action, status, exc.reason)
    if status == 404:
        return not_found(action, status, exc.reason)
    if status in (401, 403):
        return ClusterAuthorizationError(action, status, exc.reason)
    return ClusterError(action, status, exc.reason)


def api_call(action, func, *args, **kwargs):
    """Invoke a Kubernetes client method, translating ApiException.

    A dropped connection surfaces from urllib3 rather than as an ApiException
    and is reported as transient.
    """
    conflict = kwargs.pop("_conflict", ClusterConflictError)
    not_found = kwargs.pop("_not_found", ClusterNotFoundError)
    try:
        return func(*args, **kwargs)
    except ApiException as e:
        raise translate_api_error(e, action, conflict, not_found) from e
    except HTTPError as e:
        raise TransientClusterError(action, None, str(e)) from e
