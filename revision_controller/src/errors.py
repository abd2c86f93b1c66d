from __future__ import annotations

from kubernetes.client import ApiException


class RevisionControllerError(RuntimeError):
    """Base class for errors raised by the revision controller."""


class NotFoundError(RevisionControllerError):
    """A required ConfigMap or Secret (or its revision snapshot) does not exist.

    The message follows the apiserver's NotFound wording, with the namespace
    appended when one is known.
    """

    def __init__(self, resource: str, name: str, namespace: str | None = None) -> None:
        self.resource = resource
        self.name = name
        self.namespace = namespace
        message = f'{resource} "{name}" not found'
        if namespace:
            message += f' in namespace "{namespace}"'
        super().__init__(message)


class StatusUpdateConflictError(RevisionControllerError):
    """The operator status was modified concurrently; the write must be retried."""


class SyntheticRequeueError(RevisionControllerError):
    """Requeue was requested without a concrete error so backoff still applies."""

    def __init__(self, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(f"synthetic requeue request (err: {cause})")


def is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundError):
        return True
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def not_found_message(exc: BaseException, resource: str, name: str) -> str:
    """Return a NotFound message for *exc*, matching the apiserver's wording."""
    if isinstance(exc, NotFoundError):
        return str(exc)
    return str(NotFoundError(resource, name))
