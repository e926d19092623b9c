"""Interfaces to the Kubernetes cluster and the errors it reports."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

from .objects import KubeObject

T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 5
_RETRY_DELAY = 0.01


class ApiError(Exception):
    """An error reported by the Kubernetes API."""


class NotFoundError(ApiError):
    """The requested resource or resource type does not exist."""


class ConflictError(ApiError):
    """The object was modified concurrently; the update was rejected."""


class UnauthorizedError(ApiError):
    """The request was not authorised."""


class HealthStatusCode(str, Enum):
    """Health of a live resource."""

    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    SUSPENDED = "Suspended"
    DEGRADED = "Degraded"
    MISSING = "Missing"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class HealthStatus:
    """Health of a resource with an explanatory message."""

    status: HealthStatusCode
    message: str = ""


HealthCheck = Callable[[KubeObject], "HealthStatus | None"]
"""Computes the health of a live object; None means it has no health."""


@dataclass(frozen=True)
class APIResource:
    """A resource type served by the API server."""

    name: str = ""
    group: str = ""
    version: str = ""
    kind: str = ""
    namespaced: bool = False
    verbs: tuple[str, ...] = ()


class DryRunStrategy(Enum):
    """How a modifying request is dry-run."""

    NONE = "none"
    CLIENT = "client"
    SERVER = "server"


class DeletePropagation(str, Enum):
    """How deletion propagates to dependent objects."""

    ORPHAN = "Orphan"
    BACKGROUND = "Background"
    FOREGROUND = "Foreground"

    def __str__(self) -> str:
        return self.value


class ResourceOperations(ABC):
    """Apply-style operations on manifests. Failures raise ApiError."""

    @abstractmethod
    def apply_resource(
        self,
        obj: KubeObject,
        dry_run: DryRunStrategy,
        force: bool,
        validate: bool,
        server_side: bool,
        manager: str,
    ) -> str:
        """Apply ``obj`` and return a message describing the result."""

    @abstractmethod
    def replace_resource(self, obj: KubeObject, dry_run: DryRunStrategy, force: bool) -> str:
        """Replace ``obj`` and return a message describing the result."""

    @abstractmethod
    def create_resource(self, obj: KubeObject, dry_run: DryRunStrategy, validate: bool) -> str:
        """Create ``obj`` and return a message describing the result."""

    @abstractmethod
    def update_resource(self, obj: KubeObject, dry_run: DryRunStrategy) -> KubeObject:
        """Update ``obj`` and return the stored object."""


class Kubectl(ABC):
    """Reading and deleting single resources. Failures raise ApiError."""

    @abstractmethod
    def get_resource(
        self, group: str, version: str, kind: str, name: str, namespace: str
    ) -> KubeObject | None:
        """Return the named resource."""

    @abstractmethod
    def delete_resource(
        self,
        group: str,
        version: str,
        kind: str,
        name: str,
        namespace: str,
        propagation: DeletePropagation,
    ) -> None:
        """Delete the named resource."""


class ClusterClient(ABC):
    """Discovery and generic object access. Failures raise ApiError."""

    @abstractmethod
    def server_resource(self, group: str, version: str, kind: str, verb: str) -> APIResource:
        """Return the served resource type for the kind; NotFoundError if not served."""

    @abstractmethod
    def get_resource(self, api_resource: APIResource, namespace: str, name: str) -> KubeObject:
        """Return the current state of the named object."""

    @abstractmethod
    def update_resource(self, api_resource: APIResource, obj: KubeObject) -> KubeObject:
        """Store ``obj`` and return the result."""

    @abstractmethod
    def delete_resource(
        self,
        api_resource: APIResource,
        namespace: str,
        name: str,
        propagation: DeletePropagation,
    ) -> None:
        """Delete the named object."""

    @abstractmethod
    def crd_established(self, name: str) -> bool:
        """Whether the named custom resource definition is established."""


def retry_on(
    predicate: Callable[[Exception], bool],
    func: Callable[[], T],
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
) -> T:
    """Call ``func`` until it succeeds, retrying errors that match ``predicate``.

    At most ``attempts`` calls are made; the last error is raised when all fail.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as err:
            if attempt == attempts or not predicate(err):
                raise
        time.sleep(_RETRY_DELAY)
    raise AssertionError("unreachable")