"""Managed-system API: create/read/update/delete keyed by identity.

The reconciler only ever talks to a ClusterClient. KubernetesClusterClient
implements it on top of the kubernetes-asyncio dynamic client, so any kind
the API server knows (including CRDs) can be managed without per-kind code.

Errors are mapped into a small taxonomy the executor and loop act on:
- TransientAPIError: timeouts, 429, 5xx, connection failures (retried)
- PermanentAPIError: other 4xx, unknown kinds (resource fails, no retry)
- DriftConflictError: 409, the object changed since it was observed (re-diff)
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.client import ApiClient
from kubernetes_asyncio.client.exceptions import ApiException
from kubernetes_asyncio.dynamic import DynamicClient
from kubernetes_asyncio.dynamic.exceptions import (
    DynamicApiError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)

from .models import ResourceIdentity

logger = logging.getLogger(__name__)

# Merge patch keeps fields the desired payload does not mention
UPDATE_CONTENT_TYPE = "application/merge-patch+json"

# Dependents are garbage collected by the API server after the owner is gone
DELETE_PROPAGATION_POLICY = "Background"


class ClusterAPIError(Exception):
    """Base class for managed-system API failures."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientAPIError(ClusterAPIError):
    """Network failure, timeout, rate limit or server error. Safe to retry."""

    pass


class PermanentAPIError(ClusterAPIError):
    """Rejected request (invalid payload, unknown kind, forbidden). Retrying won't help."""

    pass


class DriftConflictError(ClusterAPIError):
    """The object changed between observation and apply."""

    pass


def classify_status(status: int | None, message: str) -> ClusterAPIError:
    """Map an HTTP status to the error taxonomy."""
    if status is None or status == 429 or status >= 500:
        return TransientAPIError(message, status)
    if status == 409:
        return DriftConflictError(message, status)
    return PermanentAPIError(message, status)


class ClusterClient(Protocol):
    """Operations the reconciler needs from the managed system."""

    async def read(self, identity: ResourceIdentity, api_version: str) -> dict[str, Any] | None:
        """Current object, or None if it does not exist."""
        ...

    async def create(
        self, identity: ResourceIdentity, api_version: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Create the object; returns it as stored by the server."""
        ...

    async def update(
        self, identity: ResourceIdentity, api_version: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Update the declared fields; returns the object as stored by the server."""
        ...

    async def delete(self, identity: ResourceIdentity, api_version: str) -> None:
        """Delete the object. Deleting an absent object is not an error."""
        ...

    async def close(self) -> None: ...


class KubernetesClusterClient:
    """ClusterClient over the kubernetes-asyncio dynamic client.

    Use connect() to build one: it loads in-cluster credentials when running
    in a pod, otherwise the kubeconfig (optionally a specific context).
    """

    def __init__(self, api_client: ApiClient, dynamic: DynamicClient) -> None:
        self._api_client = api_client
        self._dynamic = dynamic

    @classmethod
    async def connect(
        cls,
        kubeconfig: str | None = None,
        context: str | None = None,
    ) -> KubernetesClusterClient:
        """Load credentials and discover the API server's resources.

        Raises:
            PermanentAPIError: If no usable configuration is found.
            TransientAPIError: If the API server cannot be reached.
        """
        try:
            if kubeconfig is None and context is None:
                try:
                    k8s_config.load_incluster_config()
                    logger.info("Cluster client configured from in-cluster service account")
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config()
                    logger.info("Cluster client configured from kubeconfig")
            else:
                await k8s_config.load_kube_config(config_file=kubeconfig, context=context)
                logger.info(
                    "Cluster client configured from kubeconfig",
                    extra={"kubeconfig": kubeconfig, "context": context},
                )
        except k8s_config.ConfigException as e:
            raise PermanentAPIError(f"No usable cluster configuration: {e}") from e

        api_client = ApiClient()
        try:
            dynamic = await DynamicClient(api_client)
        except (aiohttp.ClientError, OSError) as e:
            await api_client.close()
            raise TransientAPIError(f"Cannot reach the API server: {e}") from e
        return cls(api_client, dynamic)

    async def close(self) -> None:
        await self._api_client.close()

    async def read(self, identity: ResourceIdentity, api_version: str) -> dict[str, Any] | None:
        api = await self._resource(identity, api_version)
        try:
            obj = await api.get(name=identity.name, namespace=self._namespace(api, identity))
        except (DynamicApiError, ApiException) as e:
            if e.status == 404:
                return None
            raise self._translate(e, "read", identity) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientAPIError(f"read {identity}: {e}") from e
        return obj.to_dict()

    async def create(
        self, identity: ResourceIdentity, api_version: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        api = await self._resource(identity, api_version)
        try:
            obj = await api.create(body=payload, namespace=self._namespace(api, identity))
        except (DynamicApiError, ApiException) as e:
            raise self._translate(e, "create", identity) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientAPIError(f"create {identity}: {e}") from e
        logger.debug("Created object", extra={"identity": str(identity)})
        return obj.to_dict()

    async def update(
        self, identity: ResourceIdentity, api_version: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        api = await self._resource(identity, api_version)
        try:
            obj = await api.patch(
                body=payload,
                name=identity.name,
                namespace=self._namespace(api, identity),
                content_type=UPDATE_CONTENT_TYPE,
            )
        except (DynamicApiError, ApiException) as e:
            raise self._translate(e, "update", identity) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientAPIError(f"update {identity}: {e}") from e
        logger.debug("Updated object", extra={"identity": str(identity)})
        return obj.to_dict()

    async def delete(self, identity: ResourceIdentity, api_version: str) -> None:
        api = await self._resource(identity, api_version)
        try:
            await api.delete(
                name=identity.name,
                namespace=self._namespace(api, identity),
                body={"propagationPolicy": DELETE_PROPAGATION_POLICY},
            )
        except (DynamicApiError, ApiException) as e:
            if e.status == 404:
                return
            raise self._translate(e, "delete", identity) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientAPIError(f"delete {identity}: {e}") from e
        logger.debug("Deleted object", extra={"identity": str(identity)})

    async def _resource(self, identity: ResourceIdentity, api_version: str) -> Any:
        if not api_version:
            raise PermanentAPIError(f"No apiVersion known for {identity}")
        try:
            return await self._dynamic.resources.get(api_version=api_version, kind=identity.kind)
        except (ResourceNotFoundError, ResourceNotUniqueError) as e:
            raise PermanentAPIError(
                f"Kind {identity.kind} ({api_version}) is not served by the cluster: {e}"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransientAPIError(f"discovery for {identity.kind}: {e}") from e

    @staticmethod
    def _namespace(api: Any, identity: ResourceIdentity) -> str | None:
        # Discovery knows the scope of every served kind, CRDs included
        return identity.namespace if api.namespaced else None

    @staticmethod
    def _translate(
        error: DynamicApiError | ApiException, operation: str, identity: ResourceIdentity
    ) -> ClusterAPIError:
        status = getattr(error, "status", None)
        reason = getattr(error, "reason", None) or str(error)
        return classify_status(status, f"{operation} {identity} failed ({status}): {reason}")
