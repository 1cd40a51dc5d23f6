"""Cluster client backed by the kubernetes python client.

Objects are read and written through the DynamicClient so that any kind,
including custom resources, can be handled without generated models. Writes
use server-side apply with a dedicated field manager and never force
ownership of fields managed by others, so a conflicting external change is
reported as ApplyConflict instead of being overwritten.

The kubernetes client is synchronous, calls run in a worker thread.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
import logging
import threading
from typing import Any, TypeVar

from kubernetes import config as kube_config
from kubernetes.client import ApiClient, ApiException
from kubernetes.config import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from gitops_sync.exceptions import (
    ApplyConflict,
    ClusterException,
    ClusterUnreachable,
    GitOpsException,
    PermissionDenied,
    RateLimited,
)
from gitops_sync.manifest import NamedResource

from .client import ClusterClient, WatchEvent, WatchEventType

_LOGGER = logging.getLogger(__name__)

__all__ = ["KubernetesCluster", "FIELD_MANAGER"]

FIELD_MANAGER = "gitops-sync"
WATCH_TIMEOUT = 60

_T = TypeVar("_T")


def _retry_after(err: ApiException) -> float | None:
    headers = err.headers or {}
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def translate_api_exception(err: ApiException, action: str) -> ClusterException:
    """Translate an ApiException to an error from the cluster taxonomy."""
    message = f"{action} failed: {err.status} {err.reason}"
    if err.status in (401, 403):
        return PermissionDenied(message)
    if err.status == 409:
        return ApplyConflict(message)
    if err.status == 429:
        return RateLimited(message, retry_after=_retry_after(err))
    if err.status is None or err.status >= 500:
        return ClusterUnreachable(message, retry_after=_retry_after(err))
    return ClusterException(message)


def load_api_client(context: str | None = None) -> ApiClient:
    """Load credentials from kubeconfig, falling back to the in-cluster service account."""
    try:
        client = kube_config.new_client_from_config(context=context)
        _LOGGER.debug("Loaded kubeconfig (context=%s)", context or "current")
        return client
    except ConfigException:
        try:
            kube_config.load_incluster_config()
        except ConfigException as err:
            raise ClusterUnreachable(
                "Cannot load Kubernetes configuration. Ensure kubeconfig exists "
                "or running inside a cluster."
            ) from err
        _LOGGER.debug("Loaded in-cluster config")
        return ApiClient()


def _label_selector(selector: dict[str, str] | None) -> str | None:
    if not selector:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


class KubernetesCluster(ClusterClient):
    """A ClusterClient for a live Kubernetes API server."""

    def __init__(
        self,
        api_client: ApiClient | None = None,
        context: str | None = None,
        field_manager: str = FIELD_MANAGER,
    ) -> None:
        """Initialize KubernetesCluster, loading credentials when no client is given."""
        self._api_client = api_client or load_api_client(context)
        self._field_manager = field_manager
        self._dynamic: DynamicClient | None = None
        self._lock = threading.Lock()

    def _client(self) -> DynamicClient:
        with self._lock:
            if self._dynamic is None:
                self._dynamic = DynamicClient(self._api_client)
            return self._dynamic

    def _resource(self, kind: str, api_version: str | None) -> Any:
        """Return the API resource for the kind, or None if it is not served."""
        try:
            if api_version:
                return self._client().resources.get(api_version=api_version, kind=kind)
            candidates = [
                r
                for r in self._client().resources.search(kind=kind)
                if "/" not in r.name
            ]
        except ResourceNotFoundError:
            return None
        if not candidates:
            return None
        preferred = [r for r in candidates if getattr(r, "preferred", False)]
        return (preferred or candidates)[0]

    async def _call(self, action: str, func: Callable[[], _T]) -> _T:
        try:
            return await asyncio.to_thread(func)
        except ApiException as err:
            raise translate_api_exception(err, action) from err
        except HTTPError as err:
            raise ClusterUnreachable(f"{action} failed: {err}") from err

    async def get(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> dict[str, Any] | None:
        def _get() -> dict[str, Any] | None:
            if (resource := self._resource(resource_id.kind, api_version)) is None:
                return None
            try:
                obj = resource.get(
                    name=resource_id.name, namespace=resource_id.namespace
                )
            except ApiException as err:
                if err.status == 404:
                    return None
                raise
            return obj.to_dict()

        return await self._call(f"get {resource_id}", _get)

    async def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
        api_version: str | None = None,
    ) -> list[dict[str, Any]]:
        def _list() -> list[dict[str, Any]]:
            if (resource := self._resource(kind, api_version)) is None:
                _LOGGER.debug("Kind %s is not served by the cluster", kind)
                return []
            try:
                result = resource.get(
                    namespace=namespace, label_selector=_label_selector(label_selector)
                )
            except ApiException as err:
                if err.status == 404:
                    return []
                raise
            return [item.to_dict() for item in result.items]

        return await self._call(f"list {kind}", _list)

    async def apply(self, payload: dict[str, Any]) -> dict[str, Any]:
        resource_id = NamedResource.from_doc(payload)

        def _apply() -> dict[str, Any]:
            resource = self._resource(resource_id.kind, payload.get("apiVersion"))
            if resource is None:
                raise ClusterException(
                    f"apply {resource_id} failed: kind not served by the cluster"
                )
            obj = resource.server_side_apply(
                body=payload,
                name=resource_id.name,
                namespace=resource_id.namespace,
                field_manager=self._field_manager,
            )
            return obj.to_dict()

        return await self._call(f"apply {resource_id}", _apply)

    async def delete(
        self, resource_id: NamedResource, api_version: str | None = None
    ) -> bool:
        def _delete() -> bool:
            if (resource := self._resource(resource_id.kind, api_version)) is None:
                return False
            try:
                resource.delete(
                    name=resource_id.name,
                    namespace=resource_id.namespace,
                    propagation_policy="Foreground",
                )
            except ApiException as err:
                if err.status == 404:
                    return False
                raise
            return True

        return await self._call(f"delete {resource_id}", _delete)

    async def watch(
        self, kinds: Iterable[str], label_selector: dict[str, str] | None = None
    ) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[WatchEvent | BaseException] = asyncio.Queue()
        stop = threading.Event()
        selector = _label_selector(label_selector)

        def _stream(kind: str) -> None:
            try:
                if (resource := self._resource(kind, None)) is None:
                    return
                while not stop.is_set():
                    for event in resource.watch(
                        label_selector=selector, timeout=WATCH_TIMEOUT
                    ):
                        if stop.is_set():
                            return
                        if event["type"] not in WatchEventType.__members__:
                            continue
                        obj = event["raw_object"]
                        loop.call_soon_threadsafe(
                            queue.put_nowait,
                            WatchEvent(
                                WatchEventType(event["type"]),
                                NamedResource.from_doc(obj),
                                obj,
                            ),
                        )
            except Exception as err:  # pylint: disable=broad-except
                loop.call_soon_threadsafe(queue.put_nowait, err)

        futures = [loop.run_in_executor(None, _stream, kind) for kind in kinds]
        try:
            while True:
                item = await queue.get()
                if isinstance(item, ApiException):
                    raise translate_api_exception(item, "watch") from item
                if isinstance(item, GitOpsException):
                    raise item
                if isinstance(item, BaseException):
                    raise ClusterUnreachable(f"watch failed: {item}") from item
                yield item
        finally:
            stop.set()
            for future in futures:
                future.cancel()

    async def close(self) -> None:
        await asyncio.to_thread(self._api_client.close)
