import mmh3
import hashlib
from typing import Any, Dict, Optional
from kcop.utils.errors import not_found_error
from kcop.utils.helpers import canonicalize_dict
from kcop.common.models.labels import Labels
from kubernetes_asyncio.client import (
    ApiException,
    CustomObjectsApi,
    NetworkingV1Api,
    V1DeleteOptions,
    V1Ingress,
    V1Preconditions,
)


class BaseResource:
    """Base resource model."""

    KEYCLOAK_OPERATOR_NAME = "keycloak-operator"

    _cluster: str
    _namespace: str
    _component_name: str
    _labels: Labels

    #: Timeout applied to every Kubernetes API call, set from operator settings
    request_timeout: Optional[float] = None

    def __init__(
        self, cluster: str, namespace: str, component_name: str, labels: Labels
    ):
        self._cluster = cluster
        self._namespace = namespace
        self._component_name = component_name
        self._labels = labels

    @property
    def cluster(self) -> str:
        return self._cluster

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def component_name(self) -> str:
        return self._component_name

    @property
    def labels(self) -> Labels:
        return self._labels

    def compute_hash(self, data: Any) -> str:
        """Compute a murmur3 hash."""
        if isinstance(data, dict):
            _data = canonicalize_dict(data)
        elif isinstance(data, str):
            _data = data.encode()
        else:
            raise ValueError(f"Hash of {type(data)} is not supported.")
        mumur_str = str(mmh3.hash128(_data))

        hash_obj = hashlib.sha256(mumur_str.encode("utf-8"))
        full_hash = hash_obj.hexdigest()

        # Digests are only compared, a prefix is enough
        return full_hash[:16]

    def _timeout_kwargs(self) -> Dict[str, Any]:
        if self.request_timeout:
            return {"_request_timeout": self.request_timeout}
        return {}

    async def fetch_ingress(
        self, networking_v1_api: NetworkingV1Api, name: str, namespace: str
    ) -> Optional[V1Ingress]:
        """Retrieve the latest state of an ingress, or None if it does not exist."""
        try:
            return await networking_v1_api.read_namespaced_ingress(
                name=name, namespace=namespace, **self._timeout_kwargs()
            )
        except ApiException as ex:
            if not_found_error(ex):
                return None
            raise

    async def create_ingress(
        self, networking_v1_api: NetworkingV1Api, namespace: str, ingress: V1Ingress
    ) -> V1Ingress:
        """Create an ingress. A 409 propagates so the caller can re-read."""
        return await networking_v1_api.create_namespaced_ingress(
            namespace=namespace, body=ingress, **self._timeout_kwargs()
        )

    async def patch_ingress(
        self,
        networking_v1_api: NetworkingV1Api,
        name: str,
        namespace: str,
        patch: Dict[str, Any],
    ) -> V1Ingress:
        """Apply a strategic merge patch. Conditioned on the resourceVersion in the patch body."""
        return await networking_v1_api.patch_namespaced_ingress(
            name=name,
            namespace=namespace,
            body=patch,
            **self._timeout_kwargs(),
        )

    async def delete_ingress(
        self,
        networking_v1_api: NetworkingV1Api,
        name: str,
        namespace: str,
        resource_version: str = None,
    ) -> None:
        """Delete an ingress. Missing resources count as deleted."""
        delete_options = V1DeleteOptions(
            preconditions=V1Preconditions(resource_version=resource_version)
            if resource_version
            else None
        )
        try:
            await networking_v1_api.delete_namespaced_ingress(
                name=name,
                namespace=namespace,
                body=delete_options,
                **self._timeout_kwargs(),
            )
        except ApiException as ex:
            if not_found_error(ex):
                return
            raise

    async def get_custom_object(
        self,
        custom_objects_api: CustomObjectsApi,
        namespace: str,
        group: str,
        version: str,
        plural: str,
        name: str,
    ) -> Optional[Dict[str, Any]]:
        try:
            return await custom_objects_api.get_namespaced_custom_object(
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name,
                **self._timeout_kwargs(),
            )
        except ApiException as ex:
            if not_found_error(ex):
                return None
            raise
