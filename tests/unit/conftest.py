"""In-memory stand-ins for the Kubernetes APIs used by the ingress reconciler."""

import copy
import json
import pytest
from kubernetes_asyncio.client import (
    ApiException,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1ServiceBackendPort,
    V1TypedLocalObjectReference,
)
from kcop.resources import KeycloakIngress
from kcop.sensors import SensorDelegate
from kcop.types.schemas import KeycloakSpecSchema
from kcop.types.settings import Settings


def api_error(status, reason):
    ex = ApiException(status=status, reason=reason)
    ex.body = json.dumps({"kind": "Status", "reason": reason, "message": f"{reason}"})
    return ex


def backend_from_body(body):
    if body.get("resource"):
        resource = body["resource"]
        return V1IngressBackend(
            resource=V1TypedLocalObjectReference(
                api_group=resource.get("apiGroup"),
                kind=resource["kind"],
                name=resource["name"],
            )
        )
    service = body["service"]
    return V1IngressBackend(
        service=V1IngressServiceBackend(
            name=service["name"],
            port=V1ServiceBackendPort(
                number=service["port"].get("number"),
                name=service["port"].get("name"),
            ),
        )
    )


def rules_from_body(rules):
    return [
        V1IngressRule(
            host=rule.get("host"),
            http=V1HTTPIngressRuleValue(
                paths=[
                    V1HTTPIngressPath(
                        path=path["path"],
                        path_type=path["pathType"],
                        backend=backend_from_body(path["backend"]),
                    )
                    for path in rule["http"]["paths"]
                ]
            ),
        )
        for rule in rules
    ]


def merge_map(current, patch):
    merged = dict(current or {})
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class FakeNetworkingV1Api:
    """Stores ingresses by (namespace, name) and mimics optimistic concurrency."""

    def __init__(self):
        self.ingresses = {}
        self.calls = []
        self.errors = {}
        self._version = 0

    def fail(self, method, *errors):
        """Queue errors raised by the next calls to `method`. A callable is run
        instead of raised, to change the stored state mid call."""
        self.errors.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method):
        pending = self.errors.get(method)
        if pending:
            error = pending.pop(0)
            if callable(error):
                error()
            else:
                raise error

    def _bump(self):
        self._version += 1
        return str(self._version)

    def writes(self):
        return [call for call in self.calls if call[0] != "read"]

    def put(self, ingress):
        stored = copy.deepcopy(ingress)
        stored.metadata.resource_version = self._bump()
        self.ingresses[(stored.metadata.namespace, stored.metadata.name)] = stored
        return stored

    def get(self, namespace, name):
        return self.ingresses.get((namespace, name))

    def touch(self, namespace, name):
        """Simulate an out-of-band write that only bumps the resourceVersion."""
        self.get(namespace, name).metadata.resource_version = self._bump()

    async def read_namespaced_ingress(self, name, namespace, **kwargs):
        self.calls.append(("read", name))
        self._maybe_fail("read")
        stored = self.get(namespace, name)
        if stored is None:
            raise api_error(404, "NotFound")
        return copy.deepcopy(stored)

    async def create_namespaced_ingress(self, namespace, body, **kwargs):
        self.calls.append(("create", body.metadata.name))
        self._maybe_fail("create")
        if self.get(namespace, body.metadata.name) is not None:
            raise api_error(409, "AlreadyExists")
        return copy.deepcopy(self.put(body))

    async def patch_namespaced_ingress(self, name, namespace, body, **kwargs):
        self.calls.append(("patch", name, body))
        self._maybe_fail("patch")
        stored = self.get(namespace, name)
        if stored is None:
            raise api_error(404, "NotFound")
        metadata = body.get("metadata", {})
        version = metadata.get("resourceVersion")
        if version is not None and version != stored.metadata.resource_version:
            raise api_error(409, "Conflict")
        if "annotations" in metadata:
            stored.metadata.annotations = merge_map(
                stored.metadata.annotations, metadata["annotations"]
            )
        if "labels" in metadata:
            stored.metadata.labels = merge_map(stored.metadata.labels, metadata["labels"])
        spec = body.get("spec", {})
        if "defaultBackend" in spec:
            stored.spec.default_backend = backend_from_body(spec["defaultBackend"])
        if "rules" in spec:
            stored.spec.rules = rules_from_body(spec["rules"])
        if "ingressClassName" in spec:
            stored.spec.ingress_class_name = spec["ingressClassName"]
        stored.metadata.resource_version = self._bump()
        return copy.deepcopy(stored)

    async def delete_namespaced_ingress(self, name, namespace, body=None, **kwargs):
        self.calls.append(("delete", name, body))
        self._maybe_fail("delete")
        stored = self.get(namespace, name)
        if stored is None:
            raise api_error(404, "NotFound")
        preconditions = body.preconditions if body is not None else None
        if (
            preconditions is not None
            and preconditions.resource_version
            and preconditions.resource_version != stored.metadata.resource_version
        ):
            raise api_error(409, "Conflict")
        del self.ingresses[(namespace, name)]


class FakeCustomObjectsApi:
    """Serves Keycloak resources as plain dicts."""

    def __init__(self):
        self.objects = {}
        self.calls = []

    def add(self, name, namespace, uid="uid-1", generation=1, **metadata):
        self.objects[(namespace, name)] = {
            "apiVersion": "k8s.keycloak.org/v2alpha1",
            "kind": "Keycloak",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": uid,
                "generation": generation,
                **metadata,
            },
        }

    async def get_namespaced_custom_object(
        self, group, version, namespace, plural, name, **kwargs
    ):
        self.calls.append((group, version, plural, name))
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise api_error(404, "NotFound")
        return copy.deepcopy(obj)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No backoff and a fresh sensor for every test."""
    monkeypatch.setattr(
        KeycloakIngress,
        "conf",
        Settings(
            retry_backoff_seconds=0,
            retry_backoff_max_seconds=0,
            conflict_retries=2,
            transient_retries=2,
            temporary_error_delay_seconds=5,
        ),
    )
    monkeypatch.setattr(KeycloakIngress, "sensor", SensorDelegate())


@pytest.fixture
def networking_api():
    return FakeNetworkingV1Api()


@pytest.fixture
def custom_objects_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def make_ingress(networking_api, custom_objects_api):
    """Build a KeycloakIngress wired to the fake APIs.

    The parent Keycloak is registered with the fake custom objects API unless
    `register_parent` is False.
    """

    def factory(
        spec=None,
        name="sso",
        namespace="default",
        uid="uid-1",
        generation=1,
        register_parent=True,
    ):
        spec_model = KeycloakSpecSchema().load(spec or {})
        if register_parent and (namespace, name) not in custom_objects_api.objects:
            custom_objects_api.add(name, namespace, uid=uid, generation=generation)
        ingress = KeycloakIngress.from_spec(
            name, namespace, spec_model, uid=uid, generation=generation
        )
        ingress._networking_v1_api = networking_api
        ingress._custom_objects_api = custom_objects_api
        return ingress

    return factory
