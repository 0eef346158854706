import asyncio
import aiohttp
import logging
from logging import Logger
from typing import Any, Dict, List, Optional
import kopf
from kubernetes_asyncio.client import (
    ApiException,
    CustomObjectsApi,
    NetworkingV1Api,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1OwnerReference,
    V1ServiceBackendPort,
    V1TypedLocalObjectReference,
)
from kubernetes_asyncio.client.api_client import ApiClient

from kcop.common.models.labels import Labels
from kcop.common.models.reconcile import (
    CreateDecision,
    Decision,
    DeleteDecision,
    DesiredShape,
    ManagedResourceRef,
    NoOpDecision,
    Outcome,
    PatchDecision,
)
from kcop.resources.base import BaseResource
from kcop.sensors import SensorDelegate
from kcop.types.models import KeycloakResources, KeycloakSpec
from kcop.types.settings import Settings
from kcop.utils.errors import (
    ReconcileAborted,
    ReconcileSuperseded,
    already_exists_error,
    conflict_error,
    convert_api_exception,
    transient_error,
)


class StaleObservation(Exception):
    """The observed resource changed underneath a write; re-read and recompute."""


class KeycloakIngress(BaseResource):
    """Ingress fronting a Keycloak deployment.

    The ingress is identified by name only: ``<keycloak>-ingress`` is owned,
    every other ingress in the namespace is foreign and never touched. Owned
    fields (fixed annotations, backend, rules, class name) are enforced on
    every pass; labels and annotations added by anyone else are left alone.
    """

    logger: Logger
    conf: Settings = Settings()
    sensor: SensorDelegate = SensorDelegate()
    shared_api_client: ApiClient = None  # Shared across all instances

    KIND = "Keycloak"
    GROUP_NAME = "k8s.keycloak.org"
    GROUP_VERSION = "v2alpha1"
    PLURAL_NAME = "keycloaks"
    COMPONENT_TYPE = "ingress"
    RESOURCE_KIND = "Ingress"

    KEYCLOAK_HTTPS_PORT = 8443

    BACKEND_PROTOCOL_ANNOTATION = "nginx.ingress.kubernetes.io/backend-protocol"
    BACKEND_PROTOCOL = "HTTPS"
    ROUTER_TERMINATION_ANNOTATION = "route.openshift.io/termination"
    ROUTER_TERMINATION = "passthrough"

    DEFAULT_PATH = "/"
    DEFAULT_PATH_TYPE = "ImplementationSpecific"

    # Owned field names, as reported in drift detection
    ANNOTATIONS_FIELD = "annotations"
    LABELS_FIELD = "labels"
    DEFAULT_BACKEND_FIELD = "defaultBackend"
    RULES_FIELD = "rules"
    INGRESS_CLASS_NAME_FIELD = "ingressClassName"

    ingress_name: str
    service_name: str
    enabled: bool
    hostname: Optional[str]
    class_name: Optional[str]
    extra_annotations: Dict[str, str]
    backend_resource: Any = None
    uid: Optional[str] = None
    generation: Optional[int] = None

    # k8s resources
    _api_client: ApiClient = None
    _networking_v1_api: NetworkingV1Api = None
    _custom_objects_api: CustomObjectsApi = None
    _ingress: V1Ingress = None

    def __init__(self, name: str, namespace: str, operator_name: str = None):
        component_name = KeycloakResources.component_name(name)
        labels = Labels.generate_default_labels(
            name,
            self.COMPONENT_TYPE,
            operator_name or self.conf.operator_name or self.KEYCLOAK_OPERATOR_NAME,
        )
        super().__init__(
            cluster=name,
            namespace=namespace,
            component_name=component_name,
            labels=labels,
        )
        self.ingress_name = KeycloakResources.ingress_name(name)
        self.service_name = KeycloakResources.service_name(name)

    @classmethod
    def from_spec(
        cls,
        name: str,
        namespace: str,
        spec: KeycloakSpec,
        uid: str = None,
        generation: int = None,
        logger: Logger = None,
    ) -> "KeycloakIngress":
        ingress = KeycloakIngress(name, namespace)
        ingress.logger = logger or logging.getLogger(__name__)
        ingress.request_timeout = cls.conf.api_request_timeout_seconds
        ingress.uid = uid
        ingress.generation = generation
        ingress.hostname = (spec.hostname.hostname if spec.hostname else None) or None
        ingress.enabled = bool(spec.ingress.enabled)
        ingress.class_name = spec.ingress.class_name or None
        ingress.extra_annotations = dict(spec.ingress.annotations or {})
        backend = spec.ingress.backend
        if backend is not None:
            if backend.service_name:
                ingress.service_name = backend.service_name
            ingress.backend_resource = backend.resource
        return ingress

    # =============================================================================
    # Desired state
    # =============================================================================

    def prepare_ingress_annotations(self) -> Dict[str, str]:
        """Operator owned annotations. The fixed markers win over user supplied ones."""
        annotations = dict(self.extra_annotations)
        annotations[self.BACKEND_PROTOCOL_ANNOTATION] = self.BACKEND_PROTOCOL
        annotations[self.ROUTER_TERMINATION_ANNOTATION] = self.ROUTER_TERMINATION
        return annotations

    def prepare_ingress_backend(self) -> V1IngressBackend:
        """Backend shared by the default backend and the routing rule."""
        if self.backend_resource is not None:
            return V1IngressBackend(
                resource=V1TypedLocalObjectReference(
                    api_group=self.backend_resource.api_group,
                    kind=self.backend_resource.kind,
                    name=self.backend_resource.name,
                )
            )
        return V1IngressBackend(
            service=V1IngressServiceBackend(
                name=self.service_name,
                port=V1ServiceBackendPort(number=self.KEYCLOAK_HTTPS_PORT),
            )
        )

    def prepare_ingress_rules(self) -> List[V1IngressRule]:
        """Single rule routing everything under / to the backend.
        Without a hostname the rule has no host and matches any request."""
        return [
            V1IngressRule(
                host=self.hostname,
                http=V1HTTPIngressRuleValue(
                    paths=[
                        V1HTTPIngressPath(
                            path=self.DEFAULT_PATH,
                            path_type=self.DEFAULT_PATH_TYPE,
                            backend=self.prepare_ingress_backend(),
                        )
                    ]
                ),
            )
        ]

    def prepare_owner_references(self) -> Optional[List[V1OwnerReference]]:
        if not self.uid:
            return None
        return [
            V1OwnerReference(
                api_version=f"{self.GROUP_NAME}/{self.GROUP_VERSION}",
                kind=self.KIND,
                name=self.cluster,
                uid=self.uid,
                controller=True,
                block_owner_deletion=True,
            )
        ]

    def prepare_ingress(self) -> V1Ingress:
        """Build ingress resource."""
        return V1Ingress(
            api_version="networking.k8s.io/v1",
            kind=self.RESOURCE_KIND,
            metadata=V1ObjectMeta(
                name=self.ingress_name,
                namespace=self.namespace,
                labels=self.labels.as_dict(),
                annotations=self.prepare_ingress_annotations(),
                owner_references=self.prepare_owner_references(),
            ),
            spec=V1IngressSpec(
                ingress_class_name=self.class_name,
                default_backend=self.prepare_ingress_backend(),
                rules=self.prepare_ingress_rules(),
            ),
        )

    def prepare_desired_shape(self) -> Optional[DesiredShape]:
        """Desired state split into owned and extensible fields; None when disabled."""
        if not self.enabled:
            return None
        return DesiredShape(
            ref=self.ref,
            owned=self.prepare_ingress_watch_fields(self.ingress),
            extensible={self.LABELS_FIELD: self.labels.as_dict()},
            resource=self.ingress,
        )

    # =============================================================================
    # Ownership merge
    # =============================================================================

    def prepare_ingress_watch_fields(self, ingress: V1Ingress) -> Dict:
        """
        Prepare the operator owned fields of an ingress.
        These fields are tracked for changes made outside the operator and are used to
        determine if a patch is needed. Only the annotation keys the operator owns are
        read, so annotations added by anyone else never count as drift.
        """
        metadata = ingress.metadata or V1ObjectMeta()
        spec = ingress.spec or V1IngressSpec()
        annotations = metadata.annotations or {}
        fields = {
            self.ANNOTATIONS_FIELD: {
                key: annotations.get(key)
                for key in sorted(self.prepare_ingress_annotations())
            },
            self.DEFAULT_BACKEND_FIELD: (
                spec.default_backend.to_dict() if spec.default_backend else None
            ),
            self.RULES_FIELD: [rule.to_dict() for rule in spec.rules or []],
        }
        if self.class_name:
            fields[self.INGRESS_CLASS_NAME_FIELD] = spec.ingress_class_name
        return fields

    def prepare_ingress_drift(
        self, desired: DesiredShape, observed: V1Ingress
    ) -> List[str]:
        """Owned fields that differ from the desired shape, followed by extensible
        maps missing one of the desired keys."""
        actual = self.prepare_ingress_watch_fields(observed)
        drift_fields = [
            field
            for field, value in desired.owned.items()
            if self.compute_hash({field: actual.get(field)})
            != self.compute_hash({field: value})
        ]
        observed_meta = observed.metadata or V1ObjectMeta()
        for field, wanted in desired.extensible.items():
            if Labels(wanted).missing_from(getattr(observed_meta, field)):
                drift_fields.append(field)
        return drift_fields

    def prepare_backend_body(self, clear_unset: bool = False) -> Dict:
        """Backend as a patch body. With `clear_unset`, fields the operator does not
        use are nulled so a merge patch removes values set by someone else."""
        if self.backend_resource is not None:
            resource = {
                "kind": self.backend_resource.kind,
                "name": self.backend_resource.name,
            }
            if self.backend_resource.api_group:
                resource["apiGroup"] = self.backend_resource.api_group
            body = {"resource": resource}
            if clear_unset:
                body["service"] = None
            return body
        port = {"number": self.KEYCLOAK_HTTPS_PORT}
        if clear_unset:
            port["name"] = None
        body = {"service": {"name": self.service_name, "port": port}}
        if clear_unset:
            body["resource"] = None
        return body

    def prepare_rules_body(self) -> List[Dict]:
        rule = {
            "http": {
                "paths": [
                    {
                        "path": self.DEFAULT_PATH,
                        "pathType": self.DEFAULT_PATH_TYPE,
                        "backend": self.prepare_backend_body(),
                    }
                ]
            }
        }
        if self.hostname:
            rule["host"] = self.hostname
        return [rule]

    def prepare_ingress_patch(
        self, desired: DesiredShape, observed: V1Ingress, drift_fields: List[str]
    ) -> Dict:
        """Prepare a strategic merge patch restricted to drifted fields.

        Annotation and label maps are merged key by key, so only the desired keys are
        sent and nothing added by users is removed. The observed resourceVersion makes
        the API server reject the patch if the ingress changed since it was read.
        """
        observed_meta = observed.metadata or V1ObjectMeta()
        metadata: Dict[str, Any] = {"resourceVersion": observed_meta.resource_version}
        spec: Dict[str, Any] = {}

        if self.ANNOTATIONS_FIELD in drift_fields:
            actual = observed_meta.annotations or {}
            metadata["annotations"] = {
                key: value
                for key, value in desired.owned[self.ANNOTATIONS_FIELD].items()
                if actual.get(key) != value
            }
        if self.LABELS_FIELD in drift_fields:
            metadata["labels"] = Labels(
                desired.extensible[self.LABELS_FIELD]
            ).missing_from(observed_meta.labels)
        if self.DEFAULT_BACKEND_FIELD in drift_fields:
            spec["defaultBackend"] = self.prepare_backend_body(clear_unset=True)
        if self.RULES_FIELD in drift_fields:
            spec["rules"] = self.prepare_rules_body()
        if self.INGRESS_CLASS_NAME_FIELD in drift_fields:
            spec["ingressClassName"] = desired.owned[self.INGRESS_CLASS_NAME_FIELD]

        patch = {"metadata": metadata}
        if spec:
            patch["spec"] = spec
        return patch

    def prepare_ingress_decision(
        self, desired: Optional[DesiredShape], observed: Optional[V1Ingress]
    ) -> Decision:
        """Decide what to do with the owned ingress. A missing desired shape means
        the ingress should not exist."""
        if desired is None:
            if observed is None:
                return NoOpDecision(self.ref)
            return DeleteDecision(self.ref, observed.metadata.resource_version)
        if observed is None:
            return CreateDecision(desired.ref, desired.resource)
        drift_fields = self.prepare_ingress_drift(desired, observed)
        if not drift_fields:
            return NoOpDecision(desired.ref)
        return PatchDecision(
            desired.ref,
            self.prepare_ingress_patch(desired, observed, drift_fields),
            drift_fields,
            observed.metadata.resource_version,
        )


    # =============================================================================
    # Reconcile pass
    # =============================================================================

    async def synchronize(self) -> Outcome:
        """Run one reconcile pass for the owned ingress.

        Conflicts re-read and recompute, transient failures retry the pass from
        scratch with exponential backoff. Both are bounded; once exhausted a
        kopf.TemporaryError asks for the pass to be re-triggered later.
        """
        conflicts, failures = 0, 0
        while True:
            try:
                return await self.sync_ingress()
            except (
                StaleObservation,
                ApiException,
                asyncio.TimeoutError,
                aiohttp.ClientError,
                ConnectionError,
            ) as ex:
                if (
                    isinstance(ex, StaleObservation)
                    or conflict_error(ex)
                    or already_exists_error(ex)
                ):
                    if conflicts >= self.conf.conflict_retries:
                        raise kopf.TemporaryError(
                            f"Ingress {self.ingress_name} kept changing during reconciliation.",
                            delay=self.conf.temporary_error_delay_seconds,
                        ) from ex
                    self.logger.info(
                        f"Ingress {self.ingress_name} changed concurrently, re-reading: {ex}"
                    )
                    await asyncio.sleep(self.conf.backoff(conflicts))
                    conflicts += 1
                elif transient_error(ex):
                    if failures >= self.conf.transient_retries:
                        if isinstance(ex, ApiException):
                            convert_api_exception(
                                ex,
                                permanent=False,
                                delay=self.conf.temporary_error_delay_seconds,
                            )
                        raise kopf.TemporaryError(
                            f"Kubernetes API unavailable: {ex!r}",
                            delay=self.conf.temporary_error_delay_seconds,
                        ) from ex
                    self.logger.warning(
                        f"Transient error while reconciling {self.ingress_name}, retrying: {ex!r}"
                    )
                    await asyncio.sleep(self.conf.backoff(failures))
                    failures += 1
                elif isinstance(ex, ApiException):
                    convert_api_exception(
                        ex, delay=self.conf.temporary_error_delay_seconds
                    )
                else:
                    raise

    async def sync_ingress(self) -> Outcome:
        """Check current state of the owned ingress and create/patch/delete if needed."""
        observed = await self.fetch_ingress(
            self.networking_v1_api, self.ingress_name, self.namespace
        )
        decision = self.prepare_ingress_decision(self.prepare_desired_shape(), observed)

        if isinstance(decision, PatchDecision):
            self.sensor.on_resource_drift_detected(
                self.cluster,
                self.ingress_name,
                self.namespace,
                self.COMPONENT_TYPE,
                decision.drift_fields,
            )
            self.logger.info(
                f"Drift detected on ingress {self.ingress_name}: {', '.join(decision.drift_fields)}"
            )

        if not decision.mutating:
            return Outcome.converged(decision)

        await self.apply_ingress_decision(decision)
        self.logger.info(f"Applied {decision.action} to ingress {self.ingress_name}.")
        return Outcome.progressing(decision)

    async def apply_ingress_decision(self, decision: Decision) -> None:
        """Issue the write for a decision, guarded by a check on the parent."""
        await self.ensure_parent_active()

        sensor_state = self.sensor.on_resource_sync_start(
            self.cluster, self.ingress_name, self.namespace, self.COMPONENT_TYPE
        )
        success, error = True, None
        try:
            if isinstance(decision, CreateDecision):
                await self.create_ingress(
                    self.networking_v1_api, self.namespace, decision.body
                )
            elif isinstance(decision, PatchDecision):
                try:
                    await self.patch_ingress(
                        self.networking_v1_api,
                        self.ingress_name,
                        self.namespace,
                        decision.patch,
                    )
                except ApiException as ex:
                    if ex.status == 404:
                        raise StaleObservation(
                            f"Ingress {self.ingress_name} disappeared before patching."
                        ) from ex
                    raise
            elif isinstance(decision, DeleteDecision):
                await self.delete_ingress(
                    self.networking_v1_api,
                    self.ingress_name,
                    self.namespace,
                    resource_version=decision.resource_version,
                )
        except Exception as e:
            success, error = False, e
            raise
        finally:
            self.sensor.on_resource_sync_complete(
                self.cluster,
                self.ingress_name,
                self.namespace,
                self.COMPONENT_TYPE,
                sensor_state,
                decision.action,
                success,
                error,
            )

    async def ensure_parent_active(self) -> None:
        """Abort the pass if the Keycloak resource is gone, being deleted, or has
        moved on to a newer generation than the one this pass was computed from."""
        parent = await self.fetch()
        if parent is None:
            raise ReconcileAborted(f"{self.KIND} {self.cluster} no longer exists.")
        metadata = parent.get("metadata", {})
        if metadata.get("deletionTimestamp"):
            raise ReconcileAborted(f"{self.KIND} {self.cluster} is being deleted.")
        if self.uid and metadata.get("uid") and metadata["uid"] != self.uid:
            raise ReconcileAborted(f"{self.KIND} {self.cluster} was recreated.")
        if (
            self.generation is not None
            and metadata.get("generation") is not None
            and metadata["generation"] != self.generation
        ):
            raise ReconcileSuperseded(
                f"{self.KIND} {self.cluster} changed to generation {metadata['generation']}."
            )

    async def fetch(self) -> Optional[Dict]:
        """Fetch the parent Keycloak resource."""
        return await self.get_custom_object(
            self.custom_objects_api,
            namespace=self.namespace,
            group=self.GROUP_NAME,
            version=self.GROUP_VERSION,
            plural=self.PLURAL_NAME,
            name=self.cluster,
        )

    @property
    def ref(self) -> ManagedResourceRef:
        return ManagedResourceRef(self.RESOURCE_KIND, self.namespace, self.ingress_name)

    @property
    def api_client(self) -> ApiClient:
        if self._api_client is None:
            if self.shared_api_client is not None:
                self._api_client = self.shared_api_client
            else:
                self._api_client = ApiClient()
        return self._api_client

    @property
    def networking_v1_api(self) -> NetworkingV1Api:
        if self._networking_v1_api is None:
            self._networking_v1_api = NetworkingV1Api(self.api_client)
        return self._networking_v1_api

    @property
    def custom_objects_api(self) -> CustomObjectsApi:
        if self._custom_objects_api is None:
            self._custom_objects_api = CustomObjectsApi(self.api_client)
        return self._custom_objects_api

    @property
    def ingress(self) -> V1Ingress:
        if self._ingress is None:
            self._ingress = self.prepare_ingress()
        return self._ingress
