import kopf
from logging import Logger
from typing import Optional
from kcop.common.models.labels import Labels
from kcop.handlers.keycloak import KEYCLOAK_GROUP, KEYCLOAK_KIND, request_reconciliation
from kcop.types.models import KeycloakResources


def owning_keycloak(name: str, meta) -> Optional[str]:
    """Name of the Keycloak resource that owns an ingress, or None for foreign ones.

    Only the deterministic ``<keycloak>-ingress`` name makes an ingress owned.
    The owner reference or the instance label must point back at that Keycloak.
    """
    cluster = KeycloakResources.cluster_name_from_ingress(name)
    if not cluster:
        return None
    for owner in meta.get("ownerReferences", None) or []:
        if (
            owner.get("kind") == KEYCLOAK_KIND
            and owner.get("apiVersion", "").startswith(f"{KEYCLOAK_GROUP}/")
            and owner.get("name") == cluster
        ):
            return cluster
    labels = meta.get("labels", None) or {}
    instance = Labels().get_or_valid_instance_label_value(cluster)
    if labels.get(Labels.KUBERNETES_INSTANCE_LABEL) == instance and labels.get(
        Labels.KUBERNETES_MANAGED_BY_LABEL
    ):
        return cluster
    return None


def is_owned_ingress(name, meta, **_) -> bool:
    return owning_keycloak(name, meta) is not None


@kopf.on.event("networking.k8s.io", "v1", "ingresses", when=is_owned_ingress)
async def on_ingress_event(name, namespace, meta, type, logger: Logger, **kwargs):
    """Any change to an owned ingress, including its deletion, triggers a pass
    for the owning Keycloak so out-of-band edits are reverted."""
    cluster = owning_keycloak(name, meta)
    logger.debug(f"Ingress {name} event {type}; requesting reconcile of {cluster}.")
    await request_reconciliation(cluster, namespace, source="ingress")
