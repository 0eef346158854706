"""Unit tests for building the Keycloak ingress and deciding how to converge it."""

import copy
import pytest
from kubernetes_asyncio.client import V1ServiceBackendPort
from kcop.common.models.labels import Labels
from kcop.common.models.reconcile import (
    CreateDecision,
    DeleteDecision,
    NoOpDecision,
    PatchDecision,
)

BACKEND_PROTOCOL = "nginx.ingress.kubernetes.io/backend-protocol"
TERMINATION = "route.openshift.io/termination"


@pytest.fixture
def ingress(make_ingress):
    return make_ingress()


def observed_copy(resource, resource_version="7"):
    """Return the desired ingress as if it had been read back from the cluster."""
    observed = copy.deepcopy(resource.ingress)
    observed.metadata.resource_version = resource_version
    return observed


def decide(resource, observed):
    return resource.prepare_ingress_decision(resource.prepare_desired_shape(), observed)


class TestPrepareIngress:
    """Tests for the desired ingress."""

    def test_names_follow_the_keycloak_name(self, ingress):
        resource = ingress.prepare_ingress()
        assert resource.metadata.name == "sso-ingress"
        assert resource.metadata.namespace == "default"
        assert resource.kind == "Ingress"
        assert resource.api_version == "networking.k8s.io/v1"

    def test_fixed_annotations(self, ingress):
        annotations = ingress.prepare_ingress().metadata.annotations
        assert annotations[BACKEND_PROTOCOL] == "HTTPS"
        assert annotations[TERMINATION] == "passthrough"
        assert set(annotations) == {BACKEND_PROTOCOL, TERMINATION}

    def test_labels(self, ingress):
        labels = ingress.prepare_ingress().metadata.labels
        assert labels["app"] == "keycloak"
        assert labels[Labels.KUBERNETES_MANAGED_BY_LABEL] == "keycloak-operator"
        assert labels[Labels.KUBERNETES_INSTANCE_LABEL] == "sso"
        assert labels[Labels.KEYCLOAK_COMPONENT_LABEL] == "ingress"

    def test_default_backend_targets_https_port(self, ingress):
        backend = ingress.prepare_ingress().spec.default_backend
        assert backend.service.name == "sso-service"
        assert backend.service.port.number == 8443
        assert backend.resource is None

    def test_catch_all_rule_without_hostname(self, ingress):
        rules = ingress.prepare_ingress().spec.rules
        assert len(rules) == 1
        assert rules[0].host is None
        path = rules[0].http.paths[0]
        assert path.path == "/"
        assert path.path_type == "ImplementationSpecific"
        assert path.backend.service.name == "sso-service"
        assert path.backend.service.port.number == 8443

    def test_hostname_sets_rule_host(self, make_ingress):
        ingress = make_ingress({"hostname": {"hostname": "foo.bar"}})
        rules = ingress.prepare_ingress().spec.rules
        assert rules[0].host == "foo.bar"

    def test_owner_reference(self, ingress):
        owners = ingress.prepare_ingress().metadata.owner_references
        assert len(owners) == 1
        assert owners[0].kind == "Keycloak"
        assert owners[0].api_version == "k8s.keycloak.org/v2alpha1"
        assert owners[0].name == "sso"
        assert owners[0].uid == "uid-1"
        assert owners[0].controller is True

    def test_no_owner_reference_without_uid(self, make_ingress):
        ingress = make_ingress(uid=None)
        assert ingress.prepare_ingress().metadata.owner_references is None

    def test_user_annotations_do_not_override_fixed_ones(self, make_ingress):
        ingress = make_ingress(
            {
                "ingress": {
                    "annotations": {
                        BACKEND_PROTOCOL: "HTTP",
                        "example.com/custom": "yes",
                    }
                }
            }
        )
        annotations = ingress.prepare_ingress().metadata.annotations
        assert annotations[BACKEND_PROTOCOL] == "HTTPS"
        assert annotations["example.com/custom"] == "yes"

    def test_class_name(self, make_ingress):
        ingress = make_ingress({"ingress": {"className": "nginx"}})
        assert ingress.prepare_ingress().spec.ingress_class_name == "nginx"

    def test_custom_service_backend(self, make_ingress):
        ingress = make_ingress({"ingress": {"backend": {"serviceName": "edge"}}})
        resource = ingress.prepare_ingress()
        assert resource.spec.default_backend.service.name == "edge"
        assert resource.spec.rules[0].http.paths[0].backend.service.name == "edge"

    def test_resource_backend(self, make_ingress):
        ingress = make_ingress(
            {
                "ingress": {
                    "backend": {
                        "resource": {
                            "apiGroup": "k8s.example.com",
                            "kind": "StorageBucket",
                            "name": "static",
                        }
                    }
                }
            }
        )
        backend = ingress.prepare_ingress().spec.default_backend
        assert backend.service is None
        assert backend.resource.kind == "StorageBucket"
        assert backend.resource.name == "static"
        assert backend.resource.api_group == "k8s.example.com"

    def test_build_is_deterministic(self, make_ingress):
        first = make_ingress({"hostname": {"hostname": "foo.bar"}})
        second = make_ingress({"hostname": {"hostname": "foo.bar"}})
        assert first.prepare_ingress().to_dict() == second.prepare_ingress().to_dict()
        assert first.prepare_desired_shape().owned == second.prepare_desired_shape().owned

    def test_owned_fields_change_with_hostname(self, make_ingress):
        first = make_ingress().prepare_desired_shape()
        second = make_ingress({"hostname": {"hostname": "foo.bar"}}).prepare_desired_shape()
        assert first.owned["rules"] != second.owned["rules"]
        assert first.owned["defaultBackend"] == second.owned["defaultBackend"]


class TestDesiredShape:
    def test_disabled_has_no_shape(self, make_ingress):
        ingress = make_ingress({"ingress": {"enabled": False}})
        assert ingress.prepare_desired_shape() is None

    def test_enabled_shape(self, ingress):
        shape = ingress.prepare_desired_shape()
        assert str(shape.ref) == "Ingress/default/sso-ingress"
        assert shape.resource is ingress.ingress
        assert set(shape.owned) == {"annotations", "defaultBackend", "rules"}
        assert shape.extensible["labels"]["app"] == "keycloak"

    def test_class_name_is_owned_when_set(self, make_ingress):
        ingress = make_ingress({"ingress": {"className": "nginx"}})
        assert "ingressClassName" in ingress.prepare_desired_shape().owned


class TestPrepareIngressDecision:
    """Tests for the ownership merge."""

    def test_absent_and_enabled_creates(self, ingress):
        decision = decide(ingress, None)
        assert isinstance(decision, CreateDecision)
        assert decision.body is ingress.ingress
        assert decision.mutating

    def test_absent_and_disabled_does_nothing(self, make_ingress):
        ingress = make_ingress({"ingress": {"enabled": False}})
        decision = decide(ingress, None)
        assert isinstance(decision, NoOpDecision)
        assert not decision.mutating

    def test_present_and_disabled_deletes(self, make_ingress):
        enabled = make_ingress()
        disabled = make_ingress({"ingress": {"enabled": False}})
        decision = decide(disabled, observed_copy(enabled))
        assert isinstance(decision, DeleteDecision)
        assert decision.resource_version == "7"
        assert decision.ref.name == "sso-ingress"

    def test_converged_does_nothing(self, ingress):
        decision = decide(ingress, observed_copy(ingress))
        assert isinstance(decision, NoOpDecision)

    def test_user_additions_are_not_drift(self, ingress):
        observed = observed_copy(ingress)
        observed.metadata.labels["team"] = "identity"
        observed.metadata.annotations["example.com/owner"] = "ops"
        decision = decide(ingress, observed)
        assert isinstance(decision, NoOpDecision)

    def test_port_drift_is_patched(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.default_backend.service.port = V1ServiceBackendPort(number=80)
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["defaultBackend"]
        assert decision.resource_version == "7"
        assert decision.patch["metadata"]["resourceVersion"] == "7"
        assert decision.patch["spec"] == {
            "defaultBackend": {
                "service": {"name": "sso-service", "port": {"number": 8443, "name": None}},
                "resource": None,
            }
        }

    def test_named_port_is_cleared(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.default_backend.service.port = V1ServiceBackendPort(name="https")
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        port = decision.patch["spec"]["defaultBackend"]["service"]["port"]
        assert port == {"number": 8443, "name": None}

    def test_stripped_annotation_is_restored(self, ingress):
        observed = observed_copy(ingress)
        del observed.metadata.annotations[TERMINATION]
        observed.metadata.annotations["example.com/owner"] = "ops"
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["annotations"]
        annotations = decision.patch["metadata"]["annotations"]
        assert annotations[TERMINATION] == "passthrough"
        assert BACKEND_PROTOCOL not in annotations
        assert "example.com/owner" not in annotations
        assert "spec" not in decision.patch

    def test_only_missing_labels_are_patched(self, ingress):
        observed = observed_copy(ingress)
        del observed.metadata.labels[Labels.KUBERNETES_MANAGED_BY_LABEL]
        observed.metadata.labels["team"] = "identity"
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["labels"]
        assert decision.patch["metadata"]["labels"] == {
            Labels.KUBERNETES_MANAGED_BY_LABEL: "keycloak-operator"
        }

    def test_hostname_change_replaces_rules(self, make_ingress):
        previous = make_ingress()
        ingress = make_ingress({"hostname": {"hostname": "foo.bar"}})
        decision = decide(ingress, observed_copy(previous))
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["rules"]
        assert decision.patch["spec"]["rules"] == [
            {
                "host": "foo.bar",
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "ImplementationSpecific",
                            "backend": {
                                "service": {"name": "sso-service", "port": {"number": 8443}}
                            },
                        }
                    ]
                },
            }
        ]

    def test_extra_rules_are_removed(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.rules.append(copy.deepcopy(observed.spec.rules[0]))
        observed.spec.rules[1].host = "other.example.com"
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        assert len(decision.patch["spec"]["rules"]) == 1

    def test_class_name_drift(self, make_ingress):
        ingress = make_ingress({"ingress": {"className": "nginx"}})
        observed = observed_copy(ingress)
        observed.spec.ingress_class_name = "traefik"
        decision = decide(ingress, observed)
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["ingressClassName"]
        assert decision.patch["spec"] == {"ingressClassName": "nginx"}

    def test_class_name_left_alone_when_not_configured(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.ingress_class_name = "traefik"
        assert isinstance(decide(ingress, observed), NoOpDecision)

    def test_patch_does_not_touch_annotations_without_drift(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.default_backend.service.port = V1ServiceBackendPort(number=80)
        decision = decide(ingress, observed)
        assert decision.patch["metadata"] == {"resourceVersion": "7"}

    def test_label_patch_follows_the_shape(self, ingress):
        desired = ingress.prepare_desired_shape()
        desired.extensible["labels"]["example.com/tier"] = "edge"
        decision = ingress.prepare_ingress_decision(desired, observed_copy(ingress))
        assert isinstance(decision, PatchDecision)
        assert decision.drift_fields == ["labels"]
        assert decision.patch["metadata"]["labels"] == {"example.com/tier": "edge"}

    def test_owned_fields_follow_the_shape(self, ingress):
        desired = ingress.prepare_desired_shape()
        desired.owned["annotations"][TERMINATION] = "reencrypt"
        decision = ingress.prepare_ingress_decision(desired, observed_copy(ingress))
        assert decision.drift_fields == ["annotations"]
        assert decision.patch["metadata"]["annotations"] == {TERMINATION: "reencrypt"}

    def test_decision_is_deterministic(self, ingress):
        observed = observed_copy(ingress)
        observed.spec.default_backend.service.port = V1ServiceBackendPort(number=80)
        assert decide(ingress, observed) == decide(ingress, observed)
