from typing import Dict


class ResourceLabels:
    KEYCLOAK_DOMAIN: str = "keycloak.org/"

    KEYCLOAK_COMPONENT_LABEL = KEYCLOAK_DOMAIN + "component"

    APP_LABEL = "app"

    APPLICATION_NAME = "keycloak"


class Labels(ResourceLabels):
    KUBERNETES_DOMAIN = "app.kubernetes.io/"

    KUBERNETES_INSTANCE_LABEL = KUBERNETES_DOMAIN + "instance"

    KUBERNETES_MANAGED_BY_LABEL = KUBERNETES_DOMAIN + "managed-by"

    _labels: Dict[str, str]

    def __init__(self, labels: Dict[str, str] = None) -> None:
        self._labels = labels if labels else dict()

    def update(self, labels: Dict[str, str]) -> "Labels":
        self._labels.update(labels.copy())
        return self

    def as_dict(self) -> Dict[str, str]:
        """Return labels as dictionary."""
        return self._labels.copy()

    def get(self, label: str, default: str = None) -> str:
        return self._labels.get(label, default)

    def include(self, label: str, value: str) -> "Labels":
        self.update({label: value})
        return self

    def include_app(self) -> "Labels":
        return self.include(self.APP_LABEL, self.APPLICATION_NAME)

    def include_kubernetes_instance(self, instance_name: str) -> "Labels":
        return self.include(
            self.KUBERNETES_INSTANCE_LABEL,
            self.get_or_valid_instance_label_value(instance_name),
        )

    def include_kubernetes_managed_by(self, operator_name: str) -> "Labels":
        return self.include(self.KUBERNETES_MANAGED_BY_LABEL, operator_name)

    def include_component(self, component: str) -> "Labels":
        return self.include(self.KEYCLOAK_COMPONENT_LABEL, component)

    def get_or_valid_instance_label_value(self, instance: str):
        """Validates the instance name and if needed modifies it to make it a valid Label value:
        * (([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?
        * 63 characters max
        """
        if not instance:
            return ""
        value = instance[:63]
        return value.rstrip(".-_")

    def missing_from(self, actual: Dict[str, str]) -> Dict[str, str]:
        """Labels whose value in `actual` is absent or different."""
        actual = actual or {}
        return {
            key: value
            for key, value in self._labels.items()
            if actual.get(key) != value
        }

    def __str__(self):
        return f"Labels<{self._labels}>"

    @classmethod
    def generate_default_labels(
        cls,
        resource_name: str,
        component: str,
        managed_by: str,
    ) -> "Labels":
        labels = Labels()
        return (
            labels.include_app()
            .include_kubernetes_managed_by(managed_by)
            .include_kubernetes_instance(resource_name)
            .include_component(component)
        )
