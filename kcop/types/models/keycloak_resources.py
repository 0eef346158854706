class KeycloakResources:
    """Encapsulates the naming scheme used for the resources which the operator manages
    for a Keycloak deployment."""

    INGRESS_SUFFIX = "-ingress"
    SERVICE_SUFFIX = "-service"

    @classmethod
    def component_name(self, cluster_name: str):
        """Returns the name of the Keycloak deployment for a cluster of the given name."""
        return cluster_name

    @classmethod
    def ingress_name(self, cluster_name: str):
        """Returns the name of the `Ingress` fronting a cluster of the given name."""
        return f"{cluster_name}{self.INGRESS_SUFFIX}"

    @classmethod
    def service_name(self, cluster_name: str):
        """Returns the name of the HTTPS service backing the ingress."""
        return f"{cluster_name}{self.SERVICE_SUFFIX}"

    @classmethod
    def cluster_name_from_ingress(self, ingress_name: str):
        """Returns the owning cluster name for an ingress name, or None if the
        name does not follow the naming scheme."""
        if ingress_name and ingress_name.endswith(self.INGRESS_SUFFIX):
            cluster_name = ingress_name[: -len(self.INGRESS_SUFFIX)]
            return cluster_name or None
        return None
