from .keycloak_spec import (
    HostnameSpecSchema,
    IngressBackendResourceSchema,
    IngressBackendSpecSchema,
    IngressSpecSchema,
    KeycloakSpecSchema,
)

__all__ = [
    "HostnameSpecSchema",
    "IngressBackendResourceSchema",
    "IngressBackendSpecSchema",
    "IngressSpecSchema",
    "KeycloakSpecSchema",
]
