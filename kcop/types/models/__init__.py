from .keycloak_resources import KeycloakResources
from .keycloak_spec import (
    HostnameSpec,
    IngressBackendResource,
    IngressBackendSpec,
    IngressSpec,
    KeycloakSpec,
)

__all__ = [
    "KeycloakResources",
    "HostnameSpec",
    "IngressBackendResource",
    "IngressBackendSpec",
    "IngressSpec",
    "KeycloakSpec",
]
