from typing import Mapping, Optional
from kcop.types.base import BaseModel


class HostnameSpec(BaseModel):
    """Hostname configuration of a Keycloak deployment."""

    #: Public hostname routed to the server. Omitted means catch-all routing.
    hostname: Optional[str]


class IngressBackendResource(BaseModel):
    """Typed local object used as an ingress backend instead of a service."""

    api_group: Optional[str]
    kind: str
    name: str


class IngressBackendSpec(BaseModel):
    """Custom backend selection. At most one selector may be set."""

    #: Overrides the name of the backend service.
    service_name: Optional[str]
    #: Routes to a typed resource instead of a service.
    resource: Optional[IngressBackendResource]


class IngressSpec(BaseModel):
    enabled: bool
    class_name: Optional[str]
    annotations: Optional[Mapping[str, str]]
    backend: Optional[IngressBackendSpec]


class KeycloakSpec(BaseModel):
    """Keycloak CRD spec (only the fields consumed by the ingress reconciler)."""

    hostname: Optional[HostnameSpec]
    ingress: IngressSpec
