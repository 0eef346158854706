from .keycloak_ingress import KeycloakIngress

__all__ = [
    "KeycloakIngress",
]
