from typing import Any, Dict, List, NamedTuple, Optional
from kubernetes_asyncio.client import V1Ingress


class ManagedResourceRef(NamedTuple):
    """Identity of the one subordinate resource a reconciler may touch."""

    kind: str
    namespace: str
    name: str

    def __str__(self):
        return f"{self.kind}/{self.namespace}/{self.name}"


class DesiredShape(NamedTuple):
    """Target state of an owned resource, split by merge rule.

    ``owned`` holds the operator enforced fields, compared and overwritten on
    every pass. ``extensible`` holds containers the operator only adds keys to.
    ``resource`` is the fully materialized object used on creation.
    """

    ref: ManagedResourceRef
    owned: Dict[str, Any]
    extensible: Dict[str, Dict[str, str]]
    resource: V1Ingress


class Decision:
    """Outcome of comparing desired and observed state."""

    action: str = None
    mutating: bool = True

    def __init__(self, ref: ManagedResourceRef):
        self.ref = ref

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.ref}>"

    def __eq__(self, other):
        return type(self) is type(other) and self.__dict__ == other.__dict__


class NoOpDecision(Decision):
    action = "noop"
    mutating = False


class CreateDecision(Decision):
    action = "create"

    def __init__(self, ref: ManagedResourceRef, body: V1Ingress):
        super().__init__(ref)
        self.body = body


class PatchDecision(Decision):
    action = "patch"

    def __init__(
        self,
        ref: ManagedResourceRef,
        patch: Dict[str, Any],
        drift_fields: List[str],
        resource_version: Optional[str] = None,
    ):
        super().__init__(ref)
        self.patch = patch
        self.drift_fields = drift_fields
        self.resource_version = resource_version


class DeleteDecision(Decision):
    action = "delete"

    def __init__(self, ref: ManagedResourceRef, resource_version: Optional[str] = None):
        super().__init__(ref)
        self.resource_version = resource_version


class Outcome(NamedTuple):
    """Result of one reconcile pass as surfaced on the parent status."""

    state: str
    reason: Optional[str] = None
    decision: Optional[Decision] = None

    CONVERGED = "Converged"
    PROGRESSING = "Progressing"
    ERROR = "Error"

    @classmethod
    def converged(cls, decision: Decision = None) -> "Outcome":
        return cls(cls.CONVERGED, None, decision)

    @classmethod
    def progressing(cls, decision: Decision) -> "Outcome":
        return cls(cls.PROGRESSING, f"Applied {decision.action} to {decision.ref}", decision)

    @classmethod
    def error(cls, reason: str) -> "Outcome":
        return cls(cls.ERROR, reason, None)

    @property
    def ready(self) -> bool:
        return self.state == self.CONVERGED
