"""Base sensor classes for operator monitoring.

This module defines the base OperatorSensor class that provides lifecycle hooks
for monitoring operator events. All hooks are no-ops by default, allowing
subclasses to override only the events they care about.

- Hooks come in pairs: on_X_start() and on_X_complete()
- Start hooks return an optional state dict for tracking multi-phase operations
- Complete hooks receive the state dict from their corresponding start hook
"""

from typing import Dict, List, Optional, Any
import logging

logger = logging.getLogger(__name__)


class OperatorSensor:
    """Base sensor class for Keycloak operator monitoring.

    Hooks cover two categories:
    1. Reconciliation lifecycle (one pass per Keycloak resource)
    2. Resource operations (create/patch/delete of owned resources, drift)

    Example:
        class LoggingSensor(OperatorSensor):
            def on_reconcile_start(self, name, namespace, generation, trigger_source):
                return {'start_time': time.time()}

            def on_reconcile_complete(self, name, namespace, state, outcome, error=None):
                duration = time.time() - state['start_time']
                logger.info(f"Reconciled {name} in {duration}s")
    """

    # =============================================================================
    # Reconciliation Lifecycle Hooks
    # =============================================================================

    def on_reconcile_start(
        self,
        name: str,
        namespace: str,
        generation: int,
        trigger_source: str,
    ) -> Optional[Dict[str, Any]]:
        """Called when a reconcile pass begins.

        Args:
            name: Keycloak resource name
            namespace: Kubernetes namespace
            generation: Resource generation number
            trigger_source: What triggered the pass (queue, timer, watch, ...)

        Returns:
            Optional state dict passed to on_reconcile_complete
        """
        pass

    def on_reconcile_complete(
        self,
        name: str,
        namespace: str,
        state: Optional[Dict[str, Any]],
        outcome: str,
        error: Optional[Exception] = None,
    ) -> None:
        """Called when a reconcile pass completes.

        Args:
            name: Keycloak resource name
            namespace: Kubernetes namespace
            state: State dict returned from on_reconcile_start
            outcome: Converged, Progressing or Error
            error: Exception if the pass failed
        """
        pass

    def on_reconcile_queued(
        self,
        name: str,
        namespace: str,
        coalesced: bool,
    ) -> None:
        """Called when a reconcile request is received.

        Args:
            name: Keycloak resource name
            namespace: Kubernetes namespace
            coalesced: True when a request was already pending and this one was merged into it
        """
        pass

    def on_reconcile_dequeued(
        self,
        name: str,
        namespace: str,
        wait_time: float,
    ) -> None:
        """Called when a pending reconcile request is picked up.

        Args:
            name: Keycloak resource name
            namespace: Kubernetes namespace
            wait_time: Time the request spent pending (seconds)
        """
        pass

    # =============================================================================
    # Resource Operation Hooks
    # =============================================================================

    def on_resource_sync_start(
        self,
        name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
    ) -> Optional[Dict[str, Any]]:
        """Called before a mutating call against an owned resource.

        Args:
            name: Keycloak resource name
            resource_name: Owned resource name
            namespace: Kubernetes namespace
            resource_type: Type of resource (ingress)

        Returns:
            Optional state dict passed to on_resource_sync_complete
        """
        pass

    def on_resource_sync_complete(
        self,
        name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        state: Optional[Dict[str, Any]],
        operation: str,
        success: bool,
        error: Optional[Exception] = None,
    ) -> None:
        """Called after a mutating call against an owned resource.

        Args:
            operation: create, patch or delete
            success: Whether the call succeeded
            error: Exception if the call failed
        """
        pass

    def on_resource_drift_detected(
        self,
        name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_fields: List[str],
    ) -> None:
        """Called when operator owned fields diverge from the desired state.

        Args:
            drift_fields: Owned fields that drifted (annotations, defaultBackend, ...)
        """
        pass

    def on_status_update(
        self,
        name: str,
        namespace: str,
        update_fields: List[str],
    ) -> None:
        """Called when the Keycloak status is patched.

        Args:
            update_fields: Status fields that were written
        """
        pass

    def asdict(self) -> Dict[str, Any]:
        """Return sensor state as dictionary."""
        return {}
