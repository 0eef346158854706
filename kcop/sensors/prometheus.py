"""Prometheus monitoring backend for the Keycloak operator.

PrometheusMonitor turns operator lifecycle events into Prometheus metrics:

1. Reconciliation loop health - pass duration, outcomes, coalesced triggers, errors
2. Owned resource sync - operation counts, latency, drift detection
3. Status updates on the parent resource

All metrics are labelled with the Keycloak name and namespace.
"""

from typing import Dict, List, Optional, Any
import time
import logging

from prometheus_client import Counter, Histogram

from kcop.sensors.base import OperatorSensor

logger = logging.getLogger(__name__)


class PrometheusMonitor(OperatorSensor):
    """Prometheus metrics monitor for the Keycloak operator.

    Metrics are exposed through prometheus_client's default registry and
    served by the metrics HTTP server (see kcop.sensors.server).
    """

    def __init__(self, registry=None):
        super().__init__()
        kwargs = {"registry": registry} if registry is not None else {}

        # =============================================================================
        # Reconciliation Loop Metrics
        # =============================================================================

        self.reconcile_duration = Histogram(
            "kcop_reconcile_duration_seconds",
            "Time spent in a reconcile pass",
            labelnames=["name", "namespace", "trigger_source", "outcome"],
            buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            **kwargs,
        )

        self.reconcile_total = Counter(
            "kcop_reconcile_total",
            "Total number of reconcile passes",
            labelnames=["name", "namespace", "trigger_source", "outcome"],
            **kwargs,
        )

        self.reconcile_errors = Counter(
            "kcop_reconcile_errors_total",
            "Total number of failed reconcile passes",
            labelnames=["name", "namespace", "error_type"],
            **kwargs,
        )

        self.reconcile_requests = Counter(
            "kcop_reconcile_requests_total",
            "Total number of reconcile triggers, split by whether they were coalesced",
            labelnames=["name", "namespace", "coalesced"],
            **kwargs,
        )

        self.reconcile_queue_wait_seconds = Histogram(
            "kcop_reconcile_queue_wait_seconds",
            "Time a reconcile request stayed pending",
            labelnames=["name", "namespace"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
            **kwargs,
        )

        # =============================================================================
        # Owned Resource Sync Metrics
        # =============================================================================

        self.resource_sync_duration = Histogram(
            "kcop_resource_sync_duration_seconds",
            "Time spent writing owned resources",
            labelnames=["name", "resource_name", "namespace", "resource_type", "operation", "result"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
            **kwargs,
        )

        self.resource_sync_total = Counter(
            "kcop_resource_sync_total",
            "Total number of owned resource writes",
            labelnames=["name", "resource_name", "namespace", "resource_type", "operation", "result"],
            **kwargs,
        )

        self.resource_sync_errors = Counter(
            "kcop_resource_sync_errors_total",
            "Total number of failed owned resource writes",
            labelnames=["name", "resource_name", "namespace", "resource_type", "error_type"],
            **kwargs,
        )

        self.resource_drift_detected = Counter(
            "kcop_resource_drift_detected_total",
            "Total number of drift detections on operator owned fields",
            labelnames=["name", "resource_name", "namespace", "resource_type", "drift_field"],
            **kwargs,
        )

        # =============================================================================
        # Status Update Metrics
        # =============================================================================

        self.status_updates = Counter(
            "kcop_status_updates_total",
            "Total number of status updates",
            labelnames=["name", "namespace", "update_field"],
            **kwargs,
        )

        logger.info("PrometheusMonitor initialized with all metrics")

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
        """Record pass start time."""
        return {
            "start_time": time.time(),
            "trigger_source": trigger_source,
        }

    def on_reconcile_complete(
        self,
        name: str,
        namespace: str,
        state: Optional[Dict[str, Any]],
        outcome: str,
        error: Optional[Exception] = None,
    ) -> None:
        """Record pass duration and outcome."""
        if state:
            duration = time.time() - state["start_time"]
            trigger_source = state["trigger_source"]

            self.reconcile_duration.labels(
                name=name,
                namespace=namespace,
                trigger_source=trigger_source,
                outcome=outcome,
            ).observe(duration)

            self.reconcile_total.labels(
                name=name,
                namespace=namespace,
                trigger_source=trigger_source,
                outcome=outcome,
            ).inc()

        if error:
            self.reconcile_errors.labels(
                name=name,
                namespace=namespace,
                error_type=error.__class__.__name__,
            ).inc()

    def on_reconcile_queued(self, name: str, namespace: str, coalesced: bool) -> None:
        self.reconcile_requests.labels(
            name=name,
            namespace=namespace,
            coalesced=str(coalesced).lower(),
        ).inc()

    def on_reconcile_dequeued(self, name: str, namespace: str, wait_time: float) -> None:
        self.reconcile_queue_wait_seconds.labels(
            name=name,
            namespace=namespace,
        ).observe(wait_time)

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
        return {"start_time": time.time()}

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
        """Record write duration and result."""
        result = "success" if success else "failure"
        labels = dict(
            name=name,
            resource_name=resource_name,
            namespace=namespace,
            resource_type=resource_type,
        )
        if state:
            self.resource_sync_duration.labels(
                operation=operation, result=result, **labels
            ).observe(time.time() - state["start_time"])

        self.resource_sync_total.labels(
            operation=operation, result=result, **labels
        ).inc()

        if error:
            self.resource_sync_errors.labels(
                error_type=error.__class__.__name__, **labels
            ).inc()

    def on_resource_drift_detected(
        self,
        name: str,
        resource_name: str,
        namespace: str,
        resource_type: str,
        drift_fields: List[str],
    ) -> None:
        for field in drift_fields:
            self.resource_drift_detected.labels(
                name=name,
                resource_name=resource_name,
                namespace=namespace,
                resource_type=resource_type,
                drift_field=field,
            ).inc()

    def on_status_update(
        self,
        name: str,
        namespace: str,
        update_fields: List[str],
    ) -> None:
        for field in update_fields:
            self.status_updates.labels(
                name=name,
                namespace=namespace,
                update_field=field,
            ).inc()
