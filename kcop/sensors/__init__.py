"""Keycloak Operator Sensor Framework.

Hook based instrumentation of operator lifecycle events:

- OperatorSensor: Base class defining lifecycle hooks (all no-ops)
- SensorDelegate: Fan-out of events to several sensor backends
- PrometheusMonitor: Prometheus metrics exporter

Usage:
    from kcop.sensors import SensorDelegate, PrometheusMonitor

    delegate = SensorDelegate()
    delegate.add(PrometheusMonitor())
"""

from kcop.sensors.base import OperatorSensor
from kcop.sensors.delegate import SensorDelegate
from kcop.sensors.prometheus import PrometheusMonitor
from kcop.sensors.server import init_metrics_server

__all__ = [
    "OperatorSensor",
    "SensorDelegate",
    "PrometheusMonitor",
    "init_metrics_server",
]
