import asyncio
import kopf
import time
from logging import Logger
from collections import defaultdict
from typing import Dict, Optional, Set, Tuple
from marshmallow import ValidationError
from kcop.common.models.reconcile import Outcome
from kcop.resources import KeycloakIngress
from kcop.types.models import KeycloakResources, KeycloakSpec
from kcop.types.schemas import KeycloakSpecSchema
from kcop.types.settings import Settings
from kcop.utils.errors import ReconcileAborted, ReconcileSuperseded
from kcop.utils.helpers import upsert_condition

KEYCLOAK_KIND = KeycloakIngress.KIND
KEYCLOAK_GROUP = KeycloakIngress.GROUP_NAME
KEYCLOAK_VERSION = KeycloakIngress.GROUP_VERSION
KEYCLOAK_PLURAL = KeycloakIngress.PLURAL_NAME

INGRESS_READY = "IngressReady"

# Keycloak resources are keyed by namespace and name
Key = Tuple[str, str]

# Use a set to track which keys are already queued
names_in_queue = set()
# The actual queue for ordered processing
reconciliation_queue: Dict[Key, asyncio.Queue] = defaultdict(asyncio.Queue)
# Locks to prevent race conditions when enqueueing reconciliation requests
reconciliation_locks: Dict[Key, asyncio.Lock] = defaultdict(asyncio.Lock)
# At most one pass runs per Keycloak resource
pass_locks: Dict[Key, asyncio.Lock] = defaultdict(asyncio.Lock)
# When each pending request was first enqueued, and what triggered it
queued_at: Dict[Key, Tuple[float, str]] = {}

_conf = Settings()


def get_sensor():
    """Get sensor from KeycloakIngress class."""
    return getattr(KeycloakIngress, "sensor", None)


def get_conf() -> Settings:
    return getattr(KeycloakIngress, "conf", None) or _conf


async def request_reconciliation(name: str, namespace: str, source: str = "manual"):
    """Request a reconcile pass for a Keycloak resource.

    Enqueues the request only if one is not already pending, so any number of
    triggers arriving before the next pass starts collapse into that one pass.
    Uses a lock to ensure atomicity of the check-and-add operation.
    """
    key = (namespace, name)
    async with reconciliation_locks[key]:
        coalesced = key in names_in_queue
        if not coalesced:
            names_in_queue.add(key)
            queued_at[key] = (time.time(), source)
            await reconciliation_queue[key].put(key)

    sensor = get_sensor()
    if sensor:
        sensor.on_reconcile_queued(name, namespace, coalesced)


# Delayed retry requests per Keycloak resource, kept referenced until they fire
retry_tasks: Dict[Key, Set[asyncio.Task]] = defaultdict(set)


async def _delayed_request(name: str, namespace: str, delay: float, source: str):
    await asyncio.sleep(delay)
    await request_reconciliation(name, namespace, source=source)


def schedule_reconciliation(name: str, namespace: str, delay: float, source: str):
    """Request a pass after `delay` seconds without blocking the caller."""
    task = asyncio.create_task(_delayed_request(name, namespace, delay, source))
    pending = retry_tasks[(namespace, name)]
    pending.add(task)
    task.add_done_callback(pending.discard)


def record_outcome(outcome: Outcome, name: str, namespace: str, meta, status, patch):
    """Write the outcome of a pass to the Keycloak status.

    Nothing is written when the status already reflects the outcome, so steady
    state resync passes do not generate status traffic.
    """
    gen = meta.get("generation", 0)
    _status = status or {}
    ingress_status = {
        "name": KeycloakResources.ingress_name(name),
        "state": outcome.state,
        "reason": outcome.reason,
        "observedGeneration": gen,
    }
    # Nulls in the merge patch remove keys, so the stored status never holds them
    stored_status = {k: v for k, v in ingress_status.items() if v is not None}
    conds = _status.get("conditions", [])
    new_conds = upsert_condition(
        conds,
        {
            "type": INGRESS_READY,
            "status": "True" if outcome.ready else "False",
            "reason": outcome.state,
            "message": outcome.reason or "Ingress matches the desired state",
            "observedGeneration": gen,
        },
    )

    update_fields = []
    if _status.get("ingress") != stored_status:
        patch.status["ingress"] = ingress_status
        update_fields.append("ingress")
    if new_conds != conds:
        patch.status["conditions"] = new_conds
        update_fields.append("conditions")

    sensor = get_sensor()
    if sensor and update_fields:
        sensor.on_status_update(name, namespace, update_fields)


async def reconcile(
    name,
    namespace,
    spec,
    meta,
    status,
    patch,
    logger: Logger,
    trigger_source: str = "manual",
    **kwargs,
) -> Optional[Outcome]:
    """Run one reconcile pass for the ingress of a Keycloak resource.

    Every failure is turned into a status update here; nothing propagates to kopf.
    Returns the recorded outcome, or None when the pass was abandoned.
    """
    conf = get_conf()
    sensor = get_sensor()
    generation = meta.get("generation", 0)
    sensor_state = None
    if sensor:
        sensor_state = sensor.on_reconcile_start(
            name, namespace, generation, trigger_source
        )

    outcome, error = None, None
    try:
        spec_model: KeycloakSpec = KeycloakSpecSchema().load(spec or {})
        ingress = KeycloakIngress.from_spec(
            name,
            namespace,
            spec_model,
            uid=meta.get("uid"),
            generation=meta.get("generation"),
            logger=logger,
        )
        logger.debug(f"Reconciling {KEYCLOAK_KIND}/{name} in {namespace} namespace.")
        outcome = await asyncio.wait_for(
            ingress.synchronize(), timeout=conf.reconcile_deadline_seconds
        )
        logger.debug(f"Reconciled {KEYCLOAK_KIND}/{name} in {namespace} namespace.")
    except ValidationError as e:
        error = e
        logger.error(f"Invalid {KEYCLOAK_KIND} spec: {e.messages}")
        outcome = Outcome.error(f"Invalid spec: {e.messages}")
    except ReconcileSuperseded as e:
        logger.info(f"Reconciliation superseded: {e}")
        await request_reconciliation(name, namespace, source="superseded")
    except ReconcileAborted as e:
        logger.info(f"Reconciliation aborted: {e}")
    except asyncio.TimeoutError as e:
        error = e
        logger.error(
            f"Reconciliation exceeded its deadline of {conf.reconcile_deadline_seconds}s."
        )
        outcome = Outcome.error("Reconcile deadline exceeded")
        schedule_reconciliation(
            name, namespace, conf.temporary_error_delay_seconds, "retry"
        )
    except kopf.TemporaryError as e:
        error = e
        logger.warning(f"Reconciliation will be retried: {e}")
        outcome = Outcome.error(str(e))
        schedule_reconciliation(name, namespace, e.delay or 0, "retry")
    except kopf.PermanentError as e:
        error = e
        logger.error(f"Reconciliation failed permanently: {e}")
        outcome = Outcome.error(str(e))
    except Exception as e:
        error = e
        logger.error(f"Unexpected error during reconcilation: {e}")
        logger.exception(e)
        outcome = Outcome.error(f"Unexpected error: {e}")
        schedule_reconciliation(
            name, namespace, conf.temporary_error_delay_seconds, "retry"
        )
    finally:
        if sensor:
            sensor.on_reconcile_complete(
                name,
                namespace,
                sensor_state,
                outcome.state if outcome else "Aborted",
                error,
            )

    if outcome is not None:
        record_outcome(outcome, name, namespace, meta, status, patch)
        logger.info(f"Ingress state: {outcome.state}. {outcome.reason or ''}".strip())
    return outcome


@kopf.on.resume(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL)
@kopf.on.create(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL)
async def on_create(name, namespace, reason, **kwargs):
    """Request a pass for new and resumed Keycloak resources."""
    await request_reconciliation(
        name, namespace, source=getattr(reason, "value", None) or "create"
    )


@kopf.on.update(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL, field="spec.ingress")
@kopf.on.update(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL, field="spec.hostname")
async def on_ingress_spec_update(name, namespace, old, new, logger: Logger, **kwargs):
    logger.info(f"Ingress configuration changed from {old} to {new}")
    await request_reconciliation(name, namespace, source="update")


@kopf.on.delete(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL, optional=True)
async def on_delete(name, namespace, **kwargs):
    """Clean up scheduling state. The ingress itself is garbage collected through
    its owner reference."""
    key = (namespace, name)
    for task in retry_tasks.pop(key, ()):
        task.cancel()
    reconciliation_queue.pop(key, None)
    reconciliation_locks.pop(key, None)
    pass_locks.pop(key, None)
    queued_at.pop(key, None)
    names_in_queue.discard(key)


@kopf.timer(KEYCLOAK_GROUP, KEYCLOAK_VERSION, KEYCLOAK_PLURAL, initial_delay=1.0, interval=1.0)
async def process_reconciliation_requests(
    name,
    namespace,
    spec,
    meta,
    status,
    patch,
    logger: Logger,
    stopped,
    **kwargs,
):
    """Process reconciliation requests from the queue.

    Processes each request exactly once, even if it was requested multiple
    times while another pass was running. The request is taken off the queue
    before the pass starts, so triggers arriving during the pass schedule
    exactly one follow-up pass.
    """
    if stopped:
        return
    key = (namespace, name)
    if meta.get("deletionTimestamp"):
        return
    try:
        async with pass_locks[key]:
            reconciliation_queue[key].get_nowait()
            enqueued, source = queued_at.pop(key, (time.time(), "queue"))
            names_in_queue.discard(key)
            reconciliation_queue[key].task_done()

            sensor = get_sensor()
            if sensor:
                sensor.on_reconcile_dequeued(name, namespace, time.time() - enqueued)

            start_time = time.time()
            await reconcile(
                name,
                namespace,
                spec,
                meta,
                status,
                patch,
                logger,
                trigger_source=source,
                **kwargs,
            )
            execution_time = time.time() - start_time
            logger.info(
                f"Reconciliation for {name} completed in {execution_time:.2f} seconds"
            )
    except asyncio.QueueEmpty:
        pass
    except Exception as e:
        logger.error(f"Error processing reconciliation request: {e}")
        # Ensure we don't get stuck on failed requests
        names_in_queue.discard(key)


@kopf.timer(
    KEYCLOAK_GROUP,
    KEYCLOAK_VERSION,
    KEYCLOAK_PLURAL,
    initial_delay=5.0,
    interval=_conf.resync_interval_seconds,
)
async def periodic_reconciliation(name, namespace, **kwargs):
    """Resync even without events, so out-of-band drift is eventually corrected."""
    await request_reconciliation(name, namespace, source="resync")
