import datetime
import kopf
from kcop.handlers.keycloak import names_in_queue


@kopf.on.probe(id="now")
def get_current_timestamp(**kwargs):
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@kopf.on.probe(id="pendingReconciles")
def get_pending_reconciles(**kwargs):
    return len(names_in_queue)
