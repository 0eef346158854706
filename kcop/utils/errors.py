import json
import asyncio
import aiohttp
import kopf
import kubernetes_asyncio

_ALREADY_EXISTS = "alreadyexists"
_NOT_FOUND = "notfound"
_CONFLICT = "conflict"

# Status codes worth retrying: request timeout, throttling and server side failures
_TRANSIENT_STATUSES = (408, 429, 500, 502, 503, 504)


class ReconcileAborted(Exception):
    """Raised when a pass stops before a mutating call because its parent is gone."""


class ReconcileSuperseded(ReconcileAborted):
    """Raised when the parent moved to a newer generation while a pass was running."""


def _reason(ex: kubernetes_asyncio.client.ApiException) -> str:
    try:
        err = json.loads(ex.body) if ex.body else {}
    except (json.JSONDecodeError, TypeError):
        return ""
    return str(err.get("reason", "")).lower()


def already_exists_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    else:
        return ex.status == 409 and _reason(ex) == _ALREADY_EXISTS


def conflict_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    """True for optimistic concurrency failures (stale resourceVersion)."""
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    else:
        return ex.status == 409 and _reason(ex) in (_CONFLICT, "")


def not_found_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    else:
        return ex.status == 404


def transient_error(ex: Exception) -> bool:
    """True for failures that are expected to go away on their own."""
    if isinstance(ex, kubernetes_asyncio.client.ApiException):
        return ex.status in _TRANSIENT_STATUSES
    return isinstance(ex, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError))


def convert_api_exception(
    ex: kubernetes_asyncio.client.ApiException, permanent: bool = None, delay: float = 30
):
    """
    Convert kubernetes ApiException to a Kopf-friendly exception.

    Args:
        ex: The ApiException to convert
        permanent: If True, raises PermanentError (won't retry). If False, raises TemporaryError (will retry).
                   If None, automatically determines based on status code.
        delay: Seconds kopf waits before retrying a temporary error.

    Raises:
        kopf.TemporaryError or kopf.PermanentError with serializable error details
    """
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        raise ex

    error_msg = f"Kubernetes API error ({ex.status}): {ex.reason}"

    try:
        if ex.body:
            body = json.loads(ex.body)
            if "message" in body:
                error_msg = f"{error_msg} - {body['message']}"
    except (json.JSONDecodeError, AttributeError, TypeError):
        pass

    # 4xx errors (except 408, 409, 429) are typically permanent
    if permanent is None:
        is_permanent = 400 <= ex.status < 500 and ex.status not in (408, 409, 429)
    else:
        is_permanent = permanent

    if is_permanent:
        raise kopf.PermanentError(error_msg) from ex
    else:
        raise kopf.TemporaryError(error_msg, delay=delay) from ex
