import re
import os
from typing import Any

_TRUE, _FALSE = {"True", "true", "yes", "1"}, {"False", "false", "no", "0"}


def _getenv(name: str, *default: Any) -> Any:
    try:
        v = os.environ[name]
        if v in _TRUE:
            return True
        elif v in _FALSE:
            return False
        else:
            return v
    except KeyError:
        pass
    if default:
        return default[0]
    raise KeyError(name)


def _subenv(input: str):
    """
    Substitutes dynamic variables found in input with environment variable(s).

    For example, {POD_NAMESPACE}-operator converts to keycloak-operator if
    POD_NAMESPACE is a defined variable.
    """
    environ = os.environ
    found = re.findall(r"{([^{}]*?)}", input)
    for v in found:
        if v in environ:
            input = input.replace(f"{{{v}}}", str(environ[v]))
    return input


# ------------------------------------------------
# ---- Defaults and environment variables ----
# ------------------------------------------------

#: Name the operator stamps into the managed-by label of owned resources
OPERATOR_NAME = _subenv(str(_getenv("OPERATOR_NAME", "keycloak-operator")))

#: Seconds between periodic resync passes for every Keycloak resource
RESYNC_INTERVAL_SECONDS = float(_getenv("RESYNC_INTERVAL_SECONDS", 30.0))

#: Overall deadline for a single reconcile pass before it is abandoned and rescheduled
RECONCILE_DEADLINE_SECONDS = float(_getenv("RECONCILE_DEADLINE_SECONDS", 60.0))

#: Timeout in seconds for each individual call to the Kubernetes API
API_REQUEST_TIMEOUT_SECONDS = float(_getenv("API_REQUEST_TIMEOUT_SECONDS", 10.0))

#: Number of re-read-and-recompute attempts after an optimistic concurrency conflict
CONFLICT_RETRIES = int(_getenv("CONFLICT_RETRIES", 3))

#: Number of in-pass retries for transient API failures (timeouts, 5xx, throttling)
TRANSIENT_RETRIES = int(_getenv("TRANSIENT_RETRIES", 3))

#: Initial backoff in seconds between retries, doubled on every attempt
RETRY_BACKOFF_SECONDS = float(_getenv("RETRY_BACKOFF_SECONDS", 0.5))

#: Upper bound for the exponential retry backoff
RETRY_BACKOFF_MAX_SECONDS = float(_getenv("RETRY_BACKOFF_MAX_SECONDS", 8.0))

#: Delay in seconds kopf waits before re-running a pass that raised a temporary error
TEMPORARY_ERROR_DELAY_SECONDS = int(_getenv("TEMPORARY_ERROR_DELAY_SECONDS", 15))

#: Maximum number of Keycloak resources reconciled concurrently
WORKER_LIMIT = int(_getenv("WORKER_LIMIT", 4))


class Settings:
    """Operator settings"""

    operator_name: str = OPERATOR_NAME
    resync_interval_seconds: float = RESYNC_INTERVAL_SECONDS
    reconcile_deadline_seconds: float = RECONCILE_DEADLINE_SECONDS
    api_request_timeout_seconds: float = API_REQUEST_TIMEOUT_SECONDS
    conflict_retries: int = CONFLICT_RETRIES
    transient_retries: int = TRANSIENT_RETRIES
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    temporary_error_delay_seconds: int = TEMPORARY_ERROR_DELAY_SECONDS
    worker_limit: int = WORKER_LIMIT

    def __init__(
        self,
        *args,
        operator_name: str = None,
        resync_interval_seconds: float = None,
        reconcile_deadline_seconds: float = None,
        api_request_timeout_seconds: float = None,
        conflict_retries: int = None,
        transient_retries: int = None,
        retry_backoff_seconds: float = None,
        retry_backoff_max_seconds: float = None,
        temporary_error_delay_seconds: int = None,
        worker_limit: int = None,
        **kwargs,
    ):
        if operator_name is not None:
            self.operator_name = operator_name

        if resync_interval_seconds is not None:
            self.resync_interval_seconds = resync_interval_seconds

        if reconcile_deadline_seconds is not None:
            self.reconcile_deadline_seconds = reconcile_deadline_seconds

        if api_request_timeout_seconds is not None:
            self.api_request_timeout_seconds = api_request_timeout_seconds

        if conflict_retries is not None:
            self.conflict_retries = conflict_retries

        if transient_retries is not None:
            self.transient_retries = transient_retries

        if retry_backoff_seconds is not None:
            self.retry_backoff_seconds = retry_backoff_seconds

        if retry_backoff_max_seconds is not None:
            self.retry_backoff_max_seconds = retry_backoff_max_seconds

        if temporary_error_delay_seconds is not None:
            self.temporary_error_delay_seconds = temporary_error_delay_seconds

        if worker_limit is not None:
            self.worker_limit = worker_limit

    def backoff(self, attempt: int) -> float:
        """Exponential backoff delay for the given zero-based retry attempt."""
        return min(
            self.retry_backoff_seconds * (2**attempt), self.retry_backoff_max_seconds
        )
