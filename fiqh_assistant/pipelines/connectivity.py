from __future__ import annotations

from fiqh_assistant.schemas.models import ConnectivityStatus
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics

log = get_logger(__name__)

_RECONCILED = {ConnectivityStatus.CONNECTED, ConnectivityStatus.OFFLINE, ConnectivityStatus.MISSING_TABLE}


class ConnectivityState:
    """Process-wide remote availability shared by reference between the pipelines.

    ``loading`` resolves once per reconciliation; afterwards the only transition is
    ``connected -> offline`` until the next reconciliation.
    """

    def __init__(self, status: ConnectivityStatus = ConnectivityStatus.LOADING) -> None:
        self._status = status
        self.last_error: str | None = None

    @property
    def status(self) -> ConnectivityStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectivityStatus.CONNECTED

    @property
    def setup_required(self) -> bool:
        return self._status is ConnectivityStatus.MISSING_TABLE

    def begin_reconciliation(self) -> None:
        self._status = ConnectivityStatus.LOADING

    def resolve(self, status: ConnectivityStatus, error: str | None = None) -> None:
        if status not in _RECONCILED:
            raise ValueError(f"reconciliation cannot resolve to {status.value}")
        self._status = status
        self.last_error = error
        get_metrics().increment_counter(f"reconcile::{status.value}")

    def demote(self, reason: str) -> bool:
        if self._status is not ConnectivityStatus.CONNECTED:
            return False
        self._status = ConnectivityStatus.OFFLINE
        self.last_error = reason
        log.warning("connectivity_demoted", reason=reason)
        return True
