from __future__ import annotations

from progresspath.internal_core.contracts import AlertResolution
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.notifier import Notifier


def resolve_alert(store: InMemorySessionStore, notifier: Notifier, alert_id: str) -> AlertResolution:
    """Resolve an alert; repeated calls are no-ops and publish nothing."""

    resolution = store.resolve_alert(alert_id)
    if resolution.changed:
        notifier.alert_resolved(resolution.alert, resolution.session)
    return resolution
