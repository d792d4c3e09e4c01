"""
Wind SCADA - Anomaly Notifications
Delivery boundary for anomaly summaries. The default notifier only logs;
deployments register their own (mail, in-app inbox, chat) on the app.
"""
import logging
from collections import namedtuple

from flask import current_app

log = logging.getLogger(__name__)

ANOMALY_LINK = '/energy/scada/anomalies'

NotificationSummary = namedtuple(
    'NotificationSummary', 'title message link total critical_count warning_count'
)


def build_summary(anomalies: list) -> NotificationSummary:
    """Severity-bucketed summary of newly persisted anomalies (AnomalyResult list)."""
    critical = sum(1 for a in anomalies if a.severity == 'CRITICAL')
    warning = sum(1 for a in anomalies if a.severity == 'WARNING')

    if critical > 0:
        title = f"SCADA: {critical} critical anomal{'y' if critical == 1 else 'ies'} detected"
    else:
        title = f"SCADA: {warning} warning{'' if warning == 1 else 's'} detected"

    if len(anomalies) == 1:
        a = anomalies[0]
        message = f"{a.turbine_name} ({a.park_name}): {a.message}"
    else:
        turbines = len({a.turbine_id for a in anomalies})
        message = f"{len(anomalies)} anomalies detected across {turbines} turbine(s)."

    return NotificationSummary(title, message, ANOMALY_LINK, len(anomalies), critical, warning)


class Notifier:
    """Channels: 'in_app' and 'email'. Implementations may raise; callers isolate failures."""

    def notify(self, tenant_id: str, summary: NotificationSummary, channel: str):
        raise NotImplementedError


class LogNotifier(Notifier):

    def notify(self, tenant_id, summary, channel):
        log.info(f"[{tenant_id}] ({channel}) {summary.title} - {summary.message} -> {summary.link}")


def register_notifier(app, notifier: Notifier):
    app.extensions['scada_notifier'] = notifier


def get_notifier() -> Notifier:
    return current_app.extensions.get('scada_notifier') or LogNotifier()
