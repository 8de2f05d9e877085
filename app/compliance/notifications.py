from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class Notifier:
    def notify(self, recipient_id: str, message: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Default notifier: delivery is an external concern, so just log the intent."""

    def notify(self, recipient_id: str, message: str) -> None:
        logger.info("NOTIFY recipient=%s message=%s", recipient_id, message)


@dataclass
class RecordingNotifier(Notifier):
    """Keeps sent messages in memory (used by tests and dry runs)."""

    sent: list[tuple[str, str]] = field(default_factory=list)

    def notify(self, recipient_id: str, message: str) -> None:
        self.sent.append((recipient_id, message))


def notify_all(notifier: Notifier, recipient_ids: list[str], message: str) -> int:
    """Best-effort fan-out; delivery failures are logged and never raised. Returns deliveries attempted OK."""
    delivered = 0
    for rid in recipient_ids:
        try:
            notifier.notify(rid, message)
            delivered += 1
        except Exception as e:
            logger.warning("Notification to recipient=%s failed: %s", rid, e)
    return delivered
