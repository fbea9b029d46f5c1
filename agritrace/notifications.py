# agritrace/notifications.py
"""Best-effort notification fan-out to stakeholder roles.

Delivery is at most once with no retries: a sink that fails is logged and the
caller carries on. Transitions dispatch only after their state change has been
committed, so a notification problem can never undo or block one.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agritrace import models
from agritrace.errors import NotificationDispatchFailure
from agritrace.schemas import NotificationPayload
from agritrace.utils import epoch_ms, short_token, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

NOTIFIED = "NOTIFIED"
FAILED = "FAILED"


class Role(str, Enum):
    BUYER = "buyer"
    EXPORTER = "exporter"
    LAND_INSPECTOR = "land_inspector"
    WAREHOUSE = "warehouse"
    REGULATOR_DDGOTS = "regulator_ddgots"
    REGULATOR_DDGAF = "regulator_ddgaf"
    PORT_INSPECTOR = "port_inspector"


@dataclass
class DispatchResult:
    role: Role
    delivered: bool
    notification_id: str
    error: Optional[str] = None


class NotificationSink(Protocol):
    def deliver(self, notification_id: str, role: Role, payload: NotificationPayload, sent_at: datetime) -> None:
        ...


class LogSink(NotificationSink):
    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logging.getLogger("agritrace.notifications.outbox")

    def deliver(self, notification_id, role, payload, sent_at) -> None:
        self._log.info(
            "%s -> %s [%s] %s%s",
            notification_id,
            role.value,
            payload.event,
            payload.entity_id,
            f" to {', '.join(payload.recipients)}" if payload.recipients else "",
        )


class DatabaseSink(NotificationSink):
    """Appends notification rows through its own session.

    Database errors surface as ``NotificationDispatchFailure``.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def deliver(self, notification_id, role, payload, sent_at) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    models.NotificationRecord(
                        notification_id=notification_id,
                        role=role.value,
                        event=payload.event,
                        entity_id=payload.entity_id,
                        recipients=list(payload.recipients),
                        message=payload.message,
                        data=dict(payload.data),
                        created_at=sent_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise NotificationDispatchFailure(f"could not store notification {notification_id}: {exc}") from exc


class NotificationDispatcher:
    def __init__(self, sink: NotificationSink | None = None, *, clock: Clock | None = None):
        self._sink = sink or LogSink()
        self._clock = clock or utcnow

    def notify(self, role: Role | str, payload: NotificationPayload) -> DispatchResult:
        role = Role(role)
        sent_at = self._clock()
        notification_id = f"NTF-{epoch_ms(sent_at)}-{short_token()}"
        try:
            self._sink.deliver(notification_id, role, payload, sent_at)
        except Exception as exc:  # best effort: the transition already happened
            logger.warning(
                "Notification %s to %s for %s was dropped: %s",
                notification_id,
                role.value,
                payload.entity_id,
                exc,
                exc_info=True,
            )
            return DispatchResult(role=role, delivered=False, notification_id=notification_id, error=str(exc))
        return DispatchResult(role=role, delivered=True, notification_id=notification_id)

    def notify_roles(self, roles: Iterable[Role | str], payload: NotificationPayload) -> Dict[str, str]:
        """Notify each role once and return the response ``notifications`` map."""
        outcome: Dict[str, str] = {}
        for role in roles:
            result = self.notify(role, payload)
            outcome[result.role.value] = NOTIFIED if result.delivered else FAILED
        return outcome
