# agritrace/deps.py
from datetime import datetime
from functools import lru_cache
from typing import Callable

from fastapi import Depends

from agritrace.compliance import ComplianceRecorder
from agritrace.config import settings
from agritrace.db import SessionLocal
from agritrace.notifications import DatabaseSink, LogSink, NotificationDispatcher
from agritrace.workflow import BatchWorkflow


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    if settings.NOTIFICATION_BACKEND == "database":
        return NotificationDispatcher(DatabaseSink(SessionLocal))
    return NotificationDispatcher(LogSink())


@lru_cache
def get_workflow() -> BatchWorkflow:
    # one instance per process: the ledger's per-batch locks live on it
    return BatchWorkflow(get_dispatcher(), config=settings)


def get_compliance_recorder(svc: BatchWorkflow = Depends(get_workflow)) -> ComplianceRecorder:
    return svc.compliance


def get_clock(svc: BatchWorkflow = Depends(get_workflow)) -> Callable[[], datetime]:
    return svc.clock
