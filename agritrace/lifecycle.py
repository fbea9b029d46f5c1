"""Batch lifecycle stages and the transition table.

A crop schedule walks the pre-harvest stages; harvesting mints a batch that
walks the rest. Every stage has exactly one legal predecessor, so a stage can
only be entered from the one right before it.
"""
from enum import Enum
from typing import Dict, Optional, Union

from agritrace.errors import PreconditionError


class LifecycleStage(str, Enum):
    PLANNED = "planned"
    PLANTED = "planted"
    GROWING = "growing"
    READY_FOR_HARVEST = "ready_for_harvest"
    HARVESTED = "harvested"
    LOT_ACCEPTED = "lot_accepted"
    PAYMENT_CONFIRMED = "payment_confirmed"
    WAREHOUSE_DELIVERED = "warehouse_delivered"
    WAREHOUSE_REGISTERED = "warehouse_registered"
    MARKETPLACE_LISTED = "marketplace_listed"
    EXPORT_PROPOSAL_ACCEPTED = "export_proposal_accepted"
    DELIVERY_AUTHORIZED = "delivery_authorized"
    DELIVERY_INITIATED = "delivery_initiated"
    RECEIPT_COMPLETED = "receipt_completed"
    EXPORT_PAYMENT_CONFIRMED = "export_payment_confirmed"
    PORT_INSPECTION_ASSIGNED = "port_inspection_assigned"
    INSPECTION_REPORT_SUBMITTED = "inspection_report_submitted"
    FEE_INTIMATED = "fee_intimated"
    FEE_PAID = "fee_paid"
    DOCUMENTS_RELEASED = "documents_released"


STAGE_ORDER = list(LifecycleStage)

# target stage -> the only stage it may be entered from
PREDECESSOR: Dict[LifecycleStage, LifecycleStage] = {
    later: earlier for earlier, later in zip(STAGE_ORDER, STAGE_ORDER[1:])
}

PRE_HARVEST_STAGES = STAGE_ORDER[: STAGE_ORDER.index(LifecycleStage.HARVESTED)]
TERMINAL_STAGE = LifecycleStage.DOCUMENTS_RELEASED

StageLike = Union[LifecycleStage, str]


def stage_index(stage: StageLike) -> int:
    return STAGE_ORDER.index(LifecycleStage(stage))


def has_reached(current: StageLike, stage: StageLike) -> bool:
    return stage_index(current) >= stage_index(stage)


def can_transition(current: StageLike, target: StageLike) -> bool:
    return PREDECESSOR.get(LifecycleStage(target)) == LifecycleStage(current)


def ensure_transition(current: StageLike, target: StageLike, *, entity: Optional[str] = None) -> LifecycleStage:
    """Return the target stage, or raise PreconditionError naming the required predecessor."""
    target = LifecycleStage(target)
    if can_transition(current, target):
        return target
    label = f"{entity} " if entity else ""
    required = PREDECESSOR.get(target)
    if required is None:
        raise PreconditionError(f"{label}cannot enter {target.value}: it is an initial stage")
    raise PreconditionError(
        f"{label}is in stage {LifecycleStage(current).value}; "
        f"{target.value} requires {required.value}"
    )
