# agritrace/compliance.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Any, List, Optional

from sqlalchemy.orm import Session

from agritrace import models, schemas
from agritrace.errors import NotFoundError, PreconditionError, ValidationError
from agritrace.notifications import NotificationDispatcher, Role
from agritrace.utils import epoch_ms, short_token, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

COMPLIANT_VALUES = {"eudr_compliant", "compliant"}


class ComplianceRecorder:
    """Stores land-mapping / EUDR submissions for DDGOTS review.

    Submissions are append-only: validation checks presence of the identifying
    fields and nothing else. Review by DDGOTS happens later and only ever
    changes review columns.
    """

    def __init__(self, dispatcher: NotificationDispatcher, *, clock: Clock | None = None):
        self._dispatcher = dispatcher
        self._clock = clock or utcnow

    @staticmethod
    def _validate(data: schemas.ComplianceSubmission) -> None:
        missing = []
        if not data.farmer_id:
            missing.append("farmerId")
        if not data.plot_id:
            missing.append("plotId")
        if data.eudr_data is None or not data.eudr_data.compliance_status:
            missing.append("eudrData.complianceStatus")
        if missing:
            raise ValidationError(f"Missing required compliance fields: {', '.join(missing)}")

    def record_compliance(self, db: Session, data: schemas.ComplianceSubmission) -> Dict[str, Any]:
        self._validate(data)
        eudr = data.eudr_data
        inspector = data.inspector or schemas.InspectorInfo()
        farmer = data.farmer_data or schemas.FarmerInfo()
        received_at = self._clock()

        record = models.ComplianceRecord(
            record_id=f"COMPLIANCE-{epoch_ms(received_at)}-{short_token()}",
            farmer_id=data.farmer_id,
            plot_id=data.plot_id,
            land_mapping_id=data.land_mapping_id,
            gps_coordinates=eudr.gps_coordinates,
            deforestation_risk=eudr.deforestation_risk,
            compliance_status=eudr.compliance_status,
            cutoff_date=eudr.cutoff_date,
            risk_assessment=eudr.risk_assessment,
            inspector_id=inspector.inspector_id,
            inspector_name=inspector.inspector_name,
            inspection_date=inspector.inspection_date,
            farmer_name=farmer.farmer_name,
            county=farmer.county,
            district=farmer.district,
            village=farmer.village,
            received_at=received_at,
            status="received",
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(
            "Stored compliance %s for farmer %s plot %s (%s, risk %s)",
            record.record_id,
            record.farmer_id,
            record.plot_id,
            record.compliance_status,
            record.deforestation_risk,
        )

        notifications = self._dispatcher.notify_roles(
            [Role.REGULATOR_DDGOTS],
            schemas.NotificationPayload(
                event="compliance_received",
                entity_id=record.record_id,
                message="New land mapping compliance data received for review",
                data={"farmerId": record.farmer_id, "plotId": record.plot_id},
            ),
        )
        return {
            "stored": True,
            "recordId": record.record_id,
            "record": schemas.ComplianceRecordOut.model_validate(record),
            "notifications": notifications,
        }

    def review_compliance(
        self, db: Session, record_id: str, review: schemas.ComplianceReviewIn
    ) -> Dict[str, Any]:
        record = db.get(models.ComplianceRecord, record_id)
        if record is None:
            raise NotFoundError(f"Compliance record {record_id} not found")
        if record.status != "received":
            raise PreconditionError(f"Compliance record {record_id} was already {record.status}")

        approved = review.decision == "approve"
        record.status = "approved" if approved else "reviewed"
        record.review_decision = "approved" if approved else "rejected"
        record.reviewed_by = review.reviewer_id
        record.reviewed_at = self._clock()
        record.review_notes = review.notes
        db.commit()
        db.refresh(record)
        logger.info("Compliance %s %s by %s", record_id, record.review_decision, review.reviewer_id)

        notifications = self._dispatcher.notify_roles(
            [Role.LAND_INSPECTOR],
            schemas.NotificationPayload(
                event=f"compliance_{record.review_decision}",
                entity_id=record.record_id,
                message=f"DDGOTS {record.review_decision} land mapping {record.land_mapping_id or record.plot_id}",
                recipients=[record.inspector_id] if record.inspector_id else [],
            ),
        )
        return {
            "success": True,
            "record": schemas.ComplianceRecordOut.model_validate(record),
            "notifications": notifications,
        }

    @staticmethod
    def list_compliance(db: Session, farmer_id: Optional[str] = None) -> List[models.ComplianceRecord]:
        q = db.query(models.ComplianceRecord)
        if farmer_id:
            q = q.filter(models.ComplianceRecord.farmer_id == farmer_id)
        return q.order_by(models.ComplianceRecord.received_at.desc()).all()

    @staticmethod
    def compliance_status_for(db: Session, farmer_id: str, plot_id: str) -> str:
        """Batch compliance status derived from the latest submission for the plot."""
        latest = (
            db.query(models.ComplianceRecord)
            .filter(
                models.ComplianceRecord.farmer_id == farmer_id,
                models.ComplianceRecord.plot_id == plot_id,
            )
            .order_by(models.ComplianceRecord.received_at.desc())
            .first()
        )
        if latest is None:
            return "pending"
        if latest.review_decision == "rejected":
            return "non_compliant"
        if (latest.compliance_status or "").lower() in COMPLIANT_VALUES:
            return "EUDR_COMPLIANT"
        if (latest.compliance_status or "").lower() == "non_compliant":
            return "non_compliant"
        return "pending"
