# agritrace/workflow.py
"""Batch lifecycle orchestration.

Every operation here is one externally triggered step: load the batch, check
it sits on the required predecessor stage, write the step's record, advance
the stage with a history row, commit, then notify. A step that fails its
checks raises before anything is written or sent.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agritrace import inventory, models, schemas
from agritrace.compliance import ComplianceRecorder
from agritrace.config import Settings, settings as default_settings
from agritrace.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from agritrace.ledger import LotLedger
from agritrace.lifecycle import LifecycleStage as Stage, ensure_transition, has_reached
from agritrace.notifications import NotificationDispatcher, Role
from agritrace.utils import (
    crop_token,
    epoch_ms,
    parse_datetime,
    short_token,
    to_aware_utc,
    utcnow,
    weight_variance,
    window_status,
    within_tolerance,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ACCEPTED = "ACCEPTED"
VARIANCE_REVIEW = "VARIANCE_REVIEW"

# milliseconds a harvest may move forward to find a free batch code
BATCH_CODE_ATTEMPTS = 5

EXPORT_DOCUMENTS = [
    "EUDR Compliance Certificate",
    "Quality Control Certificate",
    "Satellite Monitoring Report",
    "Deforestation Certificate",
    "Certificate of Origin",
    "Fumigation & Phytosanitary Certificate",
    "Good Practice Certificate",
]


def make_batch_code(crop_type: str, farmer_id: str, ts: datetime) -> str:
    return f"BATCH-{crop_token(crop_type)}-{epoch_ms(ts)}-{farmer_id}"


class BatchWorkflow:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        ledger: LotLedger | None = None,
        compliance: ComplianceRecorder | None = None,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        self.clock = clock or utcnow
        self._dispatcher = dispatcher
        self._settings = config or default_settings
        self.ledger = ledger or LotLedger(
            dispatcher, clock=self.clock, interested_buyers=self._settings.INTERESTED_BUYERS
        )
        self.compliance = compliance or ComplianceRecorder(dispatcher, clock=self.clock)

    # ---------- helpers ----------

    @staticmethod
    def get_batch(db: Session, batch_code: str) -> models.Batch:
        batch = db.get(models.Batch, batch_code)
        if batch is None:
            raise NotFoundError(f"Batch {batch_code} not found")
        return batch

    @staticmethod
    def _require(batch: models.Batch, target: Stage) -> None:
        ensure_transition(batch.lifecycle_stage, target, entity=f"Batch {batch.batch_code}")

    @staticmethod
    def _advance(db: Session, batch: models.Batch, target: Stage, *, actor: Optional[str], at: datetime) -> None:
        previous = batch.lifecycle_stage
        batch.lifecycle_stage = ensure_transition(previous, target, entity=f"Batch {batch.batch_code}").value
        batch.updated_at = at
        db.add(
            models.BatchEvent(
                batch_code=batch.batch_code,
                from_stage=previous,
                to_stage=batch.lifecycle_stage,
                actor=actor,
                occurred_at=at,
            )
        )

    def _require_transaction(self, db: Session, batch_code: str, transaction_code: str) -> models.LotTransaction:
        txn = self.ledger.get_transaction(db, batch_code)
        if txn is None:
            raise PreconditionError(f"Batch {batch_code} has no accepted lot transaction")
        if txn.transaction_code != transaction_code:
            raise ValidationError(f"Transaction {transaction_code} does not belong to batch {batch_code}")
        return txn

    @staticmethod
    def _contract(db: Session, batch_code: str) -> models.ExportContract:
        contract = db.get(models.ExportContract, batch_code)
        if contract is None:
            raise PreconditionError(f"Batch {batch_code} has no accepted export proposal")
        return contract

    def _notify(
        self,
        roles: Iterable[Role],
        event: str,
        entity_id: str,
        message: str,
        *,
        recipients: Optional[List[Optional[str]]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        payload = schemas.NotificationPayload(
            event=event,
            entity_id=entity_id,
            message=message,
            recipients=[r for r in (recipients or []) if r],
            data=data or {},
        )
        return self._dispatcher.notify_roles(roles, payload)

    # ---------- harvest ----------

    @staticmethod
    def _mint_batch_code(db: Session, schedule: models.CropSchedule, now: datetime) -> str:
        """BATCH-<CROP>-<ms>-<farmerId>; a code already taken moves on to the next millisecond."""
        for offset in range(BATCH_CODE_ATTEMPTS):
            code = make_batch_code(schedule.crop_type, schedule.farmer_id, now + timedelta(milliseconds=offset))
            if db.get(models.Batch, code) is None:
                return code
        raise PreconditionError(f"Could not mint a batch code for {schedule.schedule_id}; retry the harvest")

    def _record_harvest(
        self, db: Session, schedule: models.CropSchedule, data: schemas.HarvestIn, harvest_date: datetime, now: datetime
    ) -> models.Batch:
        batch = models.Batch(
            batch_code=self._mint_batch_code(db, schedule, now),
            schedule_id=schedule.schedule_id,
            farmer_id=schedule.farmer_id,
            plot_id=schedule.plot_id,
            crop_type=schedule.crop_type,
            crop_variety=schedule.crop_variety,
            actual_yield=data.actual_yield,
            quality_grade=data.quality_grade,
            harvest_date=harvest_date,
            gps_coordinates=data.gps_coordinates,
            storage_location=data.storage_location,
            compliance_status=self.compliance.compliance_status_for(db, schedule.farmer_id, schedule.plot_id),
            lifecycle_stage=Stage.HARVESTED.value,
            created_at=now,
            updated_at=now,
        )
        schedule.status = Stage.HARVESTED.value
        schedule.actual_yield = data.actual_yield
        schedule.quality_grade = data.quality_grade
        schedule.actual_harvest_date = harvest_date
        schedule.storage_location = data.storage_location
        db.add(batch)
        db.add(
            models.BatchEvent(
                batch_code=batch.batch_code,
                from_stage=Stage.READY_FOR_HARVEST.value,
                to_stage=Stage.HARVESTED.value,
                actor=schedule.farmer_id,
                occurred_at=now,
            )
        )
        return batch

    def harvest(self, db: Session, schedule_id: str, data: schemas.HarvestIn) -> Dict[str, Any]:
        schedule = inventory.get_schedule(db, schedule_id)
        ensure_transition(schedule.status, Stage.HARVESTED, entity=f"Crop schedule {schedule_id}")
        harvest_date = parse_datetime(data.harvest_date, "harvestDate")
        now = self.clock()

        for _ in range(BATCH_CODE_ATTEMPTS):
            batch = self._record_harvest(db, schedule, data, harvest_date, now)
            try:
                db.commit()
                break
            except IntegrityError:
                db.rollback()
                schedule = inventory.get_schedule(db, schedule_id)
                if schedule.status == Stage.HARVESTED.value:
                    raise PreconditionError(f"Crop schedule {schedule_id} was already harvested")
                # another session took the batch code first
                logger.info("Batch code %s was taken concurrently; minting again", batch.batch_code)
        else:
            raise PreconditionError(f"Could not mint a batch code for {schedule_id}; retry the harvest")
        db.refresh(batch)
        db.refresh(schedule)
        logger.info("Harvested %s: batch %s, %skg", schedule_id, batch.batch_code, batch.actual_yield)

        notifications = self._notify(
            [Role.LAND_INSPECTOR, Role.WAREHOUSE, Role.REGULATOR_DDGOTS, Role.REGULATOR_DDGAF],
            "harvest_recorded",
            batch.batch_code,
            f"{batch.crop_type} harvest of {batch.actual_yield:g}kg recorded for farmer {batch.farmer_id}",
            data={"scheduleId": schedule_id, "complianceStatus": batch.compliance_status},
        )
        return {
            "success": True,
            "batchCode": batch.batch_code,
            "batch": schemas.BatchOut.model_validate(batch),
            "schedule": inventory.describe_schedule(db, schedule),
            "harvestAlertEligible": schedule.status == Stage.READY_FOR_HARVEST.value,
            "notifications": notifications,
        }

    # ---------- lot sale ----------

    def accept_lot(self, db: Session, batch_code: str, buyer_id: str) -> Dict[str, Any]:
        batch = self.get_batch(db, batch_code)

        def advance(txn: models.LotTransaction) -> None:
            # committed by the ledger together with the transaction row
            self._advance(db, batch, Stage.LOT_ACCEPTED, actor=buyer_id, at=txn.accepted_at)

        result = self.ledger.propose_lot(db, batch_code, buyer_id, on_accept=advance)
        if not result.accepted:
            raise ConflictError(result.message, reason=result.reason, winning_buyer=result.winning_buyer)

        txn = result.transaction
        db.refresh(batch)
        return {
            "success": True,
            "accepted": True,
            "transactionCode": txn.transaction_code,
            "message": result.message,
            "transaction": schemas.LotTransactionOut.model_validate(txn),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": result.notifications,
        }

    def confirm_payment(self, db: Session, data: schemas.PaymentConfirmationIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.PAYMENT_CONFIRMED)
        txn = self._require_transaction(db, batch.batch_code, data.transaction_code)
        if not data.farmer_confirmation.confirmed:
            raise ValidationError("Payment must be confirmed by the farmer")
        now = self.clock()

        payment = models.PaymentRecord(
            transaction_code=txn.transaction_code,
            batch_code=batch.batch_code,
            amount=data.payment_details.amount,
            method=data.payment_details.method,
            reference=data.payment_details.reference,
            farmer_confirmed=True,
            confirmation_method=data.farmer_confirmation.method,
            status="payment_confirmed",
            recorded_at=now,
        )
        db.add(payment)
        self._advance(db, batch, Stage.PAYMENT_CONFIRMED, actor=txn.buyer_id, at=now)
        db.commit()
        db.refresh(payment)
        logger.info(
            "Payment of %s confirmed for %s (%s)", payment.amount, batch.batch_code, txn.transaction_code
        )

        notifications = self._notify(
            [Role.REGULATOR_DDGAF, Role.LAND_INSPECTOR],
            "payment_confirmed",
            batch.batch_code,
            f"Payment confirmed for batch {batch.batch_code}; transfer tracking activated",
            data={
                "transactionCode": txn.transaction_code,
                "amount": payment.amount,
                "confirmationMethod": payment.confirmation_method,
            },
        )
        return {
            "success": True,
            "payment": schemas.PaymentOut.model_validate(payment),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    # ---------- warehouse ----------

    def approve_packaging(self, db: Session, data: schemas.QrBatchApprovalIn) -> Dict[str, Any]:
        """DDGOTS approval of QR-coded bags for a paid lot. Does not move the stage."""
        batch = self.get_batch(db, data.batch_code)
        if not has_reached(batch.lifecycle_stage, Stage.PAYMENT_CONFIRMED):
            raise PreconditionError(
                f"Batch {batch.batch_code} is in stage {batch.lifecycle_stage}; "
                f"packaging requires {Stage.PAYMENT_CONFIRMED.value}"
            )
        txn = self._require_transaction(db, batch.batch_code, data.transaction_id)
        if db.query(models.PackagingApproval).filter_by(transaction_code=txn.transaction_code).first():
            raise PreconditionError(f"Packaging for {txn.transaction_code} was already approved")
        now = self.clock()
        details = data.packaging_details

        approval = models.PackagingApproval(
            approval_code=f"DDGOTS-QR-{epoch_ms(now)}-{txn.transaction_code[-6:]}-{short_token()}",
            transaction_code=txn.transaction_code,
            batch_code=batch.batch_code,
            warehouse_id=data.warehouse_id,
            bag_count=details.bag_count,
            packaging_type=details.packaging_type,
            total_weight=details.total_weight,
            quality_grade=details.quality_grade,
            requested_by=data.requested_by,
            approved_by="DDGOTS-SYSTEM",
            status="approved",
            approved_at=now,
        )
        db.add(approval)
        db.commit()
        db.refresh(approval)
        logger.info("QR packaging %s approved: %s bags for %s", approval.approval_code, approval.bag_count, batch.batch_code)

        notifications = self._notify(
            [Role.WAREHOUSE, Role.REGULATOR_DDGOTS],
            "packaging_approved",
            batch.batch_code,
            f"{approval.bag_count} {approval.packaging_type} bags approved ({approval.approval_code})",
            recipients=[data.warehouse_id],
        )
        return {
            "success": True,
            "approved": True,
            "approvalCode": approval.approval_code,
            "approval": schemas.PackagingApprovalOut.model_validate(approval),
            "notifications": notifications,
        }

    def register_delivery(self, db: Session, data: schemas.DeliveryRegistrationIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.WAREHOUSE_DELIVERED)
        txn = self._require_transaction(db, batch.batch_code, data.transaction_code)
        now = self.clock()

        variance = weight_variance(data.declared_weight, data.actual_weight)
        accepted = within_tolerance(variance, self._settings.WEIGHT_VARIANCE_TOLERANCE)
        record = models.WarehouseDeliveryRecord(
            transaction_code=txn.transaction_code,
            batch_code=batch.batch_code,
            warehouse_id=data.warehouse_id,
            declared_weight=data.declared_weight,
            actual_weight=data.actual_weight,
            variance=float(variance),
            acceptance_status=ACCEPTED if accepted else VARIANCE_REVIEW,
            quality_grade=data.quality_grade or batch.quality_grade,
            approval_code=f"WH-APR-{epoch_ms(now)}-{batch.batch_code[-6:]}-{short_token()}",
            inspected_by=data.inspected_by,
            delivered_at=now,
        )
        db.add(record)
        self._advance(db, batch, Stage.WAREHOUSE_DELIVERED, actor=data.warehouse_id, at=now)
        db.commit()
        db.refresh(record)
        logger.info(
            "Delivery of %s at %s: variance %s -> %s",
            batch.batch_code, record.warehouse_id, record.variance, record.acceptance_status,
        )

        notifications = self._notify(
            [Role.BUYER, Role.REGULATOR_DDGOTS],
            "warehouse_delivery_registered",
            batch.batch_code,
            f"Warehouse delivery {record.acceptance_status} for batch {batch.batch_code} "
            f"({record.actual_weight:g}kg, approval {record.approval_code})",
            recipients=[txn.buyer_id],
            data={"complianceStatus": batch.compliance_status, "variance": record.variance},
        )
        return {
            "success": True,
            "delivery": schemas.DeliveryRecordOut.model_validate(record),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    def register_product(self, db: Session, data: schemas.ProductRegistrationIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.WAREHOUSE_REGISTERED)
        txn = self.ledger.get_transaction(db, batch.batch_code)
        if txn is None:
            raise PreconditionError(f"Batch {batch.batch_code} has no accepted lot transaction")
        now = self.clock()

        registration = models.WarehouseRegistration(
            registration_id=f"WHR-{epoch_ms(now)}-{short_token()}",
            batch_code=batch.batch_code,
            buyer_id=txn.buyer_id,
            warehouse_id=data.warehouse_id,
            storage_location=data.storage_location,
            storage_start_date=now,
            storage_expiry_date=now + timedelta(days=self._settings.STORAGE_WINDOW_DAYS),
        )
        db.add(registration)
        if data.storage_location:
            batch.storage_location = data.storage_location
        self._advance(db, batch, Stage.WAREHOUSE_REGISTERED, actor=data.warehouse_id, at=now)
        db.commit()
        db.refresh(registration)
        logger.info(
            "Registered %s in %s until %s", batch.batch_code, registration.warehouse_id,
            registration.storage_expiry_date.isoformat(),
        )

        notifications = self._notify(
            [Role.BUYER],
            "warehouse_product_registered",
            batch.batch_code,
            f"Batch {batch.batch_code} stored at {registration.warehouse_id} for "
            f"{self._settings.STORAGE_WINDOW_DAYS} days",
            recipients=[txn.buyer_id],
            data={"registrationId": registration.registration_id},
        )
        return {
            "success": True,
            "registration": inventory.describe_registration(registration, now),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    def create_marketplace_listing(self, db: Session, data: schemas.MarketplaceListingIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.MARKETPLACE_LISTED)
        registration = db.get(models.WarehouseRegistration, data.registration_id)
        if registration is None:
            raise NotFoundError(f"Warehouse registration {data.registration_id} not found")
        if registration.batch_code != batch.batch_code:
            raise ValidationError(
                f"Warehouse registration {registration.registration_id} is not for batch {batch.batch_code}"
            )
        now = self.clock()
        expires_at = now + timedelta(days=self._settings.LISTING_WINDOW_DAYS)
        storage_expiry = to_aware_utc(registration.storage_expiry_date)
        if expires_at > storage_expiry:
            raise PreconditionError(
                f"Listing would run until {expires_at.isoformat()}, past storage expiry "
                f"{storage_expiry.isoformat()} of {registration.registration_id}"
            )

        listing = models.MarketplaceListing(
            listing_id=f"MKT-{epoch_ms(now)}-{short_token()}",
            registration_id=registration.registration_id,
            batch_code=batch.batch_code,
            buyer_id=registration.buyer_id,
            crop_type=batch.crop_type,
            quantity=data.quantity or batch.actual_yield,
            price_per_kg=data.pricing_info.price_per_kg,
            currency=data.pricing_info.currency,
            minimum_order=data.pricing_info.minimum_order,
            listed_at=now,
            expires_at=expires_at,
        )
        db.add(listing)
        self._advance(db, batch, Stage.MARKETPLACE_LISTED, actor=registration.buyer_id, at=now)
        db.commit()
        db.refresh(listing)
        logger.info("Listed %s for exporters until %s", batch.batch_code, expires_at.isoformat())

        notifications = self._notify(
            [Role.EXPORTER],
            "marketplace_listing_created",
            batch.batch_code,
            f"{batch.crop_type} lot {batch.batch_code} listed at {listing.price_per_kg:g} "
            f"{listing.currency}/kg",
            recipients=list(self._settings.REGISTERED_EXPORTERS),
            data={"listingId": listing.listing_id},
        )
        return {
            "success": True,
            "listing": inventory.describe_listing(listing, now),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    # ---------- export side ----------

    def accept_export_proposal(self, db: Session, data: schemas.ExportProposalIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.EXPORT_PROPOSAL_ACCEPTED)
        listing = db.get(models.MarketplaceListing, data.listing_id)
        if listing is None:
            raise NotFoundError(f"Marketplace listing {data.listing_id} not found")
        if listing.batch_code != batch.batch_code:
            raise ValidationError(f"Marketplace listing {listing.listing_id} is not for batch {batch.batch_code}")
        now = self.clock()
        if window_status(listing.expires_at, now) == "expired":
            raise PreconditionError(f"Marketplace listing {listing.listing_id} has expired")

        contract = models.ExportContract(
            batch_code=batch.batch_code,
            export_reference=f"EXP-{epoch_ms(now)}-{data.exporter_id[-4:]}-{short_token()}",
            listing_id=listing.listing_id,
            exporter_id=data.exporter_id,
            agreed_price=data.agreed_price,
            quantity=data.quantity or listing.quantity,
            accepted_at=now,
        )
        db.add(contract)
        self._advance(db, batch, Stage.EXPORT_PROPOSAL_ACCEPTED, actor=data.exporter_id, at=now)
        db.commit()
        db.refresh(contract)
        logger.info("Export proposal %s accepted for %s", contract.export_reference, batch.batch_code)

        notifications = self._notify(
            [Role.BUYER, Role.WAREHOUSE, Role.REGULATOR_DDGOTS],
            "export_proposal_accepted",
            batch.batch_code,
            f"Exporter {contract.exporter_id} accepted lot {batch.batch_code} ({contract.export_reference})",
            recipients=[listing.buyer_id],
        )
        return self._export_response(batch, contract, notifications)

    def _export_step(
        self,
        db: Session,
        batch_code: str,
        target: Stage,
        *,
        actor: Optional[str],
        apply: Callable[[models.ExportContract, datetime], None],
        roles: List[Role],
        event: str,
        message: str,
        recipients: Callable[[models.ExportContract], List[Optional[str]]] = lambda c: [],
    ) -> Dict[str, Any]:
        batch = self.get_batch(db, batch_code)
        self._require(batch, target)
        contract = self._contract(db, batch_code)
        now = self.clock()
        apply(contract, now)
        self._advance(db, batch, target, actor=actor, at=now)
        db.commit()
        db.refresh(contract)
        logger.info("Batch %s -> %s (%s)", batch_code, target.value, contract.export_reference)

        notifications = self._notify(roles, event, batch_code, message, recipients=recipients(contract))
        return self._export_response(batch, contract, notifications)

    @staticmethod
    def _export_response(batch, contract, notifications) -> Dict[str, Any]:
        return {
            "success": True,
            "exportReference": contract.export_reference,
            "export": schemas.ExportContractOut.model_validate(contract),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    def _listing_owner(self, db: Session, contract: models.ExportContract) -> Optional[str]:
        listing = db.get(models.MarketplaceListing, contract.listing_id)
        return listing.buyer_id if listing else None

    def authorize_delivery(self, db: Session, data: schemas.DeliveryAuthorizationIn) -> Dict[str, Any]:
        def apply(contract, now):
            contract.from_warehouse = data.from_warehouse
            contract.to_warehouse = data.to_warehouse
            contract.authorized_at = now

        return self._export_step(
            db, data.batch_code, Stage.DELIVERY_AUTHORIZED,
            actor=data.from_warehouse,
            apply=apply,
            roles=[Role.EXPORTER, Role.BUYER, Role.REGULATOR_DDGOTS],
            event="delivery_authorized",
            message=f"Transfer of {data.batch_code} from {data.from_warehouse} to {data.to_warehouse} authorized",
            recipients=lambda c: [c.exporter_id, self._listing_owner(db, c)],
        )

    def initiate_delivery(self, db: Session, data: schemas.DeliveryInitiationIn) -> Dict[str, Any]:
        def apply(contract, now):
            contract.transport_mode = data.transport_mode
            contract.vehicle_id = data.vehicle_id
            contract.initiated_at = now

        return self._export_step(
            db, data.batch_code, Stage.DELIVERY_INITIATED,
            actor=data.vehicle_id,
            apply=apply,
            roles=[Role.EXPORTER, Role.WAREHOUSE],
            event="delivery_initiated",
            message=f"Batch {data.batch_code} dispatched to exporter",
            recipients=lambda c: [c.exporter_id, c.to_warehouse],
        )

    def complete_receipt(self, db: Session, data: schemas.ReceiptIn) -> Dict[str, Any]:
        def apply(contract, now):
            contract.received_weight = data.received_weight
            contract.received_quality_grade = data.quality_grade
            contract.received_at = now

        return self._export_step(
            db, data.batch_code, Stage.RECEIPT_COMPLETED,
            actor=None,
            apply=apply,
            roles=[Role.BUYER, Role.WAREHOUSE, Role.REGULATOR_DDGOTS],
            event="receipt_completed",
            message=f"Exporter received {data.received_weight:g}kg of batch {data.batch_code}",
            recipients=lambda c: [self._listing_owner(db, c)],
        )

    def confirm_export_payment(self, db: Session, data: schemas.ExportPaymentIn) -> Dict[str, Any]:
        def apply(contract, now):
            contract.payment_amount = data.amount
            contract.payment_method = data.method
            contract.payment_reference = data.reference
            contract.paid_at = now

        return self._export_step(
            db, data.batch_code, Stage.EXPORT_PAYMENT_CONFIRMED,
            actor=None,
            apply=apply,
            roles=[Role.BUYER, Role.REGULATOR_DDGAF],
            event="export_payment_confirmed",
            message=f"Exporter paid {data.amount:g} for batch {data.batch_code}",
            recipients=lambda c: [self._listing_owner(db, c)],
        )

    def assign_port_inspection(self, db: Session, data: schemas.PortInspectionAssignmentIn) -> Dict[str, Any]:
        scheduled = parse_datetime(data.scheduled_date, "scheduledDate")

        def apply(contract, now):
            contract.port_inspector_id = data.inspector_id
            contract.port_of_exit = data.port_of_exit
            contract.inspection_scheduled_for = scheduled
            contract.inspection_assigned_at = now

        return self._export_step(
            db, data.batch_code, Stage.PORT_INSPECTION_ASSIGNED,
            actor=None,
            apply=apply,
            roles=[Role.PORT_INSPECTOR, Role.EXPORTER, Role.REGULATOR_DDGOTS],
            event="port_inspection_assigned",
            message=f"Port inspection of {data.batch_code} at {data.port_of_exit} on {scheduled.date().isoformat()}",
            recipients=lambda c: [c.port_inspector_id, c.exporter_id],
        )

    def submit_inspection_report(self, db: Session, data: schemas.InspectionReportIn) -> Dict[str, Any]:
        batch = self.get_batch(db, data.batch_code)
        self._require(batch, Stage.INSPECTION_REPORT_SUBMITTED)
        contract = self._contract(db, batch.batch_code)
        if contract.port_inspector_id != data.inspector_id:
            raise PreconditionError(
                f"Inspector {data.inspector_id} is not assigned to batch {batch.batch_code}"
            )
        now = self.clock()
        passed = data.result == "passed"

        report = models.InspectionReport(
            batch_code=batch.batch_code,
            inspector_id=data.inspector_id,
            result=data.result,
            quality_grade=data.quality_grade,
            findings=data.findings,
            fumigation_completed=data.fumigation_completed,
            submitted_at=now,
        )
        db.add(report)
        # a failed inspection leaves the batch assigned for re-inspection
        if passed:
            self._advance(db, batch, Stage.INSPECTION_REPORT_SUBMITTED, actor=data.inspector_id, at=now)
        db.commit()
        db.refresh(report)
        logger.info("Port inspection of %s %s by %s", batch.batch_code, data.result, data.inspector_id)

        notifications = self._notify(
            [Role.REGULATOR_DDGOTS, Role.REGULATOR_DDGAF, Role.EXPORTER],
            f"inspection_{data.result}",
            batch.batch_code,
            f"Port inspection of {batch.batch_code} {data.result}",
            recipients=[contract.exporter_id],
            data={"findings": data.findings} if data.findings else None,
        )
        return {
            "success": True,
            "advanced": passed,
            "report": schemas.InspectionReportOut.model_validate(report),
            "batch": schemas.BatchOut.model_validate(batch),
            "notifications": notifications,
        }

    def intimate_fees(self, db: Session, data: schemas.FeeIntimationIn) -> Dict[str, Any]:
        components = [data.processing_fee, data.export_fee, data.inspection_fee, data.documentation_fee]
        total = float(sum((Decimal(str(c)) for c in components), Decimal("0")))

        def apply(contract, now):
            contract.processing_fee = data.processing_fee
            contract.export_fee = data.export_fee
            contract.inspection_fee = data.inspection_fee
            contract.documentation_fee = data.documentation_fee
            contract.total_fees = total
            contract.fees_intimated_at = now

        return self._export_step(
            db, data.batch_code, Stage.FEE_INTIMATED,
            actor=None,
            apply=apply,
            roles=[Role.EXPORTER, Role.REGULATOR_DDGAF],
            event="fees_intimated",
            message=f"Fees of {total:g} due for batch {data.batch_code}",
            recipients=lambda c: [c.exporter_id],
        )

    def pay_fees(self, db: Session, data: schemas.FeePaymentIn) -> Dict[str, Any]:
        def apply(contract, now):
            # settled to the cent against what DDGAF intimated
            if Decimal(str(data.amount)) != Decimal(str(contract.total_fees)):
                raise ValidationError(
                    f"Fee payment {data.amount:g} does not match intimated total {contract.total_fees:g}"
                )
            contract.fee_payment_reference = data.reference
            contract.fees_paid_at = now

        return self._export_step(
            db, data.batch_code, Stage.FEE_PAID,
            actor=None,
            apply=apply,
            roles=[Role.REGULATOR_DDGAF, Role.REGULATOR_DDGOTS],
            event="fees_paid",
            message=f"Fees paid for batch {data.batch_code} (ref {data.reference})",
        )

    def release_documents(self, db: Session, data: schemas.DocumentReleaseIn) -> Dict[str, Any]:
        def apply(contract, now):
            contract.released_documents = list(EXPORT_DOCUMENTS)
            contract.released_by = data.released_by
            contract.documents_released_at = now

        return self._export_step(
            db, data.batch_code, Stage.DOCUMENTS_RELEASED,
            actor=data.released_by,
            apply=apply,
            roles=[Role.EXPORTER, Role.PORT_INSPECTOR, Role.REGULATOR_DDGOTS],
            event="documents_released",
            message=f"Export documents for {data.batch_code} released; shipment authorized",
            recipients=lambda c: [c.exporter_id, c.port_inspector_id],
        )

    # ---------- reads ----------

    def batch_detail(self, db: Session, batch_code: str) -> Dict[str, Any]:
        batch = self.get_batch(db, batch_code)
        txn = self.ledger.get_transaction(db, batch_code)
        contract = db.get(models.ExportContract, batch_code)
        return {
            "batch": schemas.BatchDetailOut.model_validate(batch),
            "transaction": schemas.LotTransactionOut.model_validate(txn) if txn else None,
            "export": schemas.ExportContractOut.model_validate(contract) if contract else None,
        }
