from datetime import timedelta

import pytest

from agritrace import models, schemas
from agritrace.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from agritrace.notifications import NotificationDispatcher, Role
from agritrace.workflow import EXPORT_DOCUMENTS, BatchWorkflow

from conftest import harvested_batch, ready_schedule


def harvest_in(**kw):
    data = dict(actual_yield=480, quality_grade="Grade A", harvest_date="2025-03-01")
    data.update(kw)
    return schemas.HarvestIn(**data)


def pay(workflow, db, batch_code, txn_code, amount=1200):
    return workflow.confirm_payment(
        db,
        schemas.PaymentConfirmationIn(
            transaction_code=txn_code,
            batch_code=batch_code,
            payment_details=schemas.PaymentDetails(amount=amount, method="mobile_money", reference="MM-77"),
            farmer_confirmation=schemas.FarmerConfirmation(confirmed=True, method="sms"),
        ),
    )


def deliver(workflow, db, batch_code, txn_code, declared=480, actual=478):
    return workflow.register_delivery(
        db,
        schemas.DeliveryRegistrationIn(
            transaction_code=txn_code,
            batch_code=batch_code,
            warehouse_id="WH-GBARNGA",
            declared_weight=declared,
            actual_weight=actual,
        ),
    )


@pytest.fixture
def sold_batch(db, workflow, clock):
    """A harvested batch bought by B1; returns (batch_code, transaction_code)."""
    batch_code = harvested_batch(db, workflow, clock)
    clock.advance(minutes=1)
    return batch_code, workflow.accept_lot(db, batch_code, "B1")["transactionCode"]


@pytest.fixture
def stored_batch(db, workflow, clock, sold_batch):
    batch_code, txn = sold_batch
    clock.advance(hours=1)
    pay(workflow, db, batch_code, txn)
    clock.advance(hours=1)
    deliver(workflow, db, batch_code, txn)
    clock.advance(hours=1)
    reg = workflow.register_product(
        db, schemas.ProductRegistrationIn(batch_code=batch_code, warehouse_id="WH-GBARNGA", storage_location="Bay 4")
    )["registration"]
    return batch_code, reg


# ---------- harvest ----------

def test_harvest_mints_batch_code_and_notifies(db, workflow, clock, sink):
    ready_schedule(db, clock)
    clock.advance(minutes=1)

    result = workflow.harvest(db, "SCH-010", harvest_in(gps_coordinates="7.0,-9.5"))

    assert result["batchCode"] == "BATCH-COFFEE-1740816060000-FRM001"
    batch = result["batch"]
    assert batch.lifecycle_stage == "harvested"
    assert batch.actual_yield == 480
    assert batch.compliance_status == "pending"
    assert result["schedule"].status == "harvested"
    assert result["schedule"].market_status == "not_listed"
    assert result["harvestAlertEligible"] is False
    assert result["notifications"] == {
        "land_inspector": "NOTIFIED",
        "warehouse": "NOTIFIED",
        "regulator_ddgots": "NOTIFIED",
        "regulator_ddgaf": "NOTIFIED",
    }


def test_harvest_twice_mints_once(db, workflow, clock):
    batch_code = harvested_batch(db, workflow, clock)
    clock.advance(minutes=1)

    with pytest.raises(PreconditionError, match="is in stage harvested"):
        workflow.harvest(db, "SCH-010", harvest_in())
    assert [b.batch_code for b in db.query(models.Batch).all()] == [batch_code]


def test_same_farmer_harvests_twice_in_one_millisecond(db, workflow, clock):
    ready_schedule(db, clock, schedule_id="SCH-A")
    ready_schedule(db, clock, schedule_id="SCH-B", plot_id="PLOT-8")

    first = workflow.harvest(db, "SCH-A", harvest_in())
    second = workflow.harvest(db, "SCH-B", harvest_in())

    assert first["batchCode"] == "BATCH-COFFEE-1740816000000-FRM001"
    assert second["batchCode"] == "BATCH-COFFEE-1740816000001-FRM001"
    assert {s.status for s in db.query(models.CropSchedule).all()} == {"harvested"}


def test_batch_code_taken_by_another_session_is_minted_again(db, session_factory, workflow, clock):
    ready_schedule(db, clock, schedule_id="SCH-A")
    ready_schedule(db, clock, schedule_id="SCH-B", plot_id="PLOT-8")
    with session_factory() as other:
        taken = workflow.harvest(other, "SCH-A", harvest_in())["batchCode"]

    # this session checked for a free code before the other one committed
    real_mint = workflow._mint_batch_code
    minted = []

    def stale_mint(session, schedule, now):
        minted.append(taken if not minted else real_mint(session, schedule, now))
        return minted[-1]

    workflow._mint_batch_code = stale_mint
    result = workflow.harvest(db, "SCH-B", harvest_in())

    assert minted[0] == taken
    assert result["batchCode"] == "BATCH-COFFEE-1740816000001-FRM001"
    assert result["schedule"].status == "harvested"
    assert db.query(models.Batch).count() == 2


def test_harvest_rejects_unready_schedule_and_bad_dates(db, workflow, clock, sink):
    ready_schedule(db, clock)
    with pytest.raises(ValidationError, match="harvestDate"):
        workflow.harvest(db, "SCH-010", harvest_in(harvest_date="not a date"))
    with pytest.raises(NotFoundError):
        workflow.harvest(db, "SCH-404", harvest_in())
    assert db.query(models.Batch).count() == 0
    assert sink.sent == []


def test_harvest_picks_up_plot_compliance(db, workflow, clock):
    workflow.compliance.record_compliance(
        db,
        schemas.ComplianceSubmission.model_validate(
            {"farmerId": "FRM001", "plotId": "PLOT-7", "eudrData": {"complianceStatus": "EUDR_COMPLIANT"}}
        ),
    )
    batch_code = harvested_batch(db, workflow, clock)
    assert workflow.get_batch(db, batch_code).compliance_status == "EUDR_COMPLIANT"


# ---------- lot, payment, packaging ----------

def test_accept_lot_advances_and_second_buyer_conflicts(db, workflow, clock, sold_batch):
    batch_code, txn = sold_batch
    assert workflow.get_batch(db, batch_code).lifecycle_stage == "lot_accepted"

    with pytest.raises(ConflictError) as err:
        workflow.accept_lot(db, batch_code, "B2")
    assert err.value.reason == "sold_out"
    assert err.value.winning_buyer == "B1"
    assert workflow.get_batch(db, batch_code).lifecycle_stage == "lot_accepted"


def test_accept_lot_unknown_batch(db, workflow):
    with pytest.raises(NotFoundError):
        workflow.accept_lot(db, "BATCH-NOPE", "B1")
    assert db.query(models.LotTransaction).count() == 0


class StageReadingSink:
    """Looks the batch up in its own session whenever a sale is announced."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self.stages_seen = []

    def deliver(self, notification_id, role, payload, sent_at) -> None:
        if payload.event == "lot_accepted":
            with self._session_factory() as session:
                self.stages_seen.append(session.get(models.Batch, payload.entity_id).lifecycle_stage)


def test_sale_is_announced_only_after_the_stage_is_committed(db, session_factory, workflow, clock):
    batch_code = harvested_batch(db, workflow, clock)
    reader = StageReadingSink(session_factory)
    buyer_side = BatchWorkflow(NotificationDispatcher(reader, clock=clock), clock=clock)

    buyer_side.accept_lot(db, batch_code, "B1")

    assert reader.stages_seen == ["lot_accepted"]
    events = db.query(models.BatchEvent).filter_by(batch_code=batch_code).order_by(models.BatchEvent.id).all()
    assert [e.to_stage for e in events] == ["harvested", "lot_accepted"]


def test_payment_needs_matching_transaction_and_farmer_confirmation(db, workflow, sold_batch, sink):
    batch_code, txn = sold_batch
    sink.sent.clear()

    with pytest.raises(ValidationError, match="does not belong"):
        pay(workflow, db, batch_code, "TXN-0-XXXXXX-XXXX")
    with pytest.raises(ValidationError, match="confirmed by the farmer"):
        workflow.confirm_payment(
            db,
            schemas.PaymentConfirmationIn(
                transaction_code=txn,
                batch_code=batch_code,
                payment_details=schemas.PaymentDetails(amount=1200, method="cash"),
                farmer_confirmation=schemas.FarmerConfirmation(confirmed=False, method="sms"),
            ),
        )
    assert sink.sent == []

    result = pay(workflow, db, batch_code, txn)
    assert result["payment"].amount == 1200
    assert result["payment"].status == "payment_confirmed"
    assert result["batch"].lifecycle_stage == "payment_confirmed"
    assert result["notifications"] == {"regulator_ddgaf": "NOTIFIED", "land_inspector": "NOTIFIED"}
    with pytest.raises(PreconditionError):
        pay(workflow, db, batch_code, txn)
    assert db.query(models.PaymentRecord).count() == 1


def test_packaging_approval_after_payment_keeps_stage(db, workflow, clock, sold_batch):
    batch_code, txn = sold_batch
    request = schemas.QrBatchApprovalIn(
        transaction_id=txn,
        batch_code=batch_code,
        warehouse_id="WH-GBARNGA",
        packaging_details=schemas.PackagingDetails(bag_count=8, packaging_type="jute", total_weight=480),
    )
    with pytest.raises(PreconditionError, match="packaging requires payment_confirmed"):
        workflow.approve_packaging(db, request)

    pay(workflow, db, batch_code, txn)
    clock.advance(minutes=3)
    result = workflow.approve_packaging(db, request)

    assert result["approvalCode"].startswith(f"DDGOTS-QR-1740816300000-{txn[-6:]}-")
    assert result["approval"].approved_by == "DDGOTS-SYSTEM"
    assert result["notifications"] == {"warehouse": "NOTIFIED", "regulator_ddgots": "NOTIFIED"}
    assert workflow.get_batch(db, batch_code).lifecycle_stage == "payment_confirmed"
    with pytest.raises(PreconditionError, match="already approved"):
        workflow.approve_packaging(db, request)


# ---------- warehouse ----------

def test_delivery_before_payment_is_refused_without_side_effects(db, workflow, sold_batch, sink):
    batch_code, txn = sold_batch
    sink.sent.clear()

    with pytest.raises(PreconditionError, match="requires payment_confirmed"):
        deliver(workflow, db, batch_code, txn)

    assert db.query(models.WarehouseDeliveryRecord).count() == 0
    assert sink.sent == []


@pytest.mark.parametrize(
    "declared, actual, status",
    [
        (480, 478, "ACCEPTED"),
        (480, 485, "ACCEPTED"),
        (480, 475, "ACCEPTED"),
        (480, 485.01, "VARIANCE_REVIEW"),
        (480, 474.99, "VARIANCE_REVIEW"),
        (473.1, 478.1, "ACCEPTED"),
    ],
)
def test_variance_tolerance_boundary(db, workflow, sold_batch, declared, actual, status):
    batch_code, txn = sold_batch
    pay(workflow, db, batch_code, txn)

    record = deliver(workflow, db, batch_code, txn, declared=declared, actual=actual)["delivery"]

    assert record.acceptance_status == status


def test_delivery_records_variance_and_notifies_buyer(db, workflow, sold_batch, sink):
    batch_code, txn = sold_batch
    pay(workflow, db, batch_code, txn)

    result = deliver(workflow, db, batch_code, txn)

    assert result["delivery"].variance == -2
    assert result["delivery"].approval_code.startswith("WH-APR-")
    assert result["batch"].lifecycle_stage == "warehouse_delivered"
    assert result["notifications"] == {"buyer": "NOTIFIED", "regulator_ddgots": "NOTIFIED"}
    assert sink.sent[-1][1].recipients == ["B1"]


def test_registration_runs_thirty_days(db, workflow, clock, stored_batch):
    batch_code, reg = stored_batch

    assert reg.registration_id.startswith("WHR-")
    assert reg.buyer_id == "B1"
    assert reg.storage_expiry_date - reg.storage_start_date == timedelta(days=30)
    assert reg.storage_status == "active"
    assert reg.days_remaining == 30
    assert workflow.get_batch(db, batch_code).storage_location == "Bay 4"


# ---------- buyer -> exporter marketplace ----------

def list_for_exporters(workflow, db, batch_code, registration_id, price=4.5):
    return workflow.create_marketplace_listing(
        db,
        schemas.MarketplaceListingIn(
            registration_id=registration_id,
            batch_code=batch_code,
            pricing_info=schemas.PricingInfo(price_per_kg=price),
        ),
    )


def test_listing_expires_before_storage(db, workflow, clock, stored_batch, sink):
    batch_code, reg = stored_batch
    clock.advance(days=2)

    result = list_for_exporters(workflow, db, batch_code, reg.registration_id)

    listing = result["listing"]
    assert listing.expires_at - listing.listed_at == timedelta(days=25)
    assert listing.expires_at <= reg.storage_expiry_date
    assert listing.quantity == 480
    assert result["notifications"] == {"exporter": "NOTIFIED"}
    assert sink.sent[-1][1].recipients == ["EXP-ACME", "EXP-KOLA"]


def test_listing_refused_when_it_would_outlive_storage(db, workflow, clock, stored_batch):
    batch_code, reg = stored_batch
    clock.advance(days=6)

    with pytest.raises(PreconditionError, match="past storage expiry"):
        list_for_exporters(workflow, db, batch_code, reg.registration_id)
    assert workflow.get_batch(db, batch_code).lifecycle_stage == "warehouse_registered"


def test_export_proposal_refused_once_listing_expired(db, workflow, clock, stored_batch):
    batch_code, reg = stored_batch
    listing = list_for_exporters(workflow, db, batch_code, reg.registration_id)["listing"]
    clock.advance(days=25)

    with pytest.raises(PreconditionError, match="has expired"):
        workflow.accept_export_proposal(
            db,
            schemas.ExportProposalIn(
                batch_code=batch_code, listing_id=listing.listing_id, exporter_id="EXP-ACME", agreed_price=2100
            ),
        )


# ---------- export to document release ----------

def test_full_export_chain_to_documents_released(db, workflow, clock, stored_batch, sink):
    batch_code, reg = stored_batch
    listing = list_for_exporters(workflow, db, batch_code, reg.registration_id)["listing"]

    def step(fn, payload):
        clock.advance(hours=6)
        return fn(db, payload)

    accepted = step(
        workflow.accept_export_proposal,
        schemas.ExportProposalIn(batch_code=batch_code, listing_id=listing.listing_id, exporter_id="EXP-ACME", agreed_price=2100),
    )
    assert accepted["exportReference"].endswith("-ACME")
    assert accepted["notifications"] == {"buyer": "NOTIFIED", "warehouse": "NOTIFIED", "regulator_ddgots": "NOTIFIED"}

    step(workflow.authorize_delivery, schemas.DeliveryAuthorizationIn(batch_code=batch_code, from_warehouse="WH-GBARNGA", to_warehouse="WH-PORT"))
    step(workflow.initiate_delivery, schemas.DeliveryInitiationIn(batch_code=batch_code, transport_mode="truck", vehicle_id="LB-4471"))
    step(workflow.complete_receipt, schemas.ReceiptIn(batch_code=batch_code, received_weight=478, quality_grade="Grade A"))
    step(workflow.confirm_export_payment, schemas.ExportPaymentIn(batch_code=batch_code, amount=2100, method="bank"))
    assigned = step(
        workflow.assign_port_inspection,
        schemas.PortInspectionAssignmentIn(batch_code=batch_code, inspector_id="PI-09", port_of_exit="Freeport of Monrovia", scheduled_date="2025-03-20"),
    )
    assert assigned["notifications"] == {"port_inspector": "NOTIFIED", "exporter": "NOTIFIED", "regulator_ddgots": "NOTIFIED"}

    with pytest.raises(PreconditionError, match="not assigned"):
        step(workflow.submit_inspection_report, schemas.InspectionReportIn(batch_code=batch_code, inspector_id="PI-01", result="passed"))

    failed = step(
        workflow.submit_inspection_report,
        schemas.InspectionReportIn(batch_code=batch_code, inspector_id="PI-09", result="failed", findings="moisture 14%"),
    )
    assert failed["advanced"] is False
    assert failed["batch"].lifecycle_stage == "port_inspection_assigned"

    passed = step(
        workflow.submit_inspection_report,
        schemas.InspectionReportIn(batch_code=batch_code, inspector_id="PI-09", result="passed", fumigation_completed=True),
    )
    assert passed["batch"].lifecycle_stage == "inspection_report_submitted"

    fees = step(
        workflow.intimate_fees,
        schemas.FeeIntimationIn(batch_code=batch_code, processing_fee=120.10, export_fee=250.20, inspection_fee=75, documentation_fee=40.05),
    )
    assert fees["export"].total_fees == pytest.approx(485.35)

    with pytest.raises(ValidationError, match="does not match"):
        step(workflow.pay_fees, schemas.FeePaymentIn(batch_code=batch_code, amount=485, reference="RCPT-1"))
    step(workflow.pay_fees, schemas.FeePaymentIn(batch_code=batch_code, amount=485.35, reference="RCPT-1"))

    released = step(workflow.release_documents, schemas.DocumentReleaseIn(batch_code=batch_code, released_by="DDGOTS-01"))
    assert released["export"].released_documents == EXPORT_DOCUMENTS
    assert released["batch"].lifecycle_stage == "documents_released"
    assert released["notifications"] == {"exporter": "NOTIFIED", "port_inspector": "NOTIFIED", "regulator_ddgots": "NOTIFIED"}

    detail = workflow.batch_detail(db, batch_code)
    stages = [e.to_stage for e in detail["batch"].events]
    assert stages[0] == "harvested"
    assert stages[-1] == "documents_released"
    assert len(stages) == 16
    assert len(db.query(models.InspectionReport).all()) == 2


def test_export_steps_out_of_order_are_refused(db, workflow, stored_batch):
    batch_code, _ = stored_batch
    with pytest.raises(PreconditionError, match="requires marketplace_listed"):
        workflow.accept_export_proposal(
            db, schemas.ExportProposalIn(batch_code=batch_code, listing_id="MKT-X", exporter_id="EXP-ACME", agreed_price=1)
        )
    with pytest.raises(PreconditionError, match="requires fee_paid"):
        workflow.release_documents(db, schemas.DocumentReleaseIn(batch_code=batch_code, released_by="DDGOTS-01"))


def test_failed_notification_does_not_undo_the_transition(db, workflow, sold_batch, sink):
    batch_code, txn = sold_batch
    sink.failing.add(Role.LAND_INSPECTOR)

    result = pay(workflow, db, batch_code, txn)

    assert result["notifications"] == {"regulator_ddgaf": "NOTIFIED", "land_inspector": "FAILED"}
    assert workflow.get_batch(db, batch_code).lifecycle_stage == "payment_confirmed"
