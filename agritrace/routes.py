# agritrace/routes.py
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from agritrace import inventory, schemas
from agritrace.compliance import ComplianceRecorder
from agritrace.db import get_db
from agritrace.deps import get_clock, get_compliance_recorder, get_workflow
from agritrace.workflow import BatchWorkflow

router = APIRouter(prefix="/api")

Clock = Callable[[], datetime]

# ---------- farmers ----------

@router.get("/farmers/{farmer_id}/crop-schedules", response_model=List[schemas.CropScheduleOut])
def list_crop_schedules(farmer_id: str, db: Session = Depends(get_db)):
    return inventory.list_schedules(db, farmer_id)


@router.get("/farmers/{farmer_id}/crop-listings", response_model=List[schemas.CropListingOut])
def list_crop_listings(farmer_id: str, db: Session = Depends(get_db)):
    return inventory.list_crop_listings(db, farmer_id)


@router.post("/farmers/crop-schedules", response_model=schemas.CropScheduleOut, status_code=201)
def create_crop_schedule(
    payload: schemas.CropScheduleCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    obj = inventory.create_schedule(db, payload, now=clock())
    return inventory.describe_schedule(db, obj)


@router.put("/farmers/crop-schedules/{schedule_id}/status", response_model=schemas.CropScheduleOut)
def update_crop_schedule_status(
    schedule_id: str,
    payload: schemas.ScheduleStatusUpdate,
    db: Session = Depends(get_db),
):
    obj = inventory.advance_schedule(db, schedule_id, payload.status)
    return inventory.describe_schedule(db, obj)


@router.post("/farmers/crop-listings", response_model=schemas.CropListingOut, status_code=201)
def create_crop_listing(
    payload: schemas.CropListingCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return inventory.create_crop_listing(db, payload, now=clock())


@router.put("/farmers/crop-schedules/{schedule_id}/harvest")
def harvest_crop_schedule(
    schedule_id: str,
    payload: schemas.HarvestIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.harvest(db, schedule_id, payload)


@router.get("/farmers/{farmer_id}/harvest-alerts", response_model=List[schemas.HarvestAlertOut])
def harvest_alerts(farmer_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return inventory.harvest_alerts(db, farmer_id, now=clock())


@router.post("/farmers/lot-proposals/{batch_code}/accept")
def accept_lot_proposal(
    batch_code: str,
    payload: schemas.LotProposalIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.accept_lot(db, batch_code, payload.buyer_id)


@router.post("/farmers/payment-confirmation")
def confirm_payment(
    payload: schemas.PaymentConfirmationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.confirm_payment(db, payload)

# ---------- land inspector / DDGOTS compliance ----------

@router.post("/land-inspector/compliance-data")
def submit_compliance_data(
    payload: schemas.ComplianceSubmission,
    db: Session = Depends(get_db),
    recorder: ComplianceRecorder = Depends(get_compliance_recorder),
):
    return recorder.record_compliance(db, payload)


@router.get("/land-inspector/compliance-data", response_model=List[schemas.ComplianceRecordOut])
def list_compliance_data(
    farmer_id: Optional[str] = Query(None, alias="farmerId"),
    db: Session = Depends(get_db),
):
    return ComplianceRecorder.list_compliance(db, farmer_id)


@router.put("/ddgots/compliance-data/{record_id}/review")
def review_compliance_data(
    record_id: str,
    payload: schemas.ComplianceReviewIn,
    db: Session = Depends(get_db),
    recorder: ComplianceRecorder = Depends(get_compliance_recorder),
):
    return recorder.review_compliance(db, record_id, payload)

# ---------- warehouse ----------

@router.post("/warehouse/qr-batch-approval")
def approve_qr_batch(
    payload: schemas.QrBatchApprovalIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.approve_packaging(db, payload)


@router.post("/warehouse/delivery-registration")
def register_delivery(
    payload: schemas.DeliveryRegistrationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.register_delivery(db, payload)


@router.post("/warehouse/product-registration")
def register_product(
    payload: schemas.ProductRegistrationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.register_product(db, payload)


@router.post("/warehouse/delivery-authorization")
def authorize_delivery(
    payload: schemas.DeliveryAuthorizationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.authorize_delivery(db, payload)

# ---------- buyer ----------

@router.post("/buyer/marketplace-listing")
def create_marketplace_listing(
    payload: schemas.MarketplaceListingIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.create_marketplace_listing(db, payload)


@router.get("/buyer/{buyer_id}/warehouse-products", response_model=List[schemas.WarehouseRegistrationOut])
def buyer_warehouse_products(buyer_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return inventory.warehouse_products(db, buyer_id, now=clock())


@router.get("/buyer/{buyer_id}/marketplace-listings", response_model=List[schemas.MarketplaceListingOut])
def buyer_marketplace_listings(buyer_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return inventory.buyer_marketplace_listings(db, buyer_id, now=clock())


@router.post("/buyer/delivery-initiation")
def initiate_delivery(
    payload: schemas.DeliveryInitiationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.initiate_delivery(db, payload)

# ---------- exporter ----------

@router.get("/exporter/marketplace-listings", response_model=List[schemas.MarketplaceListingOut])
def exporter_marketplace_listings(
    crop_type: Optional[str] = Query(None, alias="cropType"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return inventory.active_marketplace_listings(db, now=clock(), crop_type=crop_type)


@router.post("/exporter/export-proposals/accept")
def accept_export_proposal(
    payload: schemas.ExportProposalIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.accept_export_proposal(db, payload)


@router.post("/exporter/receipt-confirmation")
def confirm_receipt(
    payload: schemas.ReceiptIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.complete_receipt(db, payload)


@router.post("/exporter/payment-confirmation")
def confirm_export_payment(
    payload: schemas.ExportPaymentIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.confirm_export_payment(db, payload)


@router.post("/exporter/fee-payment")
def pay_fees(
    payload: schemas.FeePaymentIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.pay_fees(db, payload)

# ---------- port and regulators ----------

@router.post("/ddgots/port-inspection-assignment")
def assign_port_inspection(
    payload: schemas.PortInspectionAssignmentIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.assign_port_inspection(db, payload)


@router.post("/port-inspector/inspection-report")
def submit_inspection_report(
    payload: schemas.InspectionReportIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.submit_inspection_report(db, payload)


@router.post("/ddgaf/fee-intimation")
def intimate_fees(
    payload: schemas.FeeIntimationIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.intimate_fees(db, payload)


@router.post("/ddgots/document-release")
def release_documents(
    payload: schemas.DocumentReleaseIn,
    db: Session = Depends(get_db),
    svc: BatchWorkflow = Depends(get_workflow),
):
    return svc.release_documents(db, payload)

# ---------- batches ----------

@router.get("/batches/{batch_code}")
def get_batch(batch_code: str, db: Session = Depends(get_db), svc: BatchWorkflow = Depends(get_workflow)):
    return svc.batch_detail(db, batch_code)
