# agritrace/schemas.py
from pydantic import AfterValidator, BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional
from datetime import date, datetime

from agritrace.utils import to_aware_utc

# SQLite hands back naive datetimes; everything leaves the API as aware UTC
UtcDatetime = Annotated[datetime, AfterValidator(to_aware_utc)]

PreHarvestStatus = Literal["planned", "planted", "growing", "ready_for_harvest"]


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ---------- farmer side ----------

class CropScheduleCreate(CamelModel):
    schedule_id: Optional[str] = None
    farmer_id: str = Field(..., min_length=1)
    plot_id: str = Field(..., min_length=1)
    plot_name: Optional[str] = None
    crop_type: str = Field(..., min_length=1)
    crop_variety: Optional[str] = None
    planting_area: Optional[float] = Field(None, ge=0)
    planting_date: Optional[date] = None
    expected_harvest_date: Optional[date] = None
    expected_yield: Optional[float] = Field(None, ge=0)
    status: PreHarvestStatus = "planned"


class ScheduleStatusUpdate(CamelModel):
    status: PreHarvestStatus


class CropScheduleOut(CamelModel):
    schedule_id: str
    farmer_id: str
    plot_id: str
    plot_name: Optional[str] = None
    crop_type: str
    crop_variety: Optional[str] = None
    planting_area: Optional[float] = None
    planting_date: Optional[date] = None
    expected_harvest_date: Optional[date] = None
    expected_yield: Optional[float] = None
    actual_yield: Optional[float] = None
    actual_harvest_date: Optional[UtcDatetime] = None
    quality_grade: Optional[str] = None
    storage_location: Optional[str] = None
    status: str
    market_status: str = "not_listed"
    buyer_interest: int = 0
    created_at: UtcDatetime


class HarvestIn(CamelModel):
    actual_yield: float = Field(..., gt=0)
    quality_grade: str = Field(..., min_length=1)
    harvest_date: str
    gps_coordinates: Optional[str] = None
    storage_location: Optional[str] = None


class HarvestAlertOut(CamelModel):
    id: str
    type: str = "harvest_ready"
    title: str
    message: str
    priority: str = "high"
    schedule_id: str
    crop_type: str
    created_at: UtcDatetime


class CropListingCreate(CamelModel):
    farmer_id: str = Field(..., min_length=1)
    schedule_id: str = Field(..., min_length=1)
    quantity_available: float = Field(..., gt=0)
    price_per_kg: float = Field(..., gt=0)
    quality_grade: Optional[str] = None
    location: Optional[str] = None
    storage_location: Optional[str] = None


class CropListingOut(CamelModel):
    listing_id: str
    schedule_id: str
    farmer_id: str
    batch_code: Optional[str] = None
    crop_type: str
    crop_variety: Optional[str] = None
    quantity_available: float
    price_per_kg: float
    harvest_date: Optional[UtcDatetime] = None
    quality_grade: Optional[str] = None
    status: str
    view_count: int = 0
    inquiry_count: int = 0
    location: Optional[str] = None
    storage_location: Optional[str] = None
    created_at: UtcDatetime


# ---------- batch ----------

class BatchEventOut(CamelModel):
    from_stage: str
    to_stage: str
    actor: Optional[str] = None
    occurred_at: UtcDatetime


class BatchOut(CamelModel):
    batch_code: str
    schedule_id: str
    farmer_id: str
    plot_id: str
    crop_type: str
    crop_variety: Optional[str] = None
    actual_yield: float
    quality_grade: Optional[str] = None
    harvest_date: UtcDatetime
    gps_coordinates: Optional[str] = None
    storage_location: Optional[str] = None
    compliance_status: str
    lifecycle_stage: str
    created_at: UtcDatetime
    updated_at: UtcDatetime


class BatchDetailOut(BatchOut):
    events: List[BatchEventOut] = []


# ---------- lot ledger and payment ----------

class LotProposalIn(CamelModel):
    buyer_id: str = Field(..., min_length=1)


class LotTransactionOut(CamelModel):
    transaction_code: str
    batch_code: str
    buyer_id: str
    status: str
    accepted_at: UtcDatetime


class PaymentDetails(CamelModel):
    amount: float = Field(..., gt=0)
    method: str = Field(..., min_length=1)
    reference: Optional[str] = None


class FarmerConfirmation(CamelModel):
    confirmed: bool
    method: str = Field(..., min_length=1)


class PaymentConfirmationIn(CamelModel):
    transaction_code: str
    batch_code: str
    payment_details: PaymentDetails
    farmer_confirmation: FarmerConfirmation


class PaymentOut(CamelModel):
    transaction_code: str
    batch_code: str
    amount: float
    method: str
    reference: Optional[str] = None
    farmer_confirmed: bool
    confirmation_method: Optional[str] = None
    status: str
    recorded_at: UtcDatetime


# ---------- warehouse ----------

class PackagingDetails(CamelModel):
    bag_count: int = Field(..., gt=0)
    packaging_type: str
    total_weight: float = Field(..., gt=0)
    quality_grade: Optional[str] = None


class QrBatchApprovalIn(CamelModel):
    transaction_id: str
    batch_code: str
    warehouse_id: str
    packaging_details: PackagingDetails
    requested_by: Optional[str] = None


class PackagingApprovalOut(CamelModel):
    approval_code: str
    transaction_code: str
    batch_code: str
    warehouse_id: str
    bag_count: int
    packaging_type: str
    total_weight: float
    quality_grade: Optional[str] = None
    approved_by: str
    status: str
    approved_at: UtcDatetime


class DeliveryRegistrationIn(CamelModel):
    transaction_code: str
    batch_code: str
    warehouse_id: str
    declared_weight: float = Field(..., ge=0)
    actual_weight: float = Field(..., ge=0)
    quality_grade: Optional[str] = None
    inspected_by: Optional[str] = None


class DeliveryRecordOut(CamelModel):
    transaction_code: str
    batch_code: str
    warehouse_id: str
    declared_weight: float
    actual_weight: float
    variance: float
    acceptance_status: str
    quality_grade: Optional[str] = None
    approval_code: str
    inspected_by: Optional[str] = None
    delivered_at: UtcDatetime


class ProductRegistrationIn(CamelModel):
    batch_code: str
    warehouse_id: str
    storage_location: Optional[str] = None


class WarehouseRegistrationOut(CamelModel):
    registration_id: str
    batch_code: str
    buyer_id: str
    warehouse_id: str
    storage_location: Optional[str] = None
    storage_start_date: UtcDatetime
    storage_expiry_date: UtcDatetime
    storage_status: str = "active"
    days_remaining: int = 0


# ---------- buyer -> exporter marketplace ----------

class PricingInfo(CamelModel):
    price_per_kg: float = Field(..., gt=0)
    currency: str = "USD"
    minimum_order: Optional[float] = Field(None, gt=0)


class MarketplaceListingIn(CamelModel):
    registration_id: str
    batch_code: str
    pricing_info: PricingInfo
    quantity: Optional[float] = Field(None, gt=0)


class MarketplaceListingOut(CamelModel):
    listing_id: str
    registration_id: str
    batch_code: str
    buyer_id: str
    crop_type: str
    quantity: Optional[float] = None
    price_per_kg: float
    currency: str
    minimum_order: Optional[float] = None
    listed_at: UtcDatetime
    expires_at: UtcDatetime
    listing_status: str = "active"
    days_remaining: int = 0


# ---------- export side ----------

class ExportProposalIn(CamelModel):
    batch_code: str
    listing_id: str
    exporter_id: str
    agreed_price: float = Field(..., gt=0)
    quantity: Optional[float] = Field(None, gt=0)


class DeliveryAuthorizationIn(CamelModel):
    batch_code: str
    from_warehouse: str
    to_warehouse: str


class DeliveryInitiationIn(CamelModel):
    batch_code: str
    transport_mode: Optional[str] = None
    vehicle_id: Optional[str] = None


class ReceiptIn(CamelModel):
    batch_code: str
    received_weight: float = Field(..., gt=0)
    quality_grade: Optional[str] = None


class ExportPaymentIn(CamelModel):
    batch_code: str
    amount: float = Field(..., gt=0)
    method: str
    reference: Optional[str] = None


class PortInspectionAssignmentIn(CamelModel):
    batch_code: str
    inspector_id: str
    port_of_exit: str
    scheduled_date: str


class InspectionReportIn(CamelModel):
    batch_code: str
    inspector_id: str
    result: Literal["passed", "failed"]
    quality_grade: Optional[str] = None
    findings: Optional[str] = None
    fumigation_completed: bool = False


class FeeIntimationIn(CamelModel):
    batch_code: str
    processing_fee: float = Field(..., ge=0)
    export_fee: float = Field(..., ge=0)
    inspection_fee: float = Field(..., ge=0)
    documentation_fee: float = Field(..., ge=0)


class FeePaymentIn(CamelModel):
    batch_code: str
    amount: float = Field(..., gt=0)
    reference: str


class DocumentReleaseIn(CamelModel):
    batch_code: str
    released_by: str


class InspectionReportOut(CamelModel):
    batch_code: str
    inspector_id: str
    result: str
    quality_grade: Optional[str] = None
    findings: Optional[str] = None
    fumigation_completed: bool
    submitted_at: UtcDatetime


class ExportContractOut(CamelModel):
    batch_code: str
    export_reference: str
    listing_id: str
    exporter_id: str
    agreed_price: float
    quantity: Optional[float] = None
    accepted_at: UtcDatetime
    from_warehouse: Optional[str] = None
    to_warehouse: Optional[str] = None
    authorized_at: Optional[UtcDatetime] = None
    transport_mode: Optional[str] = None
    vehicle_id: Optional[str] = None
    initiated_at: Optional[UtcDatetime] = None
    received_weight: Optional[float] = None
    received_quality_grade: Optional[str] = None
    received_at: Optional[UtcDatetime] = None
    payment_amount: Optional[float] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[UtcDatetime] = None
    port_inspector_id: Optional[str] = None
    port_of_exit: Optional[str] = None
    inspection_scheduled_for: Optional[UtcDatetime] = None
    inspection_assigned_at: Optional[UtcDatetime] = None
    processing_fee: Optional[float] = None
    export_fee: Optional[float] = None
    inspection_fee: Optional[float] = None
    documentation_fee: Optional[float] = None
    total_fees: Optional[float] = None
    fees_intimated_at: Optional[UtcDatetime] = None
    fee_payment_reference: Optional[str] = None
    fees_paid_at: Optional[UtcDatetime] = None
    released_documents: Optional[List[str]] = None
    released_by: Optional[str] = None
    documents_released_at: Optional[UtcDatetime] = None


# ---------- compliance ----------

class EudrData(CamelModel):
    gps_coordinates: Optional[str] = None
    deforestation_risk: Optional[str] = None
    compliance_status: Optional[str] = None
    cutoff_date: Optional[str] = None
    risk_assessment: Optional[str] = None


class InspectorInfo(CamelModel):
    inspector_id: Optional[str] = None
    inspector_name: Optional[str] = None
    inspection_date: Optional[str] = None


class FarmerInfo(CamelModel):
    farmer_name: Optional[str] = None
    county: Optional[str] = None
    district: Optional[str] = None
    village: Optional[str] = None


class ComplianceSubmission(CamelModel):
    """Land inspector payload. Presence checks happen in the recorder."""

    farmer_id: Optional[str] = None
    plot_id: Optional[str] = None
    land_mapping_id: Optional[str] = None
    eudr_data: Optional[EudrData] = None
    inspector: Optional[InspectorInfo] = None
    farmer_data: Optional[FarmerInfo] = None


class ComplianceReviewIn(CamelModel):
    decision: Literal["approve", "reject"]
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class ComplianceRecordOut(CamelModel):
    record_id: str
    farmer_id: str
    plot_id: str
    land_mapping_id: Optional[str] = None
    gps_coordinates: Optional[str] = None
    deforestation_risk: Optional[str] = None
    compliance_status: str
    cutoff_date: Optional[str] = None
    risk_assessment: Optional[str] = None
    inspector_id: Optional[str] = None
    inspector_name: Optional[str] = None
    inspection_date: Optional[str] = None
    farmer_name: Optional[str] = None
    county: Optional[str] = None
    district: Optional[str] = None
    village: Optional[str] = None
    received_at: UtcDatetime
    status: str
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[UtcDatetime] = None
    review_decision: Optional[str] = None
    review_notes: Optional[str] = None


# ---------- notifications ----------

class NotificationPayload(BaseModel):
    event: str
    entity_id: str
    message: str = ""
    recipients: List[str] = []
    data: Dict[str, Any] = {}
