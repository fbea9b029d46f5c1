# agritrace/models.py
from sqlalchemy import (
    Column,
    String,
    Float,
    Integer,
    Boolean,
    Date,
    DateTime,
    JSON,
    ForeignKey,
)
from sqlalchemy.orm import relationship, validates
from datetime import timezone
from .db import Base


def _aware(v):
    return v if v is None or v.tzinfo else v.replace(tzinfo=timezone.utc)


class CropSchedule(Base):
    __tablename__ = "crop_schedules"

    schedule_id = Column(String, primary_key=True, index=True)      # SCH-<epoch ms>
    farmer_id = Column(String, nullable=False, index=True)
    plot_id = Column(String, nullable=False)
    plot_name = Column(String, nullable=True)
    crop_type = Column(String, nullable=False)
    crop_variety = Column(String, nullable=True)
    planting_area = Column(Float, nullable=True)                     # hectares
    planting_date = Column(Date, nullable=True)
    expected_harvest_date = Column(Date, nullable=True)
    expected_yield = Column(Float, nullable=True)                    # kg
    actual_yield = Column(Float, nullable=True)
    actual_harvest_date = Column(DateTime(timezone=True), nullable=True)
    quality_grade = Column(String, nullable=True)
    storage_location = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)               # planned .. harvested
    buyer_interest = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)

    batch = relationship("Batch", back_populates="schedule", uselist=False)

    @validates("created_at", "actual_harvest_date")
    def _tz(self, _, v):
        return _aware(v)


class Batch(Base):
    __tablename__ = "batches"

    batch_code = Column(String, primary_key=True, index=True)        # BATCH-<CROP>-<ms>-<farmerId>
    # one batch per schedule: the code is minted exactly once
    schedule_id = Column(String, ForeignKey("crop_schedules.schedule_id"), nullable=False, unique=True)
    farmer_id = Column(String, nullable=False, index=True)
    plot_id = Column(String, nullable=False)
    crop_type = Column(String, nullable=False)
    crop_variety = Column(String, nullable=True)
    actual_yield = Column(Float, nullable=False)
    quality_grade = Column(String, nullable=True)
    harvest_date = Column(DateTime(timezone=True), nullable=False)
    gps_coordinates = Column(String, nullable=True)
    storage_location = Column(String, nullable=True)
    compliance_status = Column(String, nullable=False)               # EUDR_COMPLIANT | pending | non_compliant
    lifecycle_stage = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    schedule = relationship("CropSchedule", back_populates="batch")
    events = relationship("BatchEvent", back_populates="batch", order_by="BatchEvent.id")

    @validates("harvest_date", "created_at", "updated_at")
    def _tz(self, _, v):
        return _aware(v)


class BatchEvent(Base):
    """Append-only stage history of a batch."""
    __tablename__ = "batch_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_code = Column(String, ForeignKey("batches.batch_code"), nullable=False, index=True)
    from_stage = Column(String, nullable=False)
    to_stage = Column(String, nullable=False)
    actor = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    batch = relationship("Batch", back_populates="events")


class LotTransaction(Base):
    __tablename__ = "lot_transactions"

    transaction_code = Column(String, primary_key=True)
    # unique: at most one accepted transaction per batch, enforced by the database
    batch_code = Column(String, ForeignKey("batches.batch_code"), nullable=False, unique=True)
    buyer_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="accepted")
    accepted_at = Column(DateTime(timezone=True), nullable=False)


class PaymentRecord(Base):
    """Farmer payment for a lot. Written once, never updated."""
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_code = Column(String, ForeignKey("lot_transactions.transaction_code"), nullable=False, unique=True)
    batch_code = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    method = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    farmer_confirmed = Column(Boolean, nullable=False)
    confirmation_method = Column(String, nullable=True)
    status = Column(String, nullable=False, default="payment_confirmed")
    recorded_at = Column(DateTime(timezone=True), nullable=False)


class PackagingApproval(Base):
    """DDGOTS approval of QR-coded bags issued for a lot."""
    __tablename__ = "packaging_approvals"

    approval_code = Column(String, primary_key=True)                 # DDGOTS-QR-<ms>-<txn tail>-<token>
    # one packaging issue per lot
    transaction_code = Column(String, ForeignKey("lot_transactions.transaction_code"), nullable=False, unique=True)
    batch_code = Column(String, nullable=False, index=True)
    warehouse_id = Column(String, nullable=False)
    bag_count = Column(Integer, nullable=False)
    packaging_type = Column(String, nullable=False)
    total_weight = Column(Float, nullable=False)
    quality_grade = Column(String, nullable=True)
    requested_by = Column(String, nullable=True)
    approved_by = Column(String, nullable=False, default="DDGOTS-SYSTEM")
    status = Column(String, nullable=False, default="approved")
    approved_at = Column(DateTime(timezone=True), nullable=False)


class WarehouseDeliveryRecord(Base):
    __tablename__ = "warehouse_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_code = Column(String, ForeignKey("lot_transactions.transaction_code"), nullable=False)
    batch_code = Column(String, nullable=False, unique=True)
    warehouse_id = Column(String, nullable=False)
    declared_weight = Column(Float, nullable=False)
    actual_weight = Column(Float, nullable=False)
    variance = Column(Float, nullable=False)                         # actual - declared
    acceptance_status = Column(String, nullable=False)               # ACCEPTED | VARIANCE_REVIEW
    quality_grade = Column(String, nullable=True)
    approval_code = Column(String, nullable=False, unique=True)
    inspected_by = Column(String, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=False)


class WarehouseRegistration(Base):
    __tablename__ = "warehouse_registrations"

    registration_id = Column(String, primary_key=True)
    batch_code = Column(String, nullable=False, unique=True)
    buyer_id = Column(String, nullable=False, index=True)            # owner of the storage slot
    warehouse_id = Column(String, nullable=False)
    storage_location = Column(String, nullable=True)
    storage_start_date = Column(DateTime(timezone=True), nullable=False)
    # fixed once written; status and days remaining are derived on read
    storage_expiry_date = Column(DateTime(timezone=True), nullable=False)

    @validates("storage_start_date", "storage_expiry_date")
    def _tz(self, _, v):
        return _aware(v)


class MarketplaceListing(Base):
    """Buyer-to-exporter listing of a stored batch."""
    __tablename__ = "marketplace_listings"

    listing_id = Column(String, primary_key=True)
    registration_id = Column(String, ForeignKey("warehouse_registrations.registration_id"), nullable=False)
    batch_code = Column(String, nullable=False, unique=True)
    buyer_id = Column(String, nullable=False, index=True)
    crop_type = Column(String, nullable=False)
    quantity = Column(Float, nullable=True)
    price_per_kg = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    minimum_order = Column(Float, nullable=True)
    listed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    @validates("listed_at", "expires_at")
    def _tz(self, _, v):
        return _aware(v)


class CropListing(Base):
    """Farmer-side listing of a harvested schedule."""
    __tablename__ = "crop_listings"

    listing_id = Column(String, primary_key=True)
    schedule_id = Column(String, ForeignKey("crop_schedules.schedule_id"), nullable=False, index=True)
    farmer_id = Column(String, nullable=False, index=True)
    batch_code = Column(String, nullable=True)
    crop_type = Column(String, nullable=False)
    crop_variety = Column(String, nullable=True)
    quantity_available = Column(Float, nullable=False)
    price_per_kg = Column(Float, nullable=False)
    harvest_date = Column(DateTime(timezone=True), nullable=True)
    quality_grade = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    view_count = Column(Integer, nullable=False, default=0)
    inquiry_count = Column(Integer, nullable=False, default=0)
    location = Column(String, nullable=True)
    storage_location = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ComplianceRecord(Base):
    """Land-mapping / EUDR snapshot. Reviewed by DDGOTS, never deleted."""
    __tablename__ = "compliance_records"

    record_id = Column(String, primary_key=True)
    farmer_id = Column(String, nullable=False, index=True)
    plot_id = Column(String, nullable=False, index=True)
    land_mapping_id = Column(String, nullable=True)
    gps_coordinates = Column(String, nullable=True)
    deforestation_risk = Column(String, nullable=True)
    compliance_status = Column(String, nullable=False)
    cutoff_date = Column(String, nullable=True)
    risk_assessment = Column(String, nullable=True)
    inspector_id = Column(String, nullable=True)
    inspector_name = Column(String, nullable=True)
    inspection_date = Column(String, nullable=True)
    farmer_name = Column(String, nullable=True)
    county = Column(String, nullable=True)
    district = Column(String, nullable=True)
    village = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default="received")      # received | reviewed | approved
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_decision = Column(String, nullable=True)                  # approved | rejected
    review_notes = Column(String, nullable=True)


class ExportContract(Base):
    """Export-side progress of a batch, one row per batch."""
    __tablename__ = "export_contracts"

    batch_code = Column(String, ForeignKey("batches.batch_code"), primary_key=True)
    export_reference = Column(String, nullable=False, unique=True)   # EXP-<ms>-<exporter tail>-<token>
    listing_id = Column(String, ForeignKey("marketplace_listings.listing_id"), nullable=False)
    exporter_id = Column(String, nullable=False, index=True)
    agreed_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=False)

    # delivery
    from_warehouse = Column(String, nullable=True)
    to_warehouse = Column(String, nullable=True)
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    transport_mode = Column(String, nullable=True)
    vehicle_id = Column(String, nullable=True)
    initiated_at = Column(DateTime(timezone=True), nullable=True)
    received_weight = Column(Float, nullable=True)
    received_quality_grade = Column(String, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)

    # exporter -> buyer payment
    payment_amount = Column(Float, nullable=True)
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # port inspection
    port_inspector_id = Column(String, nullable=True)
    port_of_exit = Column(String, nullable=True)
    inspection_scheduled_for = Column(DateTime(timezone=True), nullable=True)
    inspection_assigned_at = Column(DateTime(timezone=True), nullable=True)

    # fees
    processing_fee = Column(Float, nullable=True)
    export_fee = Column(Float, nullable=True)
    inspection_fee = Column(Float, nullable=True)
    documentation_fee = Column(Float, nullable=True)
    total_fees = Column(Float, nullable=True)
    fees_intimated_at = Column(DateTime(timezone=True), nullable=True)
    fee_payment_reference = Column(String, nullable=True)
    fees_paid_at = Column(DateTime(timezone=True), nullable=True)

    # release
    released_documents = Column(JSON, nullable=True)
    released_by = Column(String, nullable=True)
    documents_released_at = Column(DateTime(timezone=True), nullable=True)


class InspectionReport(Base):
    __tablename__ = "inspection_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_code = Column(String, ForeignKey("batches.batch_code"), nullable=False, index=True)
    inspector_id = Column(String, nullable=False)
    result = Column(String, nullable=False)                          # passed | failed
    quality_grade = Column(String, nullable=True)
    findings = Column(String, nullable=True)
    fumigation_completed = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)


class NotificationRecord(Base):
    __tablename__ = "notifications"

    notification_id = Column(String, primary_key=True)
    role = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    recipients = Column(JSON, nullable=True)
    message = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
