from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from agritrace import models, schemas
from agritrace.errors import NotFoundError, PreconditionError, ValidationError
from agritrace.lifecycle import LifecycleStage, ensure_transition
from agritrace.utils import days_remaining, epoch_ms, short_token, window_status

DEFAULT_LOCATION = "Bong County, Liberia"

# ---------- crop schedules ----------

def get_schedule(db: Session, schedule_id: str) -> models.CropSchedule:
    obj = db.get(models.CropSchedule, schedule_id)
    if not obj:
        raise NotFoundError(f"Crop schedule {schedule_id} not found")
    return obj


def create_schedule(db: Session, payload: schemas.CropScheduleCreate, *, now: datetime) -> models.CropSchedule:
    schedule_id = payload.schedule_id or f"SCH-{epoch_ms(now)}-{short_token()}"
    if db.get(models.CropSchedule, schedule_id) is not None:
        raise ValidationError(f"Crop schedule {schedule_id} already exists")

    obj = models.CropSchedule(
        schedule_id=schedule_id,
        farmer_id=payload.farmer_id,
        plot_id=payload.plot_id,
        plot_name=payload.plot_name or f"Plot {payload.plot_id}",
        crop_type=payload.crop_type,
        crop_variety=payload.crop_variety,
        planting_area=payload.planting_area,
        planting_date=payload.planting_date,
        expected_harvest_date=payload.expected_harvest_date,
        expected_yield=payload.expected_yield,
        status=payload.status,
        buyer_interest=0,
        created_at=now,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def advance_schedule(db: Session, schedule_id: str, status: str) -> models.CropSchedule:
    """Move a schedule one pre-harvest stage forward (harvesting has its own operation)."""
    obj = get_schedule(db, schedule_id)
    obj.status = ensure_transition(obj.status, status, entity=f"Crop schedule {schedule_id}").value
    db.commit()
    db.refresh(obj)
    return obj


def _listed_schedule_ids(db: Session, schedule_ids: Iterable[str]) -> Set[str]:
    ids = list(schedule_ids)
    if not ids:
        return set()
    rows = (
        db.query(models.CropListing.schedule_id)
        .filter(models.CropListing.schedule_id.in_(ids), models.CropListing.status == "active")
        .all()
    )
    return {r[0] for r in rows}


def describe_schedules(db: Session, schedules: List[models.CropSchedule]) -> List[schemas.CropScheduleOut]:
    # marketStatus is derived from live listings, never stored
    listed = _listed_schedule_ids(db, (s.schedule_id for s in schedules))
    out = []
    for s in schedules:
        item = schemas.CropScheduleOut.model_validate(s)
        item.market_status = "listed" if s.schedule_id in listed else "not_listed"
        out.append(item)
    return out


def describe_schedule(db: Session, schedule: models.CropSchedule) -> schemas.CropScheduleOut:
    return describe_schedules(db, [schedule])[0]


def list_schedules(db: Session, farmer_id: str) -> List[schemas.CropScheduleOut]:
    rows = (
        db.query(models.CropSchedule)
        .filter(models.CropSchedule.farmer_id == farmer_id)
        .order_by(models.CropSchedule.created_at)
        .all()
    )
    return describe_schedules(db, rows)


def harvest_alerts(db: Session, farmer_id: str, *, now: datetime) -> List[schemas.HarvestAlertOut]:
    rows = (
        db.query(models.CropSchedule)
        .filter(
            models.CropSchedule.farmer_id == farmer_id,
            models.CropSchedule.status == LifecycleStage.READY_FOR_HARVEST.value,
        )
        .order_by(models.CropSchedule.created_at)
        .all()
    )
    return [
        schemas.HarvestAlertOut(
            id=f"ALERT-{s.schedule_id}",
            title=f"{s.crop_type} Ready for Harvest",
            message=(
                f"Your {s.crop_type} ({s.crop_variety or 'unspecified variety'}) in {s.plot_name} "
                f"is ready for harvest. Expected yield: {s.expected_yield or 0:g}kg"
            ),
            schedule_id=s.schedule_id,
            crop_type=s.crop_type,
            created_at=now,
        )
        for s in rows
    ]

# ---------- farmer crop listings ----------

def create_crop_listing(db: Session, payload: schemas.CropListingCreate, *, now: datetime) -> models.CropListing:
    schedule = get_schedule(db, payload.schedule_id)
    if schedule.farmer_id != payload.farmer_id:
        raise ValidationError(f"Crop schedule {schedule.schedule_id} does not belong to farmer {payload.farmer_id}")
    if schedule.status != LifecycleStage.HARVESTED.value:
        raise PreconditionError(
            f"Crop schedule {schedule.schedule_id} is {schedule.status}; only harvested crops can be listed"
        )

    obj = models.CropListing(
        listing_id=f"LIST-{epoch_ms(now)}-{short_token()}",
        schedule_id=schedule.schedule_id,
        farmer_id=schedule.farmer_id,
        batch_code=schedule.batch.batch_code if schedule.batch else None,
        crop_type=schedule.crop_type,
        crop_variety=schedule.crop_variety,
        quantity_available=payload.quantity_available,
        price_per_kg=payload.price_per_kg,
        harvest_date=schedule.actual_harvest_date,
        quality_grade=payload.quality_grade or schedule.quality_grade,
        status="active",
        location=payload.location or DEFAULT_LOCATION,
        storage_location=payload.storage_location or schedule.storage_location,
        created_at=now,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def list_crop_listings(db: Session, farmer_id: str) -> List[models.CropListing]:
    return (
        db.query(models.CropListing)
        .filter(models.CropListing.farmer_id == farmer_id)
        .order_by(models.CropListing.created_at)
        .all()
    )

# ---------- warehouse storage and buyer marketplace ----------

def describe_registration(reg: models.WarehouseRegistration, now: datetime) -> schemas.WarehouseRegistrationOut:
    out = schemas.WarehouseRegistrationOut.model_validate(reg)
    out.storage_status = window_status(out.storage_expiry_date, now)
    out.days_remaining = days_remaining(out.storage_expiry_date, now)
    return out


def describe_listing(listing: models.MarketplaceListing, now: datetime) -> schemas.MarketplaceListingOut:
    out = schemas.MarketplaceListingOut.model_validate(listing)
    out.listing_status = window_status(out.expires_at, now)
    out.days_remaining = days_remaining(out.expires_at, now)
    return out


def warehouse_products(db: Session, buyer_id: str, *, now: datetime) -> List[schemas.WarehouseRegistrationOut]:
    rows = (
        db.query(models.WarehouseRegistration)
        .filter(models.WarehouseRegistration.buyer_id == buyer_id)
        .order_by(models.WarehouseRegistration.storage_start_date)
        .all()
    )
    return [describe_registration(r, now) for r in rows]


def buyer_marketplace_listings(db: Session, buyer_id: str, *, now: datetime) -> List[schemas.MarketplaceListingOut]:
    rows = (
        db.query(models.MarketplaceListing)
        .filter(models.MarketplaceListing.buyer_id == buyer_id)
        .order_by(models.MarketplaceListing.listed_at)
        .all()
    )
    return [describe_listing(r, now) for r in rows]


def active_marketplace_listings(
    db: Session, *, now: datetime, crop_type: Optional[str] = None
) -> List[schemas.MarketplaceListingOut]:
    """What exporters see: every listing whose window is still open."""
    q = db.query(models.MarketplaceListing)
    if crop_type:
        q = q.filter(models.MarketplaceListing.crop_type == crop_type)
    described = [describe_listing(r, now) for r in q.order_by(models.MarketplaceListing.listed_at).all()]
    return [d for d in described if d.listing_status == "active"]
