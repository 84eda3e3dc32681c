"""
Visit Integrity — Geofence distance and duplicate-photo checks for field visits.

Runs synchronously per visit, independent of the windowed rule engine:
  - Check-in: haversine distance to the outlet's registered coordinate.
    ≤ 200m → PENDING, otherwise FLAGGED plus a WARN DISTANCE_TOO_FAR flag.
  - Photo upload: SHA-256 of the image bytes. Reusing a hash from another
    visit of the same sales rep raises a HIGH DUPLICATE_PHOTO flag. Status
    becomes VERIFIED or FLAGGED from the stored distance alone.

Outlets without a registered coordinate cannot be verified; distance
defaults to 0 and the check reports itself as degraded.

Status transitions: PENDING → VERIFIED | FLAGGED. REJECTED is set only by
manual review and is terminal.
"""

import hashlib
import math
import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from audit.evidence import DistanceEvidence, DuplicatePhotoEvidence
from audit.flags import FlagDraft, save_flags
from core.config import get_settings
from core.errors import DependencyFailure, InputError
from db.models import EntityType, Outlet, SalesRep, Severity, VisitLog, VisitStatus

logger = structlog.get_logger()

EARTH_RADIUS_M = 6_371_000
ALLOWED_PHOTO_TYPES = ("image/jpeg", "image/png")
DEGRADED_NO_OUTLET_COORDINATES = "outlet_coordinates_missing"


# ──────────────────────────────────────────────────────────────────────────
# Geometry
# ──────────────────────────────────────────────────────────────────────────


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def validate_coordinates(latitude: float, longitude: float) -> None:
    if latitude is None or not -90 <= latitude <= 90:
        raise InputError(f"Latitude out of range: {latitude}", field="latitude")
    if longitude is None or not -180 <= longitude <= 180:
        raise InputError(f"Longitude out of range: {longitude}", field="longitude")


@dataclass(frozen=True)
class DistanceCheck:
    distance: float
    status: VisitStatus
    threshold: float
    degraded: str | None = None

    @property
    def within_threshold(self) -> bool:
        return self.status is VisitStatus.PENDING


def evaluate_distance(
    latitude: float,
    longitude: float,
    outlet_latitude: float | None,
    outlet_longitude: float | None,
    max_distance: float,
) -> DistanceCheck:
    validate_coordinates(latitude, longitude)

    if outlet_latitude is None or outlet_longitude is None:
        logger.warning(
            "visits.distance_degraded",
            reason=DEGRADED_NO_OUTLET_COORDINATES,
            latitude=latitude,
            longitude=longitude,
        )
        return DistanceCheck(
            distance=0.0,
            status=VisitStatus.PENDING,
            threshold=max_distance,
            degraded=DEGRADED_NO_OUTLET_COORDINATES,
        )

    distance = haversine_distance(latitude, longitude, outlet_latitude, outlet_longitude)
    status = VisitStatus.PENDING if distance <= max_distance else VisitStatus.FLAGGED
    return DistanceCheck(distance=distance, status=status, threshold=max_distance)


def status_after_photo(current: VisitStatus, distance: float, max_distance: float) -> VisitStatus:
    """PENDING settles to VERIFIED or FLAGGED; a visit flagged at check-in stays FLAGGED."""
    if current is VisitStatus.FLAGGED:
        return VisitStatus.FLAGGED
    return VisitStatus.VERIFIED if distance <= max_distance else VisitStatus.FLAGGED


# ──────────────────────────────────────────────────────────────────────────
# Check-in
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CheckInRequest:
    sales_rep_id: uuid.UUID
    outlet_id: uuid.UUID
    latitude: float
    longitude: float
    accuracy: float | None = None
    check_in_time: datetime | None = None
    notes: str | None = None


@dataclass
class CheckInResult:
    visit: VisitLog
    check: DistanceCheck
    flag: FlagDraft | None = None


async def _get_active(db: AsyncSession, model, entity_id: uuid.UUID, field_name: str):
    entity = await db.get(model, entity_id)
    if entity is None:
        raise InputError(f"Unknown {field_name}: {entity_id}", field=field_name)
    if not entity.is_active:
        raise InputError(f"{model.__name__} {entity_id} is not active", field=field_name)
    return entity


async def record_check_in(
    db: AsyncSession,
    request: CheckInRequest,
    max_distance: float | None = None,
) -> CheckInResult:
    """
    Create the visit log for a check-in and run the distance check.

    The visit and its DISTANCE_TOO_FAR flag (if any) commit together.
    """
    max_distance = max_distance if max_distance is not None else get_settings().visit_max_distance_m
    validate_coordinates(request.latitude, request.longitude)

    try:
        await _get_active(db, SalesRep, request.sales_rep_id, "sales_rep_id")
        outlet = await _get_active(db, Outlet, request.outlet_id, "outlet_id")

        check = evaluate_distance(
            request.latitude, request.longitude, outlet.latitude, outlet.longitude, max_distance
        )

        notes = request.notes
        if check.degraded:
            marker = f"[distance_unverified: {check.degraded}]"
            notes = f"{marker} {notes}" if notes else marker

        server_time = datetime.utcnow()
        visit = VisitLog(
            id=uuid.uuid4(),
            sales_rep_id=request.sales_rep_id,
            outlet_id=request.outlet_id,
            latitude=request.latitude,
            longitude=request.longitude,
            accuracy=request.accuracy,
            distance=check.distance,
            status=check.status.value,
            check_in_time=request.check_in_time or server_time,
            server_time=server_time,
            notes=notes,
        )
        db.add(visit)
        await db.flush()

        flag = None
        if check.status is VisitStatus.FLAGGED:
            flag = FlagDraft(
                entity_type=EntityType.VISIT,
                entity_id=str(visit.id),
                severity=Severity.WARN,
                message=(
                    f"Check-in location is {check.distance:.0f}m from outlet "
                    f"(threshold: {max_distance:g}m)"
                ),
                evidence=DistanceEvidence(
                    check_in_lat=request.latitude,
                    check_in_lng=request.longitude,
                    outlet_lat=outlet.latitude,
                    outlet_lng=outlet.longitude,
                    distance=check.distance,
                    threshold=max_distance,
                ),
                visit_log_id=visit.id,
            )
            await save_flags(db, [flag], commit=False)

        visit_id = visit.id
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise DependencyFailure("record_check_in", exc) from exc

    logger.info(
        "visits.checked_in",
        visit_id=str(visit_id),
        distance=round(check.distance, 1),
        status=check.status.value,
        degraded=check.degraded,
    )
    return CheckInResult(visit=visit, check=check, flag=flag)


# ──────────────────────────────────────────────────────────────────────────
# Photo Evidence
# ──────────────────────────────────────────────────────────────────────────


def photo_sha256(photo_bytes: bytes) -> str:
    return hashlib.sha256(photo_bytes).hexdigest()


def validate_photo(content_type: str, size_bytes: int, max_bytes: int | None = None) -> None:
    max_bytes = max_bytes or get_settings().photo_max_bytes
    if content_type not in ALLOWED_PHOTO_TYPES:
        raise InputError(
            f"Invalid file type: {content_type}. Allowed: {', '.join(ALLOWED_PHOTO_TYPES)}",
            field="content_type",
        )
    if size_bytes <= 0:
        raise InputError("Photo is empty", field="file")
    if size_bytes > max_bytes:
        raise InputError(
            f"File too large: {size_bytes / 1024 / 1024:.2f}MB. Max: {max_bytes / 1024 / 1024:g}MB",
            field="file",
        )


@dataclass
class PhotoCheckResult:
    visit: VisitLog
    sha256: str
    status: VisitStatus
    duplicate_of: uuid.UUID | None = None
    flag: FlagDraft | None = None

    @property
    def duplicate_detected(self) -> bool:
        return self.duplicate_of is not None


async def find_duplicate_photo(
    db: AsyncSession, sales_rep_id: uuid.UUID, sha256: str, exclude_visit_id: uuid.UUID
) -> VisitLog | None:
    """Earliest other visit by the same sales rep carrying the same photo hash."""
    result = await db.execute(
        select(VisitLog)
        .where(
            VisitLog.sales_rep_id == sales_rep_id,
            VisitLog.photo_sha256 == sha256,
            VisitLog.id != exclude_visit_id,
        )
        .order_by(VisitLog.check_in_time, VisitLog.id)
        .limit(1)
    )
    return result.scalars().first()


async def register_visit_photo(
    db: AsyncSession,
    visit_id: uuid.UUID,
    photo_bytes: bytes,
    content_type: str,
    photo_path: str,
    max_distance: float | None = None,
) -> PhotoCheckResult:
    """
    Attach uploaded photo evidence to a visit.

    Storing the bytes is the caller's job; this records the path and hash,
    settles the visit status, and flags reused images.
    """
    max_distance = max_distance if max_distance is not None else get_settings().visit_max_distance_m
    validate_photo(content_type, len(photo_bytes))
    sha256 = photo_sha256(photo_bytes)

    try:
        visit = await db.get(VisitLog, visit_id)
        if visit is None:
            raise InputError(f"Unknown visit_id: {visit_id}", field="visit_id")
        if visit.photo_path:
            raise InputError("Photo already uploaded for this visit", field="visit_id")
        if visit.status == VisitStatus.REJECTED.value:
            raise InputError("Visit has been rejected", field="visit_id")

        original = await find_duplicate_photo(db, visit.sales_rep_id, sha256, visit.id)

        status = status_after_photo(VisitStatus(visit.status), visit.distance, max_distance)
        visit.photo_path = photo_path
        visit.photo_sha256 = sha256
        visit.status = status.value

        flag = None
        if original is not None:
            original_outlet = await db.get(Outlet, original.outlet_id)
            flag = FlagDraft(
                entity_type=EntityType.VISIT,
                entity_id=str(visit.id),
                severity=Severity.HIGH,
                message=(
                    f"Duplicate photo detected. Same image was previously uploaded for visit {original.id} "
                    f"at {original_outlet.name} ({original_outlet.code}) on {original.check_in_time.isoformat()}"
                ),
                evidence=DuplicatePhotoEvidence(
                    original_visit_id=str(original.id),
                    original_outlet_code=original_outlet.code,
                    original_outlet_name=original_outlet.name,
                    original_check_in_time=original.check_in_time.isoformat(),
                    sha256=sha256,
                ),
                visit_log_id=visit.id,
            )
            await save_flags(db, [flag], commit=False)

        visit_id = visit.id
        duplicate_of = original.id if original is not None else None
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise DependencyFailure("register_visit_photo", exc) from exc

    logger.info(
        "visits.photo_registered",
        visit_id=str(visit_id),
        status=status.value,
        duplicate_of=str(duplicate_of) if duplicate_of else None,
    )
    return PhotoCheckResult(visit=visit, sha256=sha256, status=status, duplicate_of=duplicate_of, flag=flag)
