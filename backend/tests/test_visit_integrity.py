"""
Tests for Visit Integrity — geofence distance and duplicate-photo detection.

Covers:
  - Haversine distance and coordinate validation
  - Check-in within / beyond 200m, degraded outlets without coordinates
  - Photo validation (type, size)
  - Duplicate photo detection scoped to the sales rep
  - Status settlement after photo upload and rejected-visit guards
"""

import uuid
from datetime import datetime

import pytest
from sqlalchemy import select

from core.errors import InputError
from db.models import AuditFlag, RuleCode, Severity, VisitLog, VisitStatus
from visits.integrity import (
    DEGRADED_NO_OUTLET_COORDINATES,
    CheckInRequest,
    evaluate_distance,
    haversine_distance,
    photo_sha256,
    record_check_in,
    register_visit_photo,
    status_after_photo,
    validate_coordinates,
    validate_photo,
)

OUTLET_LAT, OUTLET_LNG = 10.0, 106.0
# ~250m and ~111m due north of the outlet
FAR_LAT = 10.00225
NEAR_LAT = 10.001

JPEG = b"\xff\xd8\xff\xe0" + b"shelf-photo" * 32


def _request(rep, outlet, latitude: float, **kwargs) -> CheckInRequest:
    return CheckInRequest(
        sales_rep_id=rep.id,
        outlet_id=outlet.id,
        latitude=latitude,
        longitude=OUTLET_LNG,
        **kwargs,
    )


# ── Geometry ───────────────────────────────────────────────────────────


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_distance(OUTLET_LAT, OUTLET_LNG, OUTLET_LAT, OUTLET_LNG) == 0

    def test_north_offset(self):
        assert haversine_distance(OUTLET_LAT, OUTLET_LNG, FAR_LAT, OUTLET_LNG) == pytest.approx(250.2, abs=0.5)

    def test_symmetric(self):
        a = haversine_distance(10.0, 106.0, 10.01, 106.02)
        b = haversine_distance(10.01, 106.02, 10.0, 106.0)
        assert a == pytest.approx(b)


class TestCoordinateValidation:
    @pytest.mark.parametrize("lat,lng", [(91, 0), (-90.5, 0), (0, 180.1), (0, -181)])
    def test_out_of_range(self, lat, lng):
        with pytest.raises(InputError):
            validate_coordinates(lat, lng)

    def test_poles_and_antimeridian_allowed(self):
        validate_coordinates(90, 180)
        validate_coordinates(-90, -180)


class TestEvaluateDistance:
    def test_within_threshold_stays_pending(self):
        check = evaluate_distance(NEAR_LAT, OUTLET_LNG, OUTLET_LAT, OUTLET_LNG, 200)
        assert check.status is VisitStatus.PENDING
        assert check.within_threshold

    def test_beyond_threshold_flagged(self):
        check = evaluate_distance(FAR_LAT, OUTLET_LNG, OUTLET_LAT, OUTLET_LNG, 200)
        assert check.status is VisitStatus.FLAGGED
        assert check.degraded is None

    def test_status_after_photo_transitions(self):
        assert status_after_photo(VisitStatus.PENDING, 150, 200) is VisitStatus.VERIFIED
        assert status_after_photo(VisitStatus.PENDING, 250, 200) is VisitStatus.FLAGGED
        assert status_after_photo(VisitStatus.FLAGGED, 250, 300) is VisitStatus.FLAGGED

    def test_missing_outlet_coordinates_degrade_to_zero(self):
        check = evaluate_distance(FAR_LAT, OUTLET_LNG, None, None, 200)
        assert check.distance == 0
        assert check.status is VisitStatus.PENDING
        assert check.degraded == DEGRADED_NO_OUTLET_COORDINATES


class TestPhotoValidation:
    def test_accepts_png(self):
        validate_photo("image/png", 1024, max_bytes=5 * 1024 * 1024)

    def test_rejects_other_types(self):
        with pytest.raises(InputError) as exc_info:
            validate_photo("image/gif", 1024, max_bytes=5 * 1024 * 1024)
        assert exc_info.value.field == "content_type"

    def test_rejects_oversize(self):
        with pytest.raises(InputError):
            validate_photo("image/jpeg", 6 * 1024 * 1024, max_bytes=5 * 1024 * 1024)

    def test_rejects_empty(self):
        with pytest.raises(InputError):
            validate_photo("image/jpeg", 0, max_bytes=5 * 1024 * 1024)


# ── Check-in (SQLite) ──────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCheckIn:
    async def test_far_check_in_flagged_with_warn(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01", latitude=OUTLET_LAT, longitude=OUTLET_LNG)

        result = await record_check_in(test_db, _request(rep, outlet, FAR_LAT), max_distance=200)

        assert result.visit.status == VisitStatus.FLAGGED.value
        assert result.visit.distance == pytest.approx(250.2, abs=0.5)
        assert result.flag.severity is Severity.WARN
        assert result.flag.rule_code is RuleCode.DISTANCE_TOO_FAR
        assert result.flag.message == "Check-in location is 250m from outlet (threshold: 200m)"

        stored = (await test_db.execute(select(AuditFlag))).scalars().one()
        assert stored.visit_log_id == result.visit.id
        assert stored.meta["threshold"] == 200
        assert stored.meta["distance"] == pytest.approx(250.2, abs=0.5)

    async def test_near_check_in_pending_without_flag(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01", latitude=OUTLET_LAT, longitude=OUTLET_LNG)

        result = await record_check_in(test_db, _request(rep, outlet, NEAR_LAT), max_distance=200)

        assert result.visit.status == VisitStatus.PENDING.value
        assert result.flag is None
        assert (await test_db.execute(select(AuditFlag))).scalars().all() == []

    async def test_outlet_without_coordinates_is_degraded(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-NOGPS", latitude=None, longitude=None)

        result = await record_check_in(test_db, _request(rep, outlet, FAR_LAT), max_distance=200)

        assert result.visit.distance == 0
        assert result.visit.status == VisitStatus.PENDING.value
        assert result.check.degraded == DEGRADED_NO_OUTLET_COORDINATES
        assert result.flag is None
        stored = await test_db.get(VisitLog, result.visit.id)
        assert stored.notes == f"[distance_unverified: {DEGRADED_NO_OUTLET_COORDINATES}]"

    async def test_degraded_marker_keeps_rep_notes(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-NOGPS", latitude=None, longitude=None)

        result = await record_check_in(
            test_db, _request(rep, outlet, FAR_LAT, notes="Back entrance"), max_distance=200
        )

        assert result.visit.notes == f"[distance_unverified: {DEGRADED_NO_OUTLET_COORDINATES}] Back entrance"

    async def test_measured_check_in_keeps_notes_untouched(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")

        result = await record_check_in(test_db, _request(rep, outlet, NEAR_LAT, notes="Front"), max_distance=200)

        assert result.visit.notes == "Front"

    async def test_invalid_coordinates_rejected(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        with pytest.raises(InputError):
            await record_check_in(test_db, _request(rep, outlet, 95.0))

    async def test_inactive_outlet_rejected(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-CLOSED", is_active=False)
        with pytest.raises(InputError) as exc_info:
            await record_check_in(test_db, _request(rep, outlet, OUTLET_LAT))
        assert exc_info.value.field == "outlet_id"


# ── Photo Evidence (SQLite) ────────────────────────────────────────────


@pytest.mark.asyncio
class TestVisitPhoto:
    async def _visit(self, db, rep, outlet, latitude=NEAR_LAT, when=datetime(2025, 1, 10, 9, 0)):
        result = await record_check_in(db, _request(rep, outlet, latitude, check_in_time=when), max_distance=200)
        return result.visit

    async def test_first_upload_verifies_visit(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        visit = await self._visit(test_db, rep, outlet)

        result = await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/a.jpg", max_distance=200)

        assert result.status is VisitStatus.VERIFIED
        assert result.sha256 == photo_sha256(JPEG)
        assert not result.duplicate_detected
        refreshed = await test_db.get(VisitLog, visit.id)
        assert refreshed.photo_path == "visits/a.jpg"

    async def test_far_visit_stays_flagged_after_photo(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        visit = await self._visit(test_db, rep, outlet, latitude=FAR_LAT)

        result = await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/far.jpg", max_distance=200)

        assert result.status is VisitStatus.FLAGGED

    async def test_flagged_visit_not_cleared_by_wider_upload_threshold(self, test_db, seed):
        """Flagged at 250m against 200m; a 300m threshold at upload must not verify it."""
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        visit = await self._visit(test_db, rep, outlet, latitude=FAR_LAT)
        assert visit.status == VisitStatus.FLAGGED.value

        result = await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/far.jpg", max_distance=300)

        assert result.status is VisitStatus.FLAGGED
        assert (await test_db.get(VisitLog, visit.id)).status == VisitStatus.FLAGGED.value

    async def test_reused_photo_raises_high_flag(self, test_db, seed):
        rep = await seed.rep("SR-01")
        first_outlet = await seed.outlet("OUT-01", name="Harbor Mart")
        second_outlet = await seed.outlet("OUT-02")
        first = await self._visit(test_db, rep, first_outlet, when=datetime(2025, 1, 10, 9, 0))
        second = await self._visit(test_db, rep, second_outlet, when=datetime(2025, 1, 11, 9, 0))
        await register_visit_photo(test_db, first.id, JPEG, "image/jpeg", "visits/1.jpg", max_distance=200)

        result = await register_visit_photo(test_db, second.id, JPEG, "image/jpeg", "visits/2.jpg", max_distance=200)

        assert result.duplicate_of == first.id
        assert result.flag.severity is Severity.HIGH
        assert result.flag.rule_code is RuleCode.DUPLICATE_PHOTO
        assert str(first.id) in result.flag.message
        assert "Harbor Mart (OUT-01)" in result.flag.message
        meta = result.flag.evidence.as_meta()
        assert meta["originalVisitId"] == str(first.id)
        assert meta["originalOutlet"] == {"code": "OUT-01", "name": "Harbor Mart"}
        assert meta["originalCheckInTime"] == "2025-01-10T09:00:00"

    async def test_same_photo_from_another_rep_is_not_duplicate(self, test_db, seed):
        rep_a, rep_b = await seed.rep("SR-A"), await seed.rep("SR-B")
        outlet = await seed.outlet("OUT-01")
        visit_a = await self._visit(test_db, rep_a, outlet)
        visit_b = await self._visit(test_db, rep_b, outlet)
        await register_visit_photo(test_db, visit_a.id, JPEG, "image/jpeg", "visits/a.jpg", max_distance=200)

        result = await register_visit_photo(test_db, visit_b.id, JPEG, "image/jpeg", "visits/b.jpg", max_distance=200)

        assert not result.duplicate_detected
        assert result.flag is None

    async def test_second_upload_rejected(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        visit = await self._visit(test_db, rep, outlet)
        await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/a.jpg", max_distance=200)

        with pytest.raises(InputError):
            await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/b.jpg", max_distance=200)

    async def test_rejected_visit_cannot_take_photo(self, test_db, seed):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        visit = await self._visit(test_db, rep, outlet)
        visit.status = VisitStatus.REJECTED.value
        await test_db.commit()

        with pytest.raises(InputError):
            await register_visit_photo(test_db, visit.id, JPEG, "image/jpeg", "visits/a.jpg", max_distance=200)

    async def test_unknown_visit(self, test_db):
        with pytest.raises(InputError):
            await register_visit_photo(test_db, uuid.uuid4(), JPEG, "image/jpeg", "visits/x.jpg", max_distance=200)
