"""
Tests for session reconciliation: dedup, bursts, corrections and exit
"""

import os
from datetime import time

import pytest
from sqlalchemy.exc import IntegrityError

from lotkeeper import crud, models
from lotkeeper.errors import ConflictError, InfrastructureError, NotFoundError, ValidationError

RIGHT = models.PhotoKind.ENTRY_RIGHT
LEFT = models.PhotoKind.ENTRY_LEFT
REAR = models.PhotoKind.ENTRY_REAR


def active_sessions(db, plate):
    return db.query(models.ParkingSession).filter(
        models.ParkingSession.plate == plate,
        models.ParkingSession.state == models.SessionState.ACTIVE,
    ).all()


def uploaded_files(storage):
    if not os.path.isdir(storage.upload_dir):
        return []
    return os.listdir(storage.upload_dir)


class TestFirstAnglePhoto:
    """Test session creation and reuse from the first-angle photo"""

    def test_creates_session(self, db, service, recognizer):
        recognizer.push_plate("ABC123", 0.8)
        result = service.ingest_photo(db, b"jpeg", RIGHT)

        assert result.session_id is not None
        db_session = crud.get_session(db, result.session_id)
        assert db_session.plate == "ABC123"
        assert db_session.state == models.SessionState.ACTIVE
        assert db_session.vehicle_type == models.VehicleType.CAR
        assert db_session.entry_time == time(8, 0, 0)
        assert db_session.photo_count == 1
        assert result.photo.confidence == pytest.approx(0.8)

    def test_same_plate_twice_yields_one_active_session(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        recognizer.push_plate("ABC123")

        first = service.ingest_photo(db, b"jpeg", RIGHT)
        second = service.ingest_photo(db, b"jpeg", RIGHT)

        assert first.session_id == second.session_id
        assert len(active_sessions(db, "ABC123")) == 1
        assert len(crud.get_entry_photos(db, first.session_id)) == 2
        assert crud.get_session(db, first.session_id).photo_count == 2

    def test_reused_session_keeps_stored_photo_count(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        recognizer.push_failure()
        recognizer.push_failure()
        recognizer.push_plate("ABC123")

        first = service.ingest_photo(db, b"jpeg", RIGHT)
        service.ingest_photo(db, b"jpeg", LEFT)
        service.ingest_photo(db, b"jpeg", REAR)
        again = service.ingest_photo(db, b"jpeg", RIGHT)

        assert again.session_id == first.session_id
        assert crud.get_session(db, first.session_id).photo_count == 4
        assert len(crud.get_entry_photos(db, first.session_id)) == 4

    def test_no_plate_creates_nothing(self, db, service, recognizer, storage):
        recognizer.push_failure("ZZ 9")
        result = service.ingest_photo(db, b"jpeg", RIGHT)

        assert result.session_id is None
        assert result.photo is None
        assert result.recognition.needs_correction
        assert db.query(models.ParkingSession).count() == 0
        assert db.query(models.Photo).count() == 0
        assert uploaded_files(storage) == []

    def test_new_session_after_exit(self, db, service, recognizer, tariff):
        recognizer.push_plate("ABC123")
        first = service.ingest_photo(db, b"jpeg", RIGHT)
        service.register_exit(db, first.session_id, time(9, 0))

        recognizer.push_plate("ABC123")
        second = service.ingest_photo(db, b"jpeg", RIGHT)

        assert second.session_id != first.session_id
        assert len(active_sessions(db, "ABC123")) == 1


class TestBurst:
    """Test attaching second/third angle photos"""

    def test_follow_up_angles_attach_to_burst(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        recognizer.push_failure()
        recognizer.push_plate("ABC123", 0.6)

        first = service.ingest_photo(db, b"jpeg", RIGHT)
        left = service.ingest_photo(db, b"jpeg", LEFT)
        rear = service.ingest_photo(db, b"jpeg", REAR)

        assert left.session_id == first.session_id
        assert rear.session_id == first.session_id
        assert left.photo.detected_plate is None
        assert left.photo.confidence is None
        assert crud.get_session(db, first.session_id).photo_count == 3

    def test_burst_capped_at_three(self, db, service, recognizer, storage):
        recognizer.push_plate("ABC123")
        for _ in range(3):
            recognizer.push_failure()

        first = service.ingest_photo(db, b"jpeg", RIGHT)
        service.ingest_photo(db, b"jpeg", LEFT)
        service.ingest_photo(db, b"jpeg", REAR)
        extra = service.ingest_photo(db, b"jpeg", LEFT)

        assert extra.session_id is None
        assert extra.photo is None
        assert crud.get_session(db, first.session_id).photo_count == 3
        assert len(crud.get_entry_photos(db, first.session_id)) == 3
        assert len(uploaded_files(storage)) == 3

    def test_follow_up_without_burst_not_persisted(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        result = service.ingest_photo(db, b"jpeg", LEFT)

        assert result.session_id is None
        assert result.recognition.plate == "ABC123"
        assert db.query(models.ParkingSession).count() == 0
        assert db.query(models.Photo).count() == 0

    def test_failed_first_angle_resets_burst(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        recognizer.push_failure()
        recognizer.push_failure()

        service.ingest_photo(db, b"jpeg", RIGHT)
        service.ingest_photo(db, b"jpeg", RIGHT)
        left = service.ingest_photo(db, b"jpeg", LEFT)

        assert left.session_id is None

    def test_burst_window_expires(self, db, service, recognizer, burst_clock):
        recognizer.push_plate("ABC123")
        recognizer.push_failure()

        service.ingest_photo(db, b"jpeg", RIGHT)
        burst_clock.advance(61)
        left = service.ingest_photo(db, b"jpeg", LEFT)

        assert left.session_id is None


class TestFindOrCreate:
    """Test persistence-level dedup"""

    def test_unique_violation_translated_into_reuse(self, db, monkeypatch):
        existing, created = crud.find_or_create_active_session(db, "ABC123", time(8, 0))
        assert created

        real_lookup = crud.get_active_session_by_plate
        calls = []

        def stale_lookup(session, plate):
            calls.append(plate)
            if len(calls) == 1:
                return None
            return real_lookup(session, plate)

        monkeypatch.setattr(crud, "get_active_session_by_plate", stale_lookup)
        reused, created = crud.find_or_create_active_session(db, "ABC123", time(8, 1))

        assert not created
        assert reused.id == existing.id
        assert len(active_sessions(db, "ABC123")) == 1

    def test_index_allows_closed_duplicates(self, db):
        first, _ = crud.find_or_create_active_session(db, "ABC123", time(8, 0))
        assert crud.close_session(db, first.id, time(9, 0), 3000.0)
        second, created = crud.find_or_create_active_session(db, "ABC123", time(10, 0))
        assert created
        assert second.id != first.id

    def test_closed_without_cost_is_unrepresentable(self, db):
        db.add(models.ParkingSession(
            plate="ABC123", entry_time=time(8, 0), state=models.SessionState.CLOSED,
            vehicle_type=models.VehicleType.CAR, photo_count=0,
        ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestManualEntry:
    """Test manual session registration"""

    def test_register(self, db, service):
        db_session = service.register_entry(db, "abc-123", time(7, 45, 10), models.VehicleType.MOTO)
        assert db_session.plate == "ABC123"
        assert db_session.vehicle_type == models.VehicleType.MOTO
        assert db_session.entry_time == time(7, 45, 10)

    def test_conflict_on_active_plate(self, db, service):
        service.register_entry(db, "ABC123", time(7, 45))
        with pytest.raises(ConflictError):
            service.register_entry(db, "ABC 123", time(8, 0))

    def test_invalid_plate(self, db, service):
        with pytest.raises(ValidationError):
            service.register_entry(db, "AB12", time(7, 45))


class TestPlateCorrection:
    """Test manual plate correction on photos"""

    def test_correction_does_not_touch_session(self, db, service, recognizer):
        recognizer.push_plate("ABC123", 0.4)
        result = service.ingest_photo(db, b"jpeg", RIGHT)

        photo = service.correct_photo_plate(db, result.photo.id, "abd-128")

        assert photo.detected_plate == "ABD128"
        assert photo.confidence == 1.0
        assert crud.get_session(db, result.session_id).plate == "ABC123"

    def test_invalid_format(self, db, service, recognizer):
        recognizer.push_plate("ABC123")
        result = service.ingest_photo(db, b"jpeg", RIGHT)
        with pytest.raises(ValidationError):
            service.correct_photo_plate(db, result.photo.id, "ABC12")
        assert crud.get_photo(db, result.photo.id).detected_plate == "ABC123"

    def test_missing_photo(self, db, service):
        with pytest.raises(NotFoundError):
            service.correct_photo_plate(db, 999, "ABC123")


class TestExit:
    """Test exit registration and billing"""

    def test_exit_bills_and_closes(self, db, service, tariff):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        closed, charge = service.register_exit(db, db_session.id, time(9, 5))

        assert charge.cost == 6000
        assert charge.hourly_rate == 3000
        assert closed.state == models.SessionState.CLOSED
        assert closed.exit_time == time(9, 5)
        assert closed.cost == 6000

    def test_retry_on_closed_fails_identically(self, db, service, tariff):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        service.register_exit(db, db_session.id, time(9, 5))

        messages = []
        for exit_time in (time(9, 5), time(10, 0), time(11, 0)):
            with pytest.raises(ValidationError) as exc_info:
                service.register_exit(db, db_session.id, exit_time)
            messages.append(exc_info.value.message)

        assert len(set(messages)) == 1
        frozen = crud.get_session(db, db_session.id)
        assert frozen.exit_time == time(9, 5)
        assert frozen.cost == 6000

    def test_non_positive_duration_leaves_session_active(self, db, service, tariff):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        with pytest.raises(ValidationError):
            service.register_exit(db, db_session.id, time(8, 0))

        fresh = crud.get_session(db, db_session.id)
        assert fresh.state == models.SessionState.ACTIVE
        assert fresh.cost is None
        assert fresh.exit_time is None

    def test_rate_read_at_close_time(self, db, service, tariff):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        crud.write_tariff(db, "hourly_rate", 4000.0)
        _, charge = service.register_exit(db, db_session.id, time(8, 30))
        assert charge.cost == 4000

    def test_missing_session(self, db, service, tariff):
        with pytest.raises(NotFoundError):
            service.register_exit(db, 42, time(9, 0))

    def test_missing_tariff(self, db, service):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        with pytest.raises(InfrastructureError):
            service.register_exit(db, db_session.id, time(9, 0))
        assert crud.get_session(db, db_session.id).state == models.SessionState.ACTIVE


class TestPhotoListingAndDelete:
    """Test listing order and best-effort file cleanup"""

    def test_entry_photos_ordered_by_angle(self, db, service):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        for kind in (REAR, RIGHT, LEFT):
            crud.create_photo(db, db_session.id, f"/uploads/{kind.value}.jpg", kind)
        crud.create_photo(db, db_session.id, "/uploads/exit.jpg", models.PhotoKind.EXIT)

        photos = service.list_entry_photos(db, db_session.id)
        assert [p.kind for p in photos] == [RIGHT, LEFT, REAR]

    def test_list_for_missing_session(self, db, service):
        with pytest.raises(NotFoundError):
            service.list_entry_photos(db, 5)

    def test_delete_removes_file(self, db, service, recognizer, storage):
        recognizer.push_plate("ABC123")
        result = service.ingest_photo(db, b"jpeg", RIGHT)
        assert len(uploaded_files(storage)) == 1

        service.delete_photo(db, result.photo.id)

        assert crud.get_photo(db, result.photo.id) is None
        assert uploaded_files(storage) == []
        assert crud.get_session(db, result.session_id).photo_count == 0

    def test_delete_with_missing_file_still_succeeds(self, db, service, caplog):
        db_session = service.register_entry(db, "ABC123", time(8, 0))
        photo = crud.create_photo(db, db_session.id, "/uploads/gone.jpg", RIGHT)

        service.delete_photo(db, photo.id)

        assert crud.get_photo(db, photo.id) is None
        assert "gone.jpg" in caplog.text
