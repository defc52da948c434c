"""Store-backed permit service: read-modify-write, queries and activity."""

import json
import logging

import pytest

from digpermit.app.data_store import MemoryPermitStore
from digpermit.app.permit_errors import (
    AuthorizationError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from digpermit.app.permit_models import CHECKLIST_PART_A, CHECKLIST_PART_B
from digpermit.app.permit_service import PermitService
from digpermit.core import ActivityStream
from permit_builders import (
    ISSUER,
    RECEIVER,
    close_kwargs,
    make_ready_draft,
    make_signature,
    member_id,
)

DAY = "2024-05-01"


def _make_service(**kwargs) -> PermitService:
    return PermitService(MemoryPermitStore(), number_prefix="EB-PT", **kwargs)


def _activate(service: PermitService, permit_id: str) -> None:
    permit = service.get_permit(permit_id)
    for kind in (CHECKLIST_PART_A, "risk", CHECKLIST_PART_B, "receiver"):
        for item in permit.checklist(kind):
            service.set_answer(permit_id, kind, item.item_id, "yes")
    service.sign_issuance(permit_id, "issuer", make_signature(ISSUER))
    service.sign_issuance(permit_id, "receiver", make_signature(RECEIVER))
    service.activate_permit(permit_id)


def _stored_bytes(service: PermitService, permit_id: str) -> str:
    return json.dumps(service.store.raw_payload(permit_id), sort_keys=True)


class TestCreation:
    def test_numbers_follow_permit_count(self) -> None:
        service = _make_service()
        first = service.create_permit(location="A")
        second = service.create_permit(location="B")
        assert first.permit_number.endswith("-0001")
        assert second.permit_number.endswith("-0002")
        assert first.permit_number.startswith("EB-PT-")
        assert first.revision == 1
        assert first.status == "draft"

    def test_explicit_number_must_be_unique(self) -> None:
        service = _make_service()
        service.create_permit(permit_number="EB-PT-2024-0100")
        with pytest.raises(DuplicateError):
            service.create_permit(permit_number="EB-PT-2024-0100")

    def test_issue_permit_directly_active(self) -> None:
        service = _make_service()
        issued = service.issue_permit(make_ready_draft())
        assert issued.status == "active"
        assert service.get_permit(issued.permit_id).status == "active"

    def test_issue_permit_checks_activation_rules(self) -> None:
        service = _make_service()
        draft = make_ready_draft()
        draft.issuer_signature = None
        with pytest.raises(ValidationError):
            service.issue_permit(draft)
        assert service.list_permits() == []


class TestReadModifyWrite:
    def test_changes_are_persisted(self) -> None:
        service = _make_service()
        permit = service.create_permit()
        service.set_answer(permit.permit_id, CHECKLIST_PART_A, "1a", "yes", "plans on site")
        stored = service.get_permit(permit.permit_id)
        assert stored.checklist(CHECKLIST_PART_A)[0].answer == "yes"
        assert stored.revision == 2

    def test_no_op_skips_the_write(self) -> None:
        service = _make_service()
        permit = service.create_permit(excavation_type="hydro")
        result = service.set_answer(permit.permit_id, CHECKLIST_PART_B, "1", "yes")
        assert result.revision == 1
        assert [e.operation for e in service.activity(permit.permit_id)] == ["create"]

    def test_unknown_permit(self) -> None:
        with pytest.raises(NotFoundError):
            _make_service().set_answer("missing", CHECKLIST_PART_A, "1a", "yes")

    def test_rejection_leaves_store_untouched(self) -> None:
        service = _make_service()
        permit = service.create_permit()
        before = _stored_bytes(service, permit.permit_id)
        with pytest.raises(ValidationError):
            service.activate_permit(permit.permit_id)
        assert _stored_bytes(service, permit.permit_id) == before

    def test_rejections_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        service = _make_service()
        permit = service.create_permit()
        _activate(service, permit.permit_id)
        with caplog.at_level(logging.WARNING, logger="digpermit.service"):
            with pytest.raises(AuthorizationError):
                service.record_handover(permit.permit_id, "Stranger", make_signature("Stranger"))
        assert "record_handover" in caplog.text


class TestClosedPermit:
    def test_stored_record_is_byte_for_byte_unchanged(self) -> None:
        service = _make_service()
        permit = service.create_permit()
        _activate(service, permit.permit_id)
        service.register_member(permit.permit_id, "A. Smith", "Operator", make_signature("A. Smith"))
        mid = member_id(service.get_permit(permit.permit_id), "A. Smith")
        service.close_permit(permit.permit_id, **close_kwargs())
        before = _stored_bytes(service, permit.permit_id)

        attempts = [
            lambda: service.set_answer(permit.permit_id, CHECKLIST_PART_B, "1", "no"),
            lambda: service.record_handover(permit.permit_id, "A. Smith", make_signature("A. Smith")),
            lambda: service.assign_role(permit.permit_id, mid, "operator", DAY),
            lambda: service.sign_on_crew(permit.permit_id, mid, DAY),
            lambda: service.close_permit(permit.permit_id, **close_kwargs()),
            lambda: service.add_note(permit.permit_id, "late", "R. Lee"),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidStateError):
                attempt()
        assert _stored_bytes(service, permit.permit_id) == before

    def test_closure_snapshot(self) -> None:
        stream = ActivityStream()
        service = _make_service(stream=stream)
        permit = service.create_permit()
        _activate(service, permit.permit_id)
        service.close_permit(permit.permit_id, **close_kwargs())
        [snapshot] = stream.snapshots(permit_id=permit.permit_id)
        assert snapshot.data["status"] == "closed"
        assert stream.tail(limit=1)[0].operation == "close"


class TestQueries:
    def test_search_by_text_and_status(self) -> None:
        service = _make_service()
        quay = service.create_permit(location="12 Quay Street", external_reference_number="ITWO-9")
        service.create_permit(location="8 Albert Street")
        _activate(service, quay.permit_id)

        assert [p.permit_id for p in service.search_permits("quay")] == [quay.permit_id]
        assert [p.permit_id for p in service.search_permits("itwo-9")] == [quay.permit_id]
        assert len(service.search_permits("street")) == 2
        assert [p.permit_id for p in service.search_permits(status="active")] == [quay.permit_id]
        assert len(service.search_permits(status="all")) == 2

    def test_receiver_of_follows_handover(self) -> None:
        service = _make_service()
        permit = service.create_permit()
        _activate(service, permit.permit_id)
        assert service.receiver_of(permit.permit_id) == RECEIVER
        service.register_member(permit.permit_id, "M. Patel", "Crew", make_signature("M. Patel"))
        service.record_handover(permit.permit_id, "M. Patel", make_signature("M. Patel"))
        assert service.receiver_of(permit.permit_id) == "M. Patel"

    def test_daily_sheet(self) -> None:
        service = _make_service()
        permit = service.create_permit()
        _activate(service, permit.permit_id)
        service.sign_on_receiver(permit.permit_id, DAY)
        sheet = service.daily_sheet(permit.permit_id, DAY)
        assert sheet.key_roles["receiver"].name == RECEIVER


class TestPhotos:
    def test_limit_comes_from_service(self) -> None:
        service = _make_service(max_photos=2)
        permit = service.create_permit()
        service.add_photos(permit.permit_id, [{"data": "a"}, {"data": "b"}])
        with pytest.raises(ValidationError):
            service.add_photos(permit.permit_id, [{"data": "c"}])
        assert len(service.get_permit(permit.permit_id).photos) == 2
