"""Handover chain and the closure protocol."""

import pytest

from digpermit.app import permit_engine as engine
from digpermit.app.permit_errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from digpermit.app.permit_models import CHECKLIST_PART_A
from permit_builders import (
    RECEIVER,
    close_kwargs,
    make_active,
    make_ready_draft,
    make_signature,
)


def _with_patel():
    permit = make_active()
    return engine.register_member(permit, "M. Patel", "Supervisor", make_signature("M. Patel"))


class TestHandover:
    def test_initial_receiver_comes_from_issuance(self) -> None:
        assert engine.current_receiver(make_active()) == RECEIVER

    def test_handover_moves_custody(self) -> None:
        permit = engine.record_handover(_with_patel(), "M. Patel", make_signature("M. Patel"))
        assert engine.current_receiver(permit) == "M. Patel"
        assert len(permit.handover_logs) == 1

    def test_latest_handover_wins(self) -> None:
        permit = _with_patel()
        permit = engine.register_member(permit, "K. Ngata", "Crew", make_signature("K. Ngata"))
        permit = engine.record_handover(permit, "M. Patel", make_signature("M. Patel"))
        permit = engine.record_handover(permit, "K. Ngata", make_signature("K. Ngata"))
        permit = engine.record_handover(permit, "R. Lee", make_signature("R. Lee"))
        assert engine.current_receiver(permit) == "R. Lee"
        assert [h.receiver_name for h in permit.handover_logs] == ["M. Patel", "K. Ngata", "R. Lee"]

    def test_unregistered_receiver_is_refused(self) -> None:
        permit = make_active()
        with pytest.raises(AuthorizationError):
            engine.record_handover(permit, "Stranger", make_signature("Stranger"))
        assert permit.handover_logs == []

    def test_name_match_ignores_case(self) -> None:
        permit = engine.record_handover(_with_patel(), "m. PATEL", make_signature("M. Patel"))
        assert engine.current_receiver(permit) == "M. Patel"
        assert permit.handover_logs[0].receiver_name == "M. Patel"

    def test_handover_requires_signature(self) -> None:
        with pytest.raises(ValidationError):
            engine.record_handover(_with_patel(), "M. Patel", None)

    def test_explicit_date_is_kept(self) -> None:
        permit = engine.record_handover(
            _with_patel(), "M. Patel", make_signature("M. Patel"), "2024-05-02T12:00:00Z"
        )
        assert permit.handover_logs[0].date == "2024-05-02T12:00:00+00:00"


class TestClosure:
    def test_current_receiver_can_close(self) -> None:
        permit = make_active()
        closed = engine.close_permit(
            permit,
            outstanding_works_details="Reinstatement booked",
            closed_at="2024-05-03T16:00:00+00:00",
            **close_kwargs("r. lee"),
        )
        assert closed.status == "closed"
        assert closed.closure_date == "2024-05-03T16:00:00+00:00"
        assert closed.closure_receiver_name == "r. lee"
        assert closed.closure_signature.name == "r. lee"
        assert closed.closure_excavation_safe is True
        assert closed.closure_as_built_returned is True
        assert closed.closure_outstanding_works_acknowledged is True
        assert closed.closure_outstanding_works_details == "Reinstatement booked"
        assert permit.status == "active"

    def test_other_name_is_not_authorised(self) -> None:
        permit = make_active()
        with pytest.raises(AuthorizationError):
            engine.close_permit(permit, **close_kwargs("Someone Else"))
        assert permit.status == "active"

    def test_previous_receiver_loses_authority(self) -> None:
        permit = engine.record_handover(_with_patel(), "M. Patel", make_signature("M. Patel"))
        with pytest.raises(AuthorizationError):
            engine.close_permit(permit, **close_kwargs(RECEIVER))
        closed = engine.close_permit(permit, **close_kwargs("M. Patel"))
        assert closed.is_closed

    @pytest.mark.parametrize(
        "check", ["excavation_safe", "as_built_returned", "outstanding_works_acknowledged"]
    )
    def test_each_check_is_mandatory(self, check: str) -> None:
        with pytest.raises(ValidationError):
            engine.close_permit(make_active(), **close_kwargs(**{check: False}))

    def test_missing_signature_is_invalid(self) -> None:
        permit = make_active()
        with pytest.raises(ValidationError):
            engine.close_permit(permit, **close_kwargs(signature=None))
        assert permit.status == "active"

    def test_all_reasons_are_reported(self) -> None:
        permit = make_active()
        with pytest.raises(AuthorizationError) as excinfo:
            engine.close_permit(
                permit,
                **close_kwargs("Someone Else", signature=None, excavation_safe=False),
            )
        assert len(excinfo.value.reasons) == 3

    def test_blockers_are_listed_without_raising(self) -> None:
        blockers = engine.closure_blockers(
            make_active(),
            closer_name=RECEIVER,
            signature=make_signature(RECEIVER),
            excavation_safe=True,
            as_built_returned=False,
            outstanding_works_acknowledged=True,
        )
        assert [b.kind for b in blockers] == [engine.CLOSURE_BLOCKER_VALIDATION]

    def test_draft_cannot_close(self) -> None:
        with pytest.raises(InvalidStateError):
            engine.close_permit(make_ready_draft(), **close_kwargs())

    def test_closing_twice_is_rejected(self) -> None:
        closed = engine.close_permit(make_active(), **close_kwargs())
        with pytest.raises(InvalidStateError):
            engine.close_permit(closed, **close_kwargs())

    def test_approver_is_not_required(self) -> None:
        permit = make_active("mechanical")
        assert permit.approver_signature is None
        assert engine.close_permit(permit, **close_kwargs()).is_closed


class TestClosedPermitIsReadOnly:
    def test_mutations_are_rejected(self) -> None:
        closed = engine.close_permit(_with_patel(), **close_kwargs())
        before = closed.to_mapping()
        operations = [
            lambda: engine.set_answer(closed, CHECKLIST_PART_A, "1a", "no"),
            lambda: engine.record_handover(closed, "M. Patel", make_signature("M. Patel")),
            lambda: engine.approve_mechanical(closed, make_signature("A. Approver")),
            lambda: engine.sign_issuance(closed, "issuer", make_signature("I. Walker")),
            lambda: engine.update_details(closed, location="Elsewhere"),
            lambda: engine.set_high_risk_option(closed, "main_fibre", True),
            lambda: engine.add_note(closed, "late note", "R. Lee"),
            lambda: engine.add_photos(closed, [{"data": "img"}]),
        ]
        for operation in operations:
            with pytest.raises(InvalidStateError):
                operation()
        assert closed.to_mapping() == before


class TestNotesAndPhotos:
    def test_notes(self) -> None:
        permit = engine.add_note(make_active(), "Gas main found at 0.6m", "R. Lee", role="Receiver")
        [note] = permit.notes
        assert note.role == "Receiver"
        permit = engine.remove_note(permit, note.note_id)
        assert permit.notes == []
        with pytest.raises(NotFoundError):
            engine.remove_note(permit, note.note_id)

    def test_note_needs_text_and_author(self) -> None:
        with pytest.raises(ValidationError):
            engine.add_note(make_active(), "  ", "R. Lee")
        with pytest.raises(ValidationError):
            engine.add_note(make_active(), "text", "")

    def test_photo_limit_rejects_whole_batch(self) -> None:
        permit = engine.add_photos(
            make_active(), [{"data": f"img-{n}"} for n in range(3)], max_photos=4
        )
        with pytest.raises(ValidationError):
            engine.add_photos(permit, [{"data": "a"}, {"data": "b"}], max_photos=4)
        assert len(permit.photos) == 3
        permit = engine.add_photos(permit, [{"data": "d", "caption": "trench"}], max_photos=4)
        assert len(permit.photos) == 4
        assert permit.photos[-1].caption == "trench"
        assert permit.photos[-1].uploaded_by == "User"

    def test_remove_photo(self) -> None:
        permit = engine.add_photos(make_active(), [{"data": "img"}])
        permit = engine.remove_photo(permit, permit.photos[0].photo_id)
        assert permit.photos == []
        with pytest.raises(NotFoundError):
            engine.remove_photo(permit, "missing")

    def test_empty_photo_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            engine.add_photos(make_active(), [{"data": ""}])
