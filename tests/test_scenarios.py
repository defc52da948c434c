"""End-to-end permit scenarios through the service."""

import json

import pytest

from digpermit.app import permit_engine as engine
from digpermit.app.data_store import MemoryPermitStore
from digpermit.app.permit_errors import AuthorizationError, InvalidStateError, ValidationError
from digpermit.app.permit_models import CHECKLIST_PART_B, CHECKLIST_RECEIVER
from digpermit.app.permit_service import PermitService
from permit_builders import RECEIVER, close_kwargs, make_ready_draft, make_signature, member_id


def _issued(excavation_type: str = "mechanical") -> tuple[PermitService, str]:
    service = PermitService(MemoryPermitStore())
    permit = service.issue_permit(make_ready_draft(excavation_type, receiver=RECEIVER))
    return service, permit.permit_id


class TestScenarios:
    def test_hydro_permit_skips_mechanical_sections(self) -> None:
        service, permit_id = _issued("hydro")
        before = service.get_permit(permit_id)
        for kind in (CHECKLIST_PART_B, CHECKLIST_RECEIVER):
            result = service.set_answer(permit_id, kind, "1", "yes")
            assert result.revision == before.revision
        assert engine.advisories(before) == []
        closed = service.close_permit(permit_id, **close_kwargs())
        assert closed.status == "closed"
        assert closed.approver_signature is None

    def test_operator_reassignment_keeps_one_holder(self) -> None:
        service, permit_id = _issued()
        service.register_member(permit_id, "A. Smith", "Operator", make_signature("A. Smith"))
        service.register_member(permit_id, "B. Jones", "Operator", make_signature("B. Jones"))
        permit = service.get_permit(permit_id)
        service.assign_role(permit_id, member_id(permit, "A. Smith"), "operator", "2024-05-01")
        service.assign_role(permit_id, member_id(permit, "B. Jones"), "operator", "2024-05-01")
        cell = [
            log
            for log in service.get_permit(permit_id).daily_logs
            if log.role == "operator" and log.date == "2024-05-01"
        ]
        assert [log.name for log in cell] == ["B. Jones"]

    def test_handover_revokes_original_receiver(self) -> None:
        service, permit_id = _issued()
        service.register_member(permit_id, "M. Patel", "Supervisor", make_signature("M. Patel"))
        service.record_handover(permit_id, "M. Patel", make_signature("M. Patel"))
        assert service.receiver_of(permit_id) == "M. Patel"
        with pytest.raises(AuthorizationError):
            service.close_permit(permit_id, **close_kwargs(RECEIVER))
        assert service.get_permit(permit_id).status == "active"

    def test_closure_without_signature_is_rejected(self) -> None:
        service, permit_id = _issued()
        with pytest.raises(ValidationError):
            service.close_permit(permit_id, **close_kwargs(signature=None))
        assert service.get_permit(permit_id).status == "active"

    def test_closed_permit_rejects_checklist_edit(self) -> None:
        service, permit_id = _issued()
        service.close_permit(permit_id, **close_kwargs())
        before = json.dumps(service.store.raw_payload(permit_id), sort_keys=True)
        with pytest.raises(InvalidStateError):
            service.set_answer(permit_id, CHECKLIST_PART_B, "1", "yes")
        assert json.dumps(service.store.raw_payload(permit_id), sort_keys=True) == before
