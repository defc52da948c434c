"""Permit lifecycle and authorization rules.

Every function here is a pure transformation: it takes a ``PermitRecord``,
validates the request against the permit's current state and returns a new
record. The input is never modified. When a request is already satisfied
(an idempotent sign-on, an inert mechanical-only section on a hydro or hand
dig) the original record is returned unchanged so callers can skip the write.

Lifecycle:
    draft -> active -> closed

Closed is terminal. Every mutating function calls ``require_open`` first.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable

from digpermit.app.permit_errors import (
    AuthorizationError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from digpermit.app.permit_models import (
    ASSIGNABLE_LOG_ROLES,
    CHECKLIST_KINDS,
    CHECKLIST_PART_A,
    CHECKLIST_RISK,
    CLOSE_APPROACH_KEYS,
    DAILY_LOG_ROLES,
    DEFAULT_CREW_ROLE,
    HIGH_RISK_OPTION_KEYS,
    ISSUANCE_SIGNATURE_SLOTS,
    MECHANICAL_CHECKLIST_KINDS,
    PERMIT_RECEIVER_CREW_ROLE,
    SIGNATURE_TYPES,
    SINGLETON_LOG_ROLES,
    SITE_PLAN_LAYER_KEYS,
    STREAMLINED_EXCAVATION_TYPES,
    CrewMember,
    DailyLog,
    HandoverLog,
    PermitNote,
    PermitPhoto,
    PermitRecord,
    Signature,
    names_match,
    new_entity_id,
    normalize_answer,
    normalize_excavation_type,
    normalize_log_date,
    normalize_timestamp,
    utc_now_iso,
)


DEFAULT_PERMIT_NUMBER_PREFIX = "EB-PT"
DEFAULT_MAX_PHOTOS = 10
MECHANICAL_APPROVAL_ADVISORY = (
    "Mechanical excavation has not been approved. Do not commence mechanical "
    "digging until the Part B approver has signed."
)

CLOSURE_BLOCKER_STATE = "state"
CLOSURE_BLOCKER_AUTHORIZATION = "authorization"
CLOSURE_BLOCKER_VALIDATION = "validation"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


# --- excavation-type branch policy -------------------------------------------------


def is_streamlined(excavation_type: Any) -> bool:
    return normalize_excavation_type(excavation_type) in STREAMLINED_EXCAVATION_TYPES


def section_required(permit: PermitRecord, section: str) -> bool:
    """Whether a checklist kind or a mechanical-only slot applies to this permit.

    ``section`` is a checklist kind, ``"high_risk"`` or ``"approver"``.
    Part B, the Receiver checklist, the high-risk options and the approver
    signature only apply to mechanical excavation.
    """
    if section in MECHANICAL_CHECKLIST_KINDS or section in {"high_risk", "approver"}:
        return not is_streamlined(permit.excavation_type)
    return True


# --- state machine -----------------------------------------------------------------


def require_open(permit: PermitRecord) -> None:
    if permit.is_closed:
        raise InvalidStateError(
            f"Permit {permit.permit_number or permit.permit_id} is closed and read-only."
        )


def require_active(permit: PermitRecord) -> None:
    require_open(permit)
    if permit.status != "active":
        raise InvalidStateError(
            f"Permit {permit.permit_number or permit.permit_id} has not been activated."
        )


def require_draft(permit: PermitRecord) -> None:
    require_open(permit)
    if permit.status != "draft":
        raise InvalidStateError(
            f"Permit {permit.permit_number or permit.permit_id} has been issued; "
            "issuance signatures are read-only."
        )


def generate_permit_number(
    existing_count: int,
    *,
    prefix: str = DEFAULT_PERMIT_NUMBER_PREFIX,
    year: int | None = None,
) -> str:
    resolved_year = year or datetime.now(timezone.utc).year
    resolved_prefix = _as_text(prefix) or DEFAULT_PERMIT_NUMBER_PREFIX
    sequence = max(0, int(existing_count)) + 1
    return f"{resolved_prefix}-{resolved_year}-{sequence:04d}"


def create_permit(
    *,
    permit_number: str,
    excavation_type: str = "mechanical",
    location: str = "",
    scope_of_works: str = "",
    external_reference_number: str = "",
    permit_id: str | None = None,
    created_at: Any = None,
) -> PermitRecord:
    number = _as_text(permit_number)
    if not number:
        raise ValidationError("Permit number is required.")
    normalized_type = normalize_excavation_type(excavation_type)
    if not normalized_type:
        raise ValidationError(f"Unknown excavation type: {excavation_type!r}.")
    return PermitRecord(
        permit_id=_as_text(permit_id) or new_entity_id(),
        permit_number=number,
        excavation_type=normalized_type,
        status="draft",
        external_reference_number=_as_text(external_reference_number),
        created_at=normalize_timestamp(created_at) if created_at else utc_now_iso(),
        location=_as_text(location),
        scope_of_works=_as_text(scope_of_works),
    )


def activation_blockers(permit: PermitRecord) -> list[str]:
    blockers: list[str] = []
    if permit.issuer_signature is None:
        blockers.append("Permit issuer has not signed.")
    if permit.receiver_signature is None:
        blockers.append("Permit receiver has not signed.")
    for kind in (CHECKLIST_RISK, CHECKLIST_PART_A, *MECHANICAL_CHECKLIST_KINDS):
        if not section_required(permit, kind):
            continue
        pending = [item.item_id for item in permit.checklist(kind) if not item.answered]
        if pending:
            blockers.append(f"Checklist {kind} has unanswered items: {', '.join(pending)}.")
    return blockers


def advisories(permit: PermitRecord) -> list[str]:
    notices: list[str] = []
    if (
        not permit.is_closed
        and section_required(permit, "approver")
        and permit.approver_signature is None
    ):
        notices.append(MECHANICAL_APPROVAL_ADVISORY)
    return notices


def activate_permit(permit: PermitRecord) -> PermitRecord:
    require_open(permit)
    if permit.status != "draft":
        raise InvalidStateError(f"Only draft permits can be activated (status: {permit.status}).")
    blockers = activation_blockers(permit)
    if blockers:
        raise ValidationError(reasons=blockers)
    updated = permit.clone()
    updated.status = "active"
    return updated


def set_excavation_type(permit: PermitRecord, excavation_type: Any) -> PermitRecord:
    require_open(permit)
    normalized = normalize_excavation_type(excavation_type)
    if not normalized:
        raise ValidationError(f"Unknown excavation type: {excavation_type!r}.")
    if normalized == permit.excavation_type:
        return permit
    if permit.status != "draft":
        raise InvalidStateError("Excavation type cannot change after the permit is activated.")
    branched = any(
        item.answered or item.comment
        for kind in MECHANICAL_CHECKLIST_KINDS
        for item in permit.checklist(kind)
    )
    if branched:
        raise InvalidStateError(
            "Excavation type cannot change once Part B or Receiver answers are recorded."
        )
    updated = permit.clone()
    updated.excavation_type = normalized
    return updated


def update_details(
    permit: PermitRecord,
    *,
    location: str | None = None,
    scope_of_works: str | None = None,
    external_reference_number: str | None = None,
    site_plan_layers: Mapping[str, bool] | None = None,
) -> PermitRecord:
    require_open(permit)
    updated = permit.clone()
    if location is not None:
        updated.location = _as_text(location)
    if scope_of_works is not None:
        updated.scope_of_works = _as_text(scope_of_works)
    if external_reference_number is not None:
        updated.external_reference_number = _as_text(external_reference_number)
    for key, enabled in (site_plan_layers or {}).items():
        if key not in SITE_PLAN_LAYER_KEYS:
            raise NotFoundError(f"Unknown site plan layer: {key!r}.")
        updated.site_plan_layers[key] = bool(enabled)
    return updated


# --- signatures --------------------------------------------------------------------


def accept_signature(signature: Signature | None, *, purpose: str = "signature") -> Signature:
    if not isinstance(signature, Signature):
        raise ValidationError(f"A completed {purpose} is required.")
    if not _as_text(signature.name):
        raise ValidationError(f"The {purpose} must carry the signer's printed name.")
    if signature.signature_type not in SIGNATURE_TYPES:
        raise ValidationError(f"Unsupported signature type: {signature.signature_type!r}.")
    accepted = signature
    if signature.signature_type == "type" and not signature.data:
        accepted = replace(accepted, data=_as_text(signature.name))
    if not accepted.date:
        accepted = replace(accepted, date=utc_now_iso())
    return accepted


def sign_issuance(permit: PermitRecord, slot: str, signature: Signature) -> PermitRecord:
    """Fill an issuance slot; signing as receiver also inducts the receiver."""
    require_draft(permit)
    if slot not in ISSUANCE_SIGNATURE_SLOTS:
        raise ValidationError(f"Unknown issuance signature slot: {slot!r}.")
    accepted = accept_signature(signature, purpose=f"{slot.replace('_', ' ')} signature")
    updated = permit.clone()
    setattr(updated, f"{slot}_signature", accepted)
    if slot == "receiver" and find_member_by_name(updated, accepted.name) is None:
        updated.crew_members.append(
            CrewMember(
                member_id=new_entity_id(),
                name=accepted.name,
                role=PERMIT_RECEIVER_CREW_ROLE,
                signature=accepted,
                date_inducted=utc_now_iso(),
            )
        )
    return updated


def approve_mechanical(permit: PermitRecord, signature: Signature) -> PermitRecord:
    require_open(permit)
    if not section_required(permit, "approver"):
        return permit
    require_active(permit)
    accepted = accept_signature(signature, purpose="approver signature")
    updated = permit.clone()
    updated.approver_signature = accepted
    return updated


# --- checklists --------------------------------------------------------------------


def set_answer(
    permit: PermitRecord,
    kind: str,
    item_id: str,
    answer: Any,
    comment: str | None = None,
) -> PermitRecord:
    require_open(permit)
    if kind not in CHECKLIST_KINDS:
        raise NotFoundError(f"Unknown checklist: {kind!r}.")
    if not section_required(permit, kind):
        return permit
    normalized_answer = normalize_answer(answer)
    if normalized_answer is None and _as_text(answer):
        raise ValidationError(f"Checklist answers must be yes, no or n/a (got {answer!r}).")

    updated = permit.clone()
    for item in updated.checklist(kind):
        if item.item_id != item_id:
            continue
        item.answer = normalized_answer
        if comment is not None:
            item.comment = _as_text(comment)
        return updated
    raise NotFoundError(f"Checklist {kind} has no item {item_id!r}.")


def set_part_a_details(
    permit: PermitRecord,
    *,
    potholing_method: str | None = None,
    frequency: str | None = None,
    overhead_protection: str | None = None,
) -> PermitRecord:
    require_open(permit)
    updated = permit.clone()
    if potholing_method is not None:
        updated.part_a_potholing_method = _as_text(potholing_method)
    if frequency is not None:
        updated.part_a_frequency = _as_text(frequency)
    if overhead_protection is not None:
        updated.part_a_overhead_protection = _as_text(overhead_protection)
    return updated


def set_close_approach(permit: PermitRecord, key: str, distance: str) -> PermitRecord:
    require_open(permit)
    if key not in CLOSE_APPROACH_KEYS:
        raise NotFoundError(f"Close approach table has no entry {key!r}.")
    updated = permit.clone()
    updated.close_approach.distances[key] = _as_text(distance)
    return updated


def set_close_approach_permits(permit: PermitRecord, answer: Any) -> PermitRecord:
    require_open(permit)
    normalized_answer = normalize_answer(answer)
    if normalized_answer is None and _as_text(answer):
        raise ValidationError(f"Answers must be yes, no or n/a (got {answer!r}).")
    updated = permit.clone()
    updated.close_approach.permits_obtained = normalized_answer
    return updated


def set_high_risk_option(permit: PermitRecord, key: str, enabled: bool) -> PermitRecord:
    require_open(permit)
    if key not in HIGH_RISK_OPTION_KEYS:
        raise NotFoundError(f"Unknown high risk service option: {key!r}.")
    if not section_required(permit, "high_risk"):
        return permit
    updated = permit.clone()
    updated.high_risk_options[key] = bool(enabled)
    return updated


# --- crew registry -----------------------------------------------------------------


def find_member(permit: PermitRecord, member_id: str) -> CrewMember | None:
    for member in permit.crew_members:
        if member.member_id == member_id:
            return member
    return None


def find_member_by_name(permit: PermitRecord, name: str) -> CrewMember | None:
    for member in permit.crew_members:
        if names_match(member.name, name):
            return member
    return None


def register_member(
    permit: PermitRecord,
    name: str,
    role: str,
    signature: Signature,
    *,
    inducted_at: Any = None,
) -> PermitRecord:
    require_open(permit)
    clean_name = _as_text(name)
    if not clean_name:
        raise ValidationError("Crew member name is required.")
    if find_member_by_name(permit, clean_name) is not None:
        raise DuplicateError(f'Worker "{clean_name}" is already registered.')
    accepted = accept_signature(signature, purpose="induction signature")
    updated = permit.clone()
    updated.crew_members.append(
        CrewMember(
            member_id=new_entity_id(),
            name=clean_name,
            role=_as_text(role) or DEFAULT_CREW_ROLE,
            signature=accepted,
            date_inducted=normalize_timestamp(inducted_at) if inducted_at else utc_now_iso(),
        )
    )
    return updated


# --- daily sign-on ledger ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DailySheet:
    date: str
    crew: tuple[DailyLog, ...] = ()
    key_roles: dict[str, DailyLog | None] = field(default_factory=dict)


def _require_log_date(value: Any) -> str:
    log_date = normalize_log_date(value)
    if not log_date:
        raise ValidationError(f"A valid sign-on date is required (got {value!r}).")
    return log_date


def _require_member(permit: PermitRecord, member_id: str) -> CrewMember:
    member = find_member(permit, member_id)
    if member is None:
        raise NotFoundError(f"No registered crew member with id {member_id!r}.")
    return member


def sign_on_crew(permit: PermitRecord, member_id: str, log_date: Any) -> PermitRecord:
    require_active(permit)
    day = _require_log_date(log_date)
    member = _require_member(permit, member_id)
    already_signed = any(
        log.role == "crew" and log.date == day and names_match(log.name, member.name)
        for log in permit.daily_logs
    )
    if already_signed:
        return permit
    updated = permit.clone()
    updated.daily_logs.append(
        DailyLog(
            log_id=new_entity_id(),
            date=day,
            name=member.name,
            role="crew",
            signature=member.signature,
        )
    )
    return updated


def assign_role(permit: PermitRecord, member_id: str, role: str, log_date: Any) -> PermitRecord:
    require_active(permit)
    if role not in ASSIGNABLE_LOG_ROLES:
        raise ValidationError(
            f"Role {role!r} cannot be assigned; expected one of {', '.join(ASSIGNABLE_LOG_ROLES)}."
        )
    day = _require_log_date(log_date)
    member = _require_member(permit, member_id)
    updated = permit.clone()
    updated.daily_logs = [
        log for log in updated.daily_logs if not (log.role == role and log.date == day)
    ]
    updated.daily_logs.append(
        DailyLog(
            log_id=new_entity_id(),
            date=day,
            name=member.name,
            role=role,
            signature=member.signature,
        )
    )
    return updated


def current_receiver(permit: PermitRecord) -> str:
    if permit.handover_logs:
        return permit.handover_logs[-1].receiver_name
    if permit.receiver_signature is not None:
        return permit.receiver_signature.name
    return ""


def current_receiver_signature(permit: PermitRecord) -> Signature | None:
    if permit.handover_logs:
        return permit.handover_logs[-1].signature
    return permit.receiver_signature


def sign_on_receiver(permit: PermitRecord, log_date: Any) -> PermitRecord:
    require_active(permit)
    day = _require_log_date(log_date)
    signature = current_receiver_signature(permit)
    if signature is None:
        return permit
    if any(log.role == "receiver" and log.date == day for log in permit.daily_logs):
        return permit
    updated = permit.clone()
    updated.daily_logs.append(
        DailyLog(
            log_id=new_entity_id(),
            date=day,
            name=current_receiver(permit),
            role="receiver",
            signature=signature,
        )
    )
    return updated


def clear_role(permit: PermitRecord, role: str, log_date: Any) -> PermitRecord:
    require_active(permit)
    if role not in DAILY_LOG_ROLES:
        raise ValidationError(f"Unknown daily log role: {role!r}.")
    day = _require_log_date(log_date)
    if not any(log.role == role and log.date == day for log in permit.daily_logs):
        return permit
    updated = permit.clone()
    updated.daily_logs = [
        log for log in updated.daily_logs if not (log.role == role and log.date == day)
    ]
    return updated


def daily_sheet(permit: PermitRecord, log_date: Any) -> DailySheet:
    day = _require_log_date(log_date)
    crew: list[DailyLog] = []
    key_roles: dict[str, DailyLog | None] = {role: None for role in SINGLETON_LOG_ROLES}
    for log in permit.daily_logs:
        if log.date != day:
            continue
        if log.role == "crew":
            crew.append(log)
        elif log.role in key_roles:
            key_roles[log.role] = log
    return DailySheet(date=day, crew=tuple(crew), key_roles=key_roles)


# --- custody chain -----------------------------------------------------------------


def record_handover(
    permit: PermitRecord,
    receiver_name: str,
    signature: Signature,
    handover_date: Any = None,
) -> PermitRecord:
    require_active(permit)
    clean_name = _as_text(receiver_name)
    member = find_member_by_name(permit, clean_name) if clean_name else None
    if member is None:
        raise AuthorizationError(
            f'"{clean_name}" must be registered in the work crew registry before taking custody.'
        )
    accepted = accept_signature(signature, purpose="handover signature")
    updated = permit.clone()
    updated.handover_logs.append(
        HandoverLog(
            handover_id=new_entity_id(),
            date=normalize_timestamp(handover_date) if handover_date else utc_now_iso(),
            receiver_name=member.name,
            signature=accepted,
        )
    )
    return updated


# --- closure -----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClosureBlocker:
    kind: str
    reason: str


def closure_blockers(
    permit: PermitRecord,
    *,
    closer_name: str,
    signature: Signature | None,
    excavation_safe: bool,
    as_built_returned: bool,
    outstanding_works_acknowledged: bool,
) -> list[ClosureBlocker]:
    blockers: list[ClosureBlocker] = []
    if permit.is_closed:
        blockers.append(ClosureBlocker(CLOSURE_BLOCKER_STATE, "Permit is already closed."))
    elif permit.status != "active":
        blockers.append(
            ClosureBlocker(CLOSURE_BLOCKER_STATE, "Permit has not been activated.")
        )

    receiver = current_receiver(permit)
    if not receiver:
        blockers.append(
            ClosureBlocker(CLOSURE_BLOCKER_AUTHORIZATION, "Permit has no authorised receiver.")
        )
    elif not names_match(closer_name, receiver):
        blockers.append(
            ClosureBlocker(
                CLOSURE_BLOCKER_AUTHORIZATION,
                f"Only the current authorised receiver ({receiver}) can close this permit.",
            )
        )

    checks = (
        (excavation_safe, "Excavation has not been confirmed left in a safe condition."),
        (as_built_returned, "As-built plan has not been confirmed returned."),
        (
            outstanding_works_acknowledged,
            "Outstanding works disclosure has not been acknowledged.",
        ),
    )
    for passed, reason in checks:
        if passed is not True:
            blockers.append(ClosureBlocker(CLOSURE_BLOCKER_VALIDATION, reason))

    try:
        accept_signature(signature, purpose="closure signature")
    except ValidationError as exc:
        blockers.append(ClosureBlocker(CLOSURE_BLOCKER_VALIDATION, str(exc)))
    return blockers


def close_permit(
    permit: PermitRecord,
    *,
    closer_name: str,
    signature: Signature | None,
    excavation_safe: bool,
    as_built_returned: bool,
    outstanding_works_acknowledged: bool,
    outstanding_works_details: str = "",
    closed_at: Any = None,
) -> PermitRecord:
    blockers = closure_blockers(
        permit,
        closer_name=closer_name,
        signature=signature,
        excavation_safe=excavation_safe,
        as_built_returned=as_built_returned,
        outstanding_works_acknowledged=outstanding_works_acknowledged,
    )
    if blockers:
        reasons = [blocker.reason for blocker in blockers]
        kinds = {blocker.kind for blocker in blockers}
        if CLOSURE_BLOCKER_STATE in kinds:
            raise InvalidStateError(reasons=reasons)
        if CLOSURE_BLOCKER_AUTHORIZATION in kinds:
            raise AuthorizationError(reasons=reasons)
        raise ValidationError(reasons=reasons)

    accepted = accept_signature(signature, purpose="closure signature")
    updated = permit.clone()
    updated.status = "closed"
    updated.closure_date = normalize_timestamp(closed_at) if closed_at else utc_now_iso()
    updated.closure_receiver_name = _as_text(closer_name)
    updated.closure_signature = accepted
    updated.closure_excavation_safe = True
    updated.closure_as_built_returned = True
    updated.closure_outstanding_works_acknowledged = True
    updated.closure_outstanding_works_details = _as_text(outstanding_works_details)
    return updated


# --- notes and photos --------------------------------------------------------------


def add_note(
    permit: PermitRecord,
    text: str,
    author: str,
    *,
    role: str = "Contributor",
) -> PermitRecord:
    require_open(permit)
    clean_text = _as_text(text)
    clean_author = _as_text(author)
    if not clean_text or not clean_author:
        raise ValidationError("Notes need both text and an author.")
    updated = permit.clone()
    updated.notes.append(
        PermitNote(
            note_id=new_entity_id(),
            text=clean_text,
            author=clean_author,
            role=_as_text(role) or "Contributor",
            date=utc_now_iso(),
        )
    )
    return updated


def remove_note(permit: PermitRecord, note_id: str) -> PermitRecord:
    require_open(permit)
    if not any(note.note_id == note_id for note in permit.notes):
        raise NotFoundError(f"No note with id {note_id!r}.")
    updated = permit.clone()
    updated.notes = [note for note in updated.notes if note.note_id != note_id]
    return updated


def add_photos(
    permit: PermitRecord,
    photos: Iterable[Mapping[str, Any]],
    *,
    max_photos: int = DEFAULT_MAX_PHOTOS,
) -> PermitRecord:
    """Append captured photos; the whole batch is rejected when it would exceed the limit."""
    require_open(permit)
    incoming = [dict(photo) for photo in photos]
    if not incoming:
        return permit
    limit = max(0, int(max_photos))
    if len(permit.photos) + len(incoming) > limit:
        raise ValidationError(
            f"Maximum {limit} photos. Existing: {len(permit.photos)}, adding: {len(incoming)}."
        )
    rows: list[PermitPhoto] = []
    for photo in incoming:
        data = str(photo.get("data") or "")
        if not data:
            raise ValidationError("Photo content is empty.")
        rows.append(
            PermitPhoto(
                photo_id=new_entity_id(),
                data=data,
                caption=_as_text(photo.get("caption")),
                uploaded_by=_as_text(photo.get("uploaded_by")) or "User",
                date=utc_now_iso(),
            )
        )
    updated = permit.clone()
    updated.photos.extend(rows)
    return updated


def remove_photo(permit: PermitRecord, photo_id: str) -> PermitRecord:
    require_open(permit)
    if not any(photo.photo_id == photo_id for photo in permit.photos):
        raise NotFoundError(f"No photo with id {photo_id!r}.")
    updated = permit.clone()
    updated.photos = [photo for photo in updated.photos if photo.photo_id != photo_id]
    return updated
