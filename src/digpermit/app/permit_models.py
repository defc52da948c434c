from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import uuid4


PERMIT_STATUSES: tuple[str, ...] = ("draft", "active", "closed")
EXCAVATION_TYPES: tuple[str, ...] = ("mechanical", "hydro", "hand")
STREAMLINED_EXCAVATION_TYPES: tuple[str, ...] = ("hydro", "hand")
_EXCAVATION_TYPE_ALIASES: dict[str, str] = {
    "mechanical": "mechanical",
    "mech": "mechanical",
    "machine": "mechanical",
    "hydro": "hydro",
    "hydro_excavation": "hydro",
    "vacuum": "hydro",
    "hand": "hand",
    "hand_dig": "hand",
    "manual": "hand",
}

CHECKLIST_ANSWERS: tuple[str, ...] = ("yes", "no", "n/a")
_CHECKLIST_ANSWER_ALIASES: dict[str, str] = {
    "yes": "yes",
    "y": "yes",
    "no": "no",
    "n": "no",
    "n/a": "n/a",
    "na": "n/a",
    "n_a": "n/a",
}

SIGNATURE_TYPES: tuple[str, ...] = ("draw", "type")
DAILY_LOG_ROLES: tuple[str, ...] = ("receiver", "operator", "spotter", "foreman", "crew")
SINGLETON_LOG_ROLES: tuple[str, ...] = ("receiver", "operator", "spotter", "foreman")
ASSIGNABLE_LOG_ROLES: tuple[str, ...] = ("operator", "spotter", "foreman")
ISSUANCE_SIGNATURE_SLOTS: tuple[str, ...] = ("site_engineer", "issuer", "receiver")
PERMIT_RECEIVER_CREW_ROLE = "Permit Receiver"
DEFAULT_CREW_ROLE = "Crew"

CHECKLIST_RISK = "risk"
CHECKLIST_PART_A = "part_a"
CHECKLIST_PART_B = "part_b"
CHECKLIST_RECEIVER = "receiver"
CHECKLIST_KINDS: tuple[str, ...] = (
    CHECKLIST_RISK,
    CHECKLIST_PART_A,
    CHECKLIST_PART_B,
    CHECKLIST_RECEIVER,
)
MECHANICAL_CHECKLIST_KINDS: tuple[str, ...] = (CHECKLIST_PART_B, CHECKLIST_RECEIVER)

CLOSE_APPROACH_KEYS: tuple[str, ...] = (
    "overhead_electricity",
    "overhead_rail",
    "overhead_other",
    "underground_electricity",
    "underground_fibre",
    "underground_gas",
    "underground_water",
)
HIGH_RISK_OPTION_KEYS: tuple[str, ...] = ("power_11kv", "gas_high_pressure", "main_fibre")
SITE_PLAN_LAYER_KEYS: tuple[str, ...] = (
    "reveal_model_layer",
    "sub_layers",
    "construction_layer",
    "as_built_layers",
)

_RISK_QUESTIONS: tuple[tuple[str, str], ...] = (
    ("known_services_scanned", "Has the area for this permit been scanned?"),
    ("services_marked", "Known active services physically marked out on site?"),
    (
        "potholing_markers",
        "If you are potholing have you got depth markers for holes when back filling?",
    ),
    (
        "transpower_designation",
        "Is the work within the Transpower Designation Area & a S176 is in place?",
    ),
    (
        "watercare_works_over",
        'Have the works complied with Watercare "Works Over Approval" form '
        "(2m from <375mm, 10m from >=375mm)?",
    ),
)

_PART_A_QUESTIONS: tuple[tuple[str, str], ...] = (
    ("1a", "Have I obtained all the EBA service plans with applicable REVEAL layer turned on?"),
    ("1b", "Have I physically inspected the site for any above ground indicators of services?"),
    (
        "2",
        "Have I positively identified all services from all surrounding buildings? It includes "
        "open manholes, check existing boxes for water meters, and verify inconsistencies.",
    ),
    ("3", "Have I evaluated if it is possible to de-energise services before work commences?"),
    (
        "8",
        "Have all the EBA service plans and BeforeUDig drawings for the site been reviewed "
        "for inconsistencies?",
    ),
)

_PART_B_QUESTIONS: tuple[tuple[str, str], ...] = (
    ("1", "Have all services been exposed and identified by a competent person?"),
    ("2", "Have I physically inspected the site for any above ground indicators of services?"),
    ("3", "Has all potholing by the chosen method been completed?"),
    (
        "4",
        "If high risk services (>11kV, Gas, Main Fibre, Water >300mm) are present, "
        "is there a clear plan/risk assessment?",
    ),
    (
        "5",
        "If any of the following services are within the scope, has the correct Network "
        "Utility provider verified the services identified within the works designation?",
    ),
    ("6", 'Has compliance with Watercare "Works Over Approval" form been verified?'),
)

_RECEIVER_QUESTIONS: tuple[tuple[str, str], ...] = (
    ("1", "Have all services been exposed and identified by a competent person?"),
    (
        "2",
        "Do I understand the specific work methodology / site plan / drawings and specifications?",
    ),
    ("3", "Do I have a copy of the Permits required in question 8 on page 3?"),
    (
        "4",
        "Have I got all of the underground service plans on site, reviewed and understand them?",
    ),
    ("5", "Have I physically inspected the site for any above ground indicators of services?"),
    (
        "6",
        "Have all underground services been marked on site including location and depth? "
        "Also included to identify all services from all surrounding buildings and check any "
        "inconsistencies in the be4udig and GIS drawings referred to existing services on site",
    ),
    (
        "7",
        "Where marks could be removed, have I made a provision to maintain information of "
        "location and depth once work commences?",
    ),
    (
        "8",
        "Has all potholing by the chosen method been completed? "
        "(refer to items 4 and 6 on page 4).",
    ),
    (
        "9",
        "Have the operators, spotters and stand overs been briefed by myself of service "
        "location, depths and minimum approach or exclusion distances?",
    ),
    (
        "10",
        "What system of communication has been agreed between the operator and "
        "stand over/spotter?",
    ),
)

CHECKLIST_TEMPLATES: dict[str, tuple[tuple[str, str], ...]] = {
    CHECKLIST_RISK: _RISK_QUESTIONS,
    CHECKLIST_PART_A: _PART_A_QUESTIONS,
    CHECKLIST_PART_B: _PART_B_QUESTIONS,
    CHECKLIST_RECEIVER: _RECEIVER_QUESTIONS,
}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = _as_text(value).casefold()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off", ""}:
        return False
    return bool(value)


def _as_non_negative_int(value: Any) -> int:
    try:
        parsed = int(value)
    except Exception:
        return 0
    return max(0, parsed)


def _safe_uuid(value: Any) -> str:
    normalized = _as_text(value)
    return normalized or uuid4().hex


def _first_present(value: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in value and value.get(key) is not None:
            return value.get(key)
    return None


def new_entity_id() -> str:
    return uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_iso_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _as_text(value)
        if not text:
            return None
        normalized = text.replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(normalized)
        except Exception:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_log_date(value: Any) -> str:
    """Reduce a date, datetime or ISO string to its ``YYYY-MM-DD`` calendar day."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = _as_text(value)
    if not text:
        return ""
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        pass
    parsed = parse_iso_datetime(text)
    if parsed is None:
        return ""
    return parsed.date().isoformat()


def normalize_timestamp(value: Any) -> str:
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return _as_text(value)
    return parsed.isoformat(timespec="seconds")


def normalize_permit_status(value: Any) -> str:
    normalized = _as_text(value).casefold()
    if normalized in PERMIT_STATUSES:
        return normalized
    return "draft"


def normalize_excavation_type(value: Any) -> str:
    raw = _as_text(value).replace("-", "_").replace(" ", "_").casefold()
    return _EXCAVATION_TYPE_ALIASES.get(raw, "")


def normalize_answer(value: Any) -> str | None:
    raw = _as_text(value).replace(" ", "").casefold()
    if not raw:
        return None
    return _CHECKLIST_ANSWER_ALIASES.get(raw)


def normalize_log_role(value: Any) -> str:
    normalized = _as_text(value).casefold()
    if normalized in DAILY_LOG_ROLES:
        return normalized
    return ""


def names_match(left: Any, right: Any) -> bool:
    left_key = _as_text(left).casefold()
    return bool(left_key) and left_key == _as_text(right).casefold()


@dataclass(frozen=True, slots=True)
class Signature:
    """A completed signature handed over by the capture surface.

    ``data`` is the rendered image payload for drawn signatures and the
    signer's literal name for typed ones.
    """

    signature_type: str
    data: str
    name: str
    date: str

    @classmethod
    def typed(cls, name: str, *, signed_at: Any = None) -> "Signature":
        text = _as_text(name)
        return cls(
            signature_type="type",
            data=text,
            name=text,
            date=normalize_timestamp(signed_at) if signed_at else utc_now_iso(),
        )

    @classmethod
    def drawn(cls, name: str, data: str, *, signed_at: Any = None) -> "Signature":
        return cls(
            signature_type="draw",
            data=str(data or ""),
            name=_as_text(name),
            date=normalize_timestamp(signed_at) if signed_at else utc_now_iso(),
        )

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "Signature | None":
        if not isinstance(value, Mapping):
            return None
        signature_type = _as_text(value.get("signature_type") or value.get("type")).casefold()
        if signature_type not in SIGNATURE_TYPES:
            signature_type = "type"
        name = _as_text(value.get("name"))
        data = value.get("data")
        if data is None and signature_type == "type":
            data = name
        if not name and not data:
            return None
        return cls(
            signature_type=signature_type,
            data=str(data or ""),
            name=name,
            date=_as_text(value.get("date")),
        )

    def to_mapping(self) -> dict[str, str]:
        return {
            "signature_type": self.signature_type,
            "data": self.data,
            "name": self.name,
            "date": self.date,
        }


def _signature_mapping(value: Signature | None) -> dict[str, str] | None:
    if value is None:
        return None
    return value.to_mapping()


@dataclass(slots=True)
class ChecklistItem:
    item_id: str
    question: str
    answer: str | None = None
    comment: str = ""

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "ChecklistItem":
        if not isinstance(value, Mapping):
            return cls(item_id="", question="")
        return cls(
            item_id=_as_text(_first_present(value, "item_id", "id")),
            question=_as_text(value.get("question")),
            answer=normalize_answer(value.get("answer")),
            comment=_as_text(value.get("comment")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "question": self.question,
            "answer": normalize_answer(self.answer),
            "comment": _as_text(self.comment),
        }

    @property
    def answered(self) -> bool:
        return normalize_answer(self.answer) is not None


def build_checklist(kind: str) -> list[ChecklistItem]:
    rows = CHECKLIST_TEMPLATES.get(kind, ())
    return [ChecklistItem(item_id=item_id, question=question) for item_id, question in rows]


def reconcile_checklist(kind: str, items: list[ChecklistItem]) -> list[ChecklistItem]:
    """Lay stored answers over the template so the id set stays fixed."""
    stored: dict[str, ChecklistItem] = {}
    for item in items:
        key = _as_text(item.item_id)
        if key and key not in stored:
            stored[key] = item
    rows: list[ChecklistItem] = []
    for template_item in build_checklist(kind):
        previous = stored.get(template_item.item_id)
        if previous is not None:
            template_item.answer = normalize_answer(previous.answer)
            template_item.comment = _as_text(previous.comment)
        rows.append(template_item)
    return rows


@dataclass(slots=True)
class CloseApproachConfig:
    distances: dict[str, str] = field(
        default_factory=lambda: {key: "" for key in CLOSE_APPROACH_KEYS}
    )
    permits_obtained: str | None = None

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "CloseApproachConfig":
        if not isinstance(value, Mapping):
            return cls()
        raw_distances = value.get("distances")
        if not isinstance(raw_distances, Mapping):
            raw_distances = {}
        return cls(
            distances={key: _as_text(raw_distances.get(key)) for key in CLOSE_APPROACH_KEYS},
            permits_obtained=normalize_answer(value.get("permits_obtained")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "distances": {key: _as_text(self.distances.get(key)) for key in CLOSE_APPROACH_KEYS},
            "permits_obtained": normalize_answer(self.permits_obtained),
        }


@dataclass(slots=True)
class CrewMember:
    member_id: str
    name: str
    role: str
    signature: Signature | None = None
    date_inducted: str = ""

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "CrewMember":
        if not isinstance(value, Mapping):
            return cls(member_id=uuid4().hex, name="", role="")
        return cls(
            member_id=_safe_uuid(_first_present(value, "member_id", "id")),
            name=_as_text(value.get("name")),
            role=_as_text(value.get("role")) or DEFAULT_CREW_ROLE,
            signature=Signature.from_mapping(value.get("signature")),
            date_inducted=_as_text(value.get("date_inducted") or value.get("dateInducted")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "member_id": _safe_uuid(self.member_id),
            "name": _as_text(self.name),
            "role": _as_text(self.role),
            "signature": _signature_mapping(self.signature),
            "date_inducted": _as_text(self.date_inducted),
        }


@dataclass(slots=True)
class DailyLog:
    log_id: str
    date: str
    name: str
    role: str
    signature: Signature | None = None

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "DailyLog":
        if not isinstance(value, Mapping):
            return cls(log_id=uuid4().hex, date="", name="", role="")
        return cls(
            log_id=_safe_uuid(_first_present(value, "log_id", "id")),
            date=normalize_log_date(value.get("date")),
            name=_as_text(value.get("name")),
            role=normalize_log_role(value.get("role")),
            signature=Signature.from_mapping(value.get("signature")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "log_id": _safe_uuid(self.log_id),
            "date": normalize_log_date(self.date),
            "name": _as_text(self.name),
            "role": normalize_log_role(self.role),
            "signature": _signature_mapping(self.signature),
        }


@dataclass(slots=True)
class HandoverLog:
    handover_id: str
    date: str
    receiver_name: str
    signature: Signature | None = None

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "HandoverLog":
        if not isinstance(value, Mapping):
            return cls(handover_id=uuid4().hex, date="", receiver_name="")
        return cls(
            handover_id=_safe_uuid(_first_present(value, "handover_id", "id")),
            date=_as_text(value.get("date")),
            receiver_name=_as_text(value.get("receiver_name") or value.get("receiverName")),
            signature=Signature.from_mapping(value.get("signature")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "handover_id": _safe_uuid(self.handover_id),
            "date": _as_text(self.date),
            "receiver_name": _as_text(self.receiver_name),
            "signature": _signature_mapping(self.signature),
        }


@dataclass(slots=True)
class PermitNote:
    note_id: str
    text: str
    author: str
    role: str = "Contributor"
    date: str = ""

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "PermitNote":
        if not isinstance(value, Mapping):
            return cls(note_id=uuid4().hex, text="", author="")
        return cls(
            note_id=_safe_uuid(_first_present(value, "note_id", "id")),
            text=_as_text(value.get("text")),
            author=_as_text(value.get("author")),
            role=_as_text(value.get("role")) or "Contributor",
            date=_as_text(value.get("date")),
        )

    def to_mapping(self) -> dict[str, str]:
        return {
            "note_id": _safe_uuid(self.note_id),
            "text": _as_text(self.text),
            "author": _as_text(self.author),
            "role": _as_text(self.role),
            "date": _as_text(self.date),
        }


@dataclass(slots=True)
class PermitPhoto:
    photo_id: str
    data: str
    caption: str = ""
    uploaded_by: str = ""
    date: str = ""

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "PermitPhoto":
        if not isinstance(value, Mapping):
            return cls(photo_id=uuid4().hex, data="")
        return cls(
            photo_id=_safe_uuid(_first_present(value, "photo_id", "id")),
            data=str(value.get("data") or value.get("url") or ""),
            caption=_as_text(value.get("caption")),
            uploaded_by=_as_text(value.get("uploaded_by") or value.get("uploadedBy")),
            date=_as_text(value.get("date")),
        )

    def to_mapping(self) -> dict[str, str]:
        return {
            "photo_id": _safe_uuid(self.photo_id),
            "data": self.data,
            "caption": _as_text(self.caption),
            "uploaded_by": _as_text(self.uploaded_by),
            "date": _as_text(self.date),
        }


@dataclass(slots=True)
class PermitRecord:
    permit_id: str
    permit_number: str
    excavation_type: str = "mechanical"
    status: str = "draft"
    external_reference_number: str = ""
    created_at: str = ""
    location: str = ""
    scope_of_works: str = ""
    site_plan_layers: dict[str, bool] = field(
        default_factory=lambda: {key: False for key in SITE_PLAN_LAYER_KEYS}
    )
    checklists: dict[str, list[ChecklistItem]] = field(
        default_factory=lambda: {kind: build_checklist(kind) for kind in CHECKLIST_KINDS}
    )
    part_a_potholing_method: str = ""
    part_a_frequency: str = ""
    part_a_overhead_protection: str = ""
    close_approach: CloseApproachConfig = field(default_factory=CloseApproachConfig)
    high_risk_options: dict[str, bool] = field(
        default_factory=lambda: {key: False for key in HIGH_RISK_OPTION_KEYS}
    )
    site_engineer_signature: Signature | None = None
    issuer_signature: Signature | None = None
    receiver_signature: Signature | None = None
    approver_signature: Signature | None = None
    crew_members: list[CrewMember] = field(default_factory=list)
    handover_logs: list[HandoverLog] = field(default_factory=list)
    daily_logs: list[DailyLog] = field(default_factory=list)
    notes: list[PermitNote] = field(default_factory=list)
    photos: list[PermitPhoto] = field(default_factory=list)
    closure_date: str = ""
    closure_receiver_name: str = ""
    closure_signature: Signature | None = None
    closure_excavation_safe: bool = False
    closure_as_built_returned: bool = False
    closure_outstanding_works_acknowledged: bool = False
    closure_outstanding_works_details: str = ""
    revision: int = 0

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "PermitRecord":
        if not isinstance(value, Mapping):
            return cls(permit_id=uuid4().hex, permit_number="")

        raw_checklists = value.get("checklists")
        if not isinstance(raw_checklists, Mapping):
            raw_checklists = {}
        checklists = {
            kind: reconcile_checklist(kind, _parse_checklist_items(raw_checklists.get(kind)))
            for kind in CHECKLIST_KINDS
        }
        raw_layers = value.get("site_plan_layers")
        if not isinstance(raw_layers, Mapping):
            raw_layers = {}
        raw_high_risk = value.get("high_risk_options")
        if not isinstance(raw_high_risk, Mapping):
            raw_high_risk = {}

        return cls(
            permit_id=_safe_uuid(_first_present(value, "permit_id", "id")),
            permit_number=_as_text(value.get("permit_number") or value.get("permitNumber")),
            excavation_type=normalize_excavation_type(
                value.get("excavation_type") or value.get("excavationType")
            )
            or "mechanical",
            status=normalize_permit_status(value.get("status")),
            external_reference_number=_as_text(
                value.get("external_reference_number") or value.get("itwocxNumber")
            ),
            created_at=_as_text(value.get("created_at") or value.get("createdAt")),
            location=_as_text(value.get("location")),
            scope_of_works=_as_text(value.get("scope_of_works") or value.get("scopeOfWorks")),
            site_plan_layers={key: _as_bool(raw_layers.get(key)) for key in SITE_PLAN_LAYER_KEYS},
            checklists=checklists,
            part_a_potholing_method=_as_text(value.get("part_a_potholing_method")),
            part_a_frequency=_as_text(value.get("part_a_frequency")),
            part_a_overhead_protection=_as_text(value.get("part_a_overhead_protection")),
            close_approach=CloseApproachConfig.from_mapping(value.get("close_approach")),
            high_risk_options={
                key: _as_bool(raw_high_risk.get(key)) for key in HIGH_RISK_OPTION_KEYS
            },
            site_engineer_signature=Signature.from_mapping(value.get("site_engineer_signature")),
            issuer_signature=Signature.from_mapping(value.get("issuer_signature")),
            receiver_signature=Signature.from_mapping(value.get("receiver_signature")),
            approver_signature=Signature.from_mapping(value.get("approver_signature")),
            crew_members=_parse_rows(value.get("crew_members"), CrewMember.from_mapping),
            handover_logs=_parse_rows(value.get("handover_logs"), HandoverLog.from_mapping),
            daily_logs=[
                row
                for row in _parse_rows(value.get("daily_logs"), DailyLog.from_mapping)
                if row.role and row.date
            ],
            notes=_parse_rows(value.get("notes"), PermitNote.from_mapping),
            photos=_parse_rows(value.get("photos"), PermitPhoto.from_mapping),
            closure_date=_as_text(value.get("closure_date")),
            closure_receiver_name=_as_text(value.get("closure_receiver_name")),
            closure_signature=Signature.from_mapping(value.get("closure_signature")),
            closure_excavation_safe=_as_bool(value.get("closure_excavation_safe")),
            closure_as_built_returned=_as_bool(value.get("closure_as_built_returned")),
            closure_outstanding_works_acknowledged=_as_bool(
                value.get("closure_outstanding_works_acknowledged")
            ),
            closure_outstanding_works_details=_as_text(
                value.get("closure_outstanding_works_details")
            ),
            revision=_as_non_negative_int(value.get("revision")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "permit_id": _safe_uuid(self.permit_id),
            "permit_number": _as_text(self.permit_number),
            "excavation_type": normalize_excavation_type(self.excavation_type) or "mechanical",
            "status": normalize_permit_status(self.status),
            "external_reference_number": _as_text(self.external_reference_number),
            "created_at": _as_text(self.created_at),
            "location": _as_text(self.location),
            "scope_of_works": _as_text(self.scope_of_works),
            "site_plan_layers": {
                key: bool(self.site_plan_layers.get(key)) for key in SITE_PLAN_LAYER_KEYS
            },
            "checklists": {
                kind: [item.to_mapping() for item in self.checklists.get(kind, [])]
                for kind in CHECKLIST_KINDS
            },
            "part_a_potholing_method": _as_text(self.part_a_potholing_method),
            "part_a_frequency": _as_text(self.part_a_frequency),
            "part_a_overhead_protection": _as_text(self.part_a_overhead_protection),
            "close_approach": self.close_approach.to_mapping(),
            "high_risk_options": {
                key: bool(self.high_risk_options.get(key)) for key in HIGH_RISK_OPTION_KEYS
            },
            "site_engineer_signature": _signature_mapping(self.site_engineer_signature),
            "issuer_signature": _signature_mapping(self.issuer_signature),
            "receiver_signature": _signature_mapping(self.receiver_signature),
            "approver_signature": _signature_mapping(self.approver_signature),
            "crew_members": [entry.to_mapping() for entry in self.crew_members],
            "handover_logs": [entry.to_mapping() for entry in self.handover_logs],
            "daily_logs": [entry.to_mapping() for entry in self.daily_logs],
            "notes": [entry.to_mapping() for entry in self.notes],
            "photos": [entry.to_mapping() for entry in self.photos],
            "closure_date": _as_text(self.closure_date),
            "closure_receiver_name": _as_text(self.closure_receiver_name),
            "closure_signature": _signature_mapping(self.closure_signature),
            "closure_excavation_safe": bool(self.closure_excavation_safe),
            "closure_as_built_returned": bool(self.closure_as_built_returned),
            "closure_outstanding_works_acknowledged": bool(
                self.closure_outstanding_works_acknowledged
            ),
            "closure_outstanding_works_details": _as_text(self.closure_outstanding_works_details),
            "revision": _as_non_negative_int(self.revision),
        }

    def clone(self) -> "PermitRecord":
        return PermitRecord.from_mapping(self.to_mapping())

    def checklist(self, kind: str) -> list[ChecklistItem]:
        return self.checklists.get(kind, [])

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"


def _parse_checklist_items(value: Any) -> list[ChecklistItem]:
    return _parse_rows(value, ChecklistItem.from_mapping)


def _parse_rows(value: Any, parser: Any) -> list[Any]:
    if not isinstance(value, list):
        return []
    rows: list[Any] = []
    for item in value:
        if not isinstance(item, Mapping):
            continue
        rows.append(parser(item))
    return rows
