from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Callable, Iterable, Mapping

from digpermit.app import permit_engine as engine
from digpermit.app.data_store import PermitStore
from digpermit.app.permit_errors import (
    AuthorizationError,
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    PermitEngineError,
)
from digpermit.app.permit_models import PermitRecord, Signature, normalize_permit_status
from digpermit.core import ActivityEvent, ActivityStream


class PermitService:
    """Store-backed facade over ``permit_engine``.

    Each mutating method is one read-modify-write cycle: load the permit,
    apply the engine transformation, store the result. Rejected requests and
    no-op requests never reach the store.
    """

    def __init__(
        self,
        store: PermitStore,
        *,
        stream: ActivityStream | None = None,
        number_prefix: str = engine.DEFAULT_PERMIT_NUMBER_PREFIX,
        max_photos: int = engine.DEFAULT_MAX_PHOTOS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._stream = stream or ActivityStream()
        self._number_prefix = str(number_prefix or "").strip() or engine.DEFAULT_PERMIT_NUMBER_PREFIX
        self._max_photos = max(1, int(max_photos))
        self._logger = logger or logging.getLogger("digpermit.service")
        self._lock = RLock()

    @property
    def store(self) -> PermitStore:
        return self._store

    @property
    def stream(self) -> ActivityStream:
        return self._stream

    @property
    def max_photos(self) -> int:
        return self._max_photos

    # Queries

    def list_permits(self) -> list[PermitRecord]:
        return sorted(self._store.list(), key=lambda permit: (permit.permit_number, permit.created_at))

    def get_permit(self, permit_id: str) -> PermitRecord:
        permit = self._store.get(permit_id)
        if permit is None:
            raise NotFoundError(f"No permit with id {permit_id!r}.")
        return permit

    def search_permits(self, text: str = "", *, status: str = "all") -> list[PermitRecord]:
        needle = str(text or "").strip().casefold()
        status_filter = str(status or "").strip().lower()
        if status_filter and status_filter != "all":
            status_filter = normalize_permit_status(status_filter)
        else:
            status_filter = ""
        results: list[PermitRecord] = []
        for permit in self.list_permits():
            if status_filter and permit.status != status_filter:
                continue
            if needle:
                haystack = (
                    permit.permit_number,
                    permit.location,
                    permit.external_reference_number,
                )
                if not any(needle in value.casefold() for value in haystack):
                    continue
            results.append(permit)
        return results

    def receiver_of(self, permit_id: str) -> str:
        return engine.current_receiver(self.get_permit(permit_id))

    def activation_blockers(self, permit_id: str) -> list[str]:
        return engine.activation_blockers(self.get_permit(permit_id))

    def advisories(self, permit_id: str) -> list[str]:
        return engine.advisories(self.get_permit(permit_id))

    def daily_sheet(self, permit_id: str, log_date: Any) -> engine.DailySheet:
        return engine.daily_sheet(self.get_permit(permit_id), log_date)

    def closure_blockers(self, permit_id: str, **closure: Any) -> list[engine.ClosureBlocker]:
        return engine.closure_blockers(self.get_permit(permit_id), **closure)

    def activity(self, permit_id: str = "", *, limit: int = 100) -> tuple[ActivityEvent, ...]:
        return self._stream.tail(limit=limit, permit_id=permit_id)

    # Creation

    def next_permit_number(self) -> str:
        return engine.generate_permit_number(
            len(self._store.list()),
            prefix=self._number_prefix,
        )

    def create_permit(
        self,
        *,
        excavation_type: str = "mechanical",
        location: str = "",
        scope_of_works: str = "",
        external_reference_number: str = "",
        permit_number: str | None = None,
    ) -> PermitRecord:
        with self._lock:
            number = str(permit_number or "").strip() or self.next_permit_number()
            self._require_unique_number(number)
            permit = engine.create_permit(
                permit_number=number,
                excavation_type=excavation_type,
                location=location,
                scope_of_works=scope_of_works,
                external_reference_number=external_reference_number,
            )
            committed = self._commit(
                "create",
                permit,
                {"permit_number": number, "excavation_type": permit.excavation_type},
            )
        self._logger.info("Created permit %s (%s)", number, committed.excavation_type)
        return committed

    def issue_permit(self, permit: PermitRecord) -> PermitRecord:
        """Store a draft prepared in memory directly as active.

        The activation rules still apply; nothing is stored when they fail.
        """
        with self._lock:
            if self._store.get(permit.permit_id) is not None:
                raise DuplicateError(f"Permit {permit.permit_id} already exists.")
            self._require_unique_number(permit.permit_number)
            try:
                activated = engine.activate_permit(permit)
            except PermitEngineError as exc:
                self._log_rejection("issue", permit, exc)
                raise
            activated.revision = 0
            committed = self._commit(
                "issue",
                activated,
                {"permit_number": activated.permit_number, "status": activated.status},
            )
        self._logger.info("Issued permit %s directly as active", committed.permit_number)
        return committed

    # Lifecycle

    def activate_permit(self, permit_id: str) -> PermitRecord:
        permit = self._apply("activate", permit_id, engine.activate_permit)
        self._logger.info("Activated permit %s", permit.permit_number)
        return permit

    def set_excavation_type(self, permit_id: str, excavation_type: str) -> PermitRecord:
        return self._apply(
            "set_excavation_type",
            permit_id,
            lambda permit: engine.set_excavation_type(permit, excavation_type),
            excavation_type=excavation_type,
        )

    def update_details(self, permit_id: str, **details: Any) -> PermitRecord:
        return self._apply(
            "update_details",
            permit_id,
            lambda permit: engine.update_details(permit, **details),
            fields=sorted(details),
        )

    # Signatures and checklists

    def sign_issuance(self, permit_id: str, slot: str, signature: Signature) -> PermitRecord:
        return self._apply(
            "sign_issuance",
            permit_id,
            lambda permit: engine.sign_issuance(permit, slot, signature),
            slot=slot,
            signer=_signer(signature),
        )

    def approve_mechanical(self, permit_id: str, signature: Signature) -> PermitRecord:
        return self._apply(
            "approve_mechanical",
            permit_id,
            lambda permit: engine.approve_mechanical(permit, signature),
            signer=_signer(signature),
        )

    def set_answer(
        self,
        permit_id: str,
        kind: str,
        item_id: str,
        answer: Any,
        comment: str | None = None,
    ) -> PermitRecord:
        return self._apply(
            "set_answer",
            permit_id,
            lambda permit: engine.set_answer(permit, kind, item_id, answer, comment),
            checklist=kind,
            item_id=item_id,
            answer=answer,
        )

    def set_part_a_details(self, permit_id: str, **details: str | None) -> PermitRecord:
        return self._apply(
            "set_part_a_details",
            permit_id,
            lambda permit: engine.set_part_a_details(permit, **details),
            fields=sorted(details),
        )

    def set_close_approach(self, permit_id: str, key: str, distance: str) -> PermitRecord:
        return self._apply(
            "set_close_approach",
            permit_id,
            lambda permit: engine.set_close_approach(permit, key, distance),
            key=key,
            distance=distance,
        )

    def set_close_approach_permits(self, permit_id: str, answer: Any) -> PermitRecord:
        return self._apply(
            "set_close_approach_permits",
            permit_id,
            lambda permit: engine.set_close_approach_permits(permit, answer),
            answer=answer,
        )

    def set_high_risk_option(self, permit_id: str, key: str, enabled: bool) -> PermitRecord:
        return self._apply(
            "set_high_risk_option",
            permit_id,
            lambda permit: engine.set_high_risk_option(permit, key, enabled),
            key=key,
            enabled=bool(enabled),
        )

    # Crew registry and daily ledger

    def register_member(
        self,
        permit_id: str,
        name: str,
        role: str,
        signature: Signature,
    ) -> PermitRecord:
        return self._apply(
            "register_member",
            permit_id,
            lambda permit: engine.register_member(permit, name, role, signature),
            name=name,
            role=role,
        )

    def sign_on_crew(self, permit_id: str, member_id: str, log_date: Any) -> PermitRecord:
        return self._apply(
            "sign_on_crew",
            permit_id,
            lambda permit: engine.sign_on_crew(permit, member_id, log_date),
            member_id=member_id,
            date=str(log_date),
        )

    def assign_role(self, permit_id: str, member_id: str, role: str, log_date: Any) -> PermitRecord:
        return self._apply(
            "assign_role",
            permit_id,
            lambda permit: engine.assign_role(permit, member_id, role, log_date),
            member_id=member_id,
            role=role,
            date=str(log_date),
        )

    def sign_on_receiver(self, permit_id: str, log_date: Any) -> PermitRecord:
        return self._apply(
            "sign_on_receiver",
            permit_id,
            lambda permit: engine.sign_on_receiver(permit, log_date),
            date=str(log_date),
        )

    def clear_role(self, permit_id: str, role: str, log_date: Any) -> PermitRecord:
        return self._apply(
            "clear_role",
            permit_id,
            lambda permit: engine.clear_role(permit, role, log_date),
            role=role,
            date=str(log_date),
        )

    # Custody and closure

    def record_handover(
        self,
        permit_id: str,
        receiver_name: str,
        signature: Signature,
        handover_date: Any = None,
    ) -> PermitRecord:
        permit = self._apply(
            "record_handover",
            permit_id,
            lambda current: engine.record_handover(
                current, receiver_name, signature, handover_date
            ),
            receiver_name=receiver_name,
        )
        self._logger.info(
            "Custody of permit %s transferred to %s",
            permit.permit_number,
            engine.current_receiver(permit),
        )
        return permit

    def close_permit(
        self,
        permit_id: str,
        *,
        closer_name: str,
        signature: Signature | None,
        excavation_safe: bool,
        as_built_returned: bool,
        outstanding_works_acknowledged: bool,
        outstanding_works_details: str = "",
        closed_at: Any = None,
    ) -> PermitRecord:
        permit = self._apply(
            "close",
            permit_id,
            lambda current: engine.close_permit(
                current,
                closer_name=closer_name,
                signature=signature,
                excavation_safe=excavation_safe,
                as_built_returned=as_built_returned,
                outstanding_works_acknowledged=outstanding_works_acknowledged,
                outstanding_works_details=outstanding_works_details,
                closed_at=closed_at,
            ),
            closer_name=closer_name,
        )
        self._logger.info("Closed permit %s by %s", permit.permit_number, closer_name)
        return permit

    # Notes and photos

    def add_note(self, permit_id: str, text: str, author: str, *, role: str = "Contributor") -> PermitRecord:
        return self._apply(
            "add_note",
            permit_id,
            lambda permit: engine.add_note(permit, text, author, role=role),
            author=author,
        )

    def remove_note(self, permit_id: str, note_id: str) -> PermitRecord:
        return self._apply(
            "remove_note",
            permit_id,
            lambda permit: engine.remove_note(permit, note_id),
            note_id=note_id,
        )

    def add_photos(self, permit_id: str, photos: Iterable[Mapping[str, Any]]) -> PermitRecord:
        batch = [dict(photo) for photo in photos]
        return self._apply(
            "add_photos",
            permit_id,
            lambda permit: engine.add_photos(permit, batch, max_photos=self._max_photos),
            count=len(batch),
        )

    def remove_photo(self, permit_id: str, photo_id: str) -> PermitRecord:
        return self._apply(
            "remove_photo",
            permit_id,
            lambda permit: engine.remove_photo(permit, photo_id),
            photo_id=photo_id,
        )

    # Internals

    def _apply(
        self,
        operation: str,
        permit_id: str,
        transform: Callable[[PermitRecord], PermitRecord],
        **details: Any,
    ) -> PermitRecord:
        with self._lock:
            current = self.get_permit(permit_id)
            try:
                updated = transform(current)
            except PermitEngineError as exc:
                self._log_rejection(operation, current, exc)
                raise
            if updated is current:
                return current
            return self._commit(operation, updated, details)

    def _commit(
        self,
        operation: str,
        permit: PermitRecord,
        details: Mapping[str, Any],
    ) -> PermitRecord:
        permit.revision = self._store.put(permit)
        self._stream.record(
            operation,
            permit_id=permit.permit_id,
            revision=permit.revision,
            payload=details,
        )
        if permit.is_closed:
            self._stream.snapshot(permit.permit_id, permit.to_mapping())
        return permit

    def _require_unique_number(self, permit_number: str) -> None:
        for existing in self._store.list():
            if existing.permit_number == permit_number:
                raise DuplicateError(f"Permit number {permit_number} is already in use.")

    def _log_rejection(self, operation: str, permit: PermitRecord, exc: PermitEngineError) -> None:
        label = permit.permit_number or permit.permit_id
        if isinstance(exc, (AuthorizationError, InvalidStateError)):
            self._logger.warning("Rejected %s on permit %s: %s", operation, label, exc)
        else:
            self._logger.info("Rejected %s on permit %s: %s", operation, label, exc)


def _signer(signature: Signature | None) -> str:
    return signature.name if isinstance(signature, Signature) else ""
