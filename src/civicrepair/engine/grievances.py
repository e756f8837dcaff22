"""Grievance lifecycle — submission, classification, edits and listing.

Owns the per-grievance invariants that do not involve bids or
assignments. Every status change goes through GrievanceStateMachine.

Classification arrives from an external service at any time, including
after bids exist. Re-applying it overwrites category, priority and tags
but only ever moves status from PENDING to CLASSIFIED.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog

from civicrepair.crypto.fingerprint import fingerprint
from civicrepair.engine.state_machine import GrievanceStateMachine
from civicrepair.errors import AuthorizationError, ValidationError
from civicrepair.locking import LockRegistry
from civicrepair.models.grievance import (
    Category,
    ClassificationResult,
    Grievance,
    GrievanceStatus,
    Priority,
)
from civicrepair.models.ledger import LedgerOperation
from civicrepair.persistence.event_log import EventKind, EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.policy.resolver import PolicyResolver
from civicrepair.reconciliation.dispatcher import IntentSink

log = structlog.get_logger(__name__)


def grievance_payload(grievance: Grievance) -> dict[str, Any]:
    """The record a grievance fingerprint commits to."""
    return {
        "grievance_id": grievance.grievance_id,
        "citizen_id": grievance.citizen_id,
        "title": grievance.title,
        "description": grievance.description,
        "location": grievance.location,
        "image_ref": grievance.image_ref,
        "created_utc": grievance.created_utc,
    }


class GrievanceLifecycle:
    """Grievance operations that touch only the grievance itself."""

    def __init__(
        self,
        store: DocumentStore,
        locks: LockRegistry,
        resolver: PolicyResolver,
        event_log: Optional[EventLog] = None,
        sink: Optional[IntentSink] = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._resolver = resolver
        self._event_log = event_log
        self._sink = sink

    def get(self, grievance_id: str) -> Grievance:
        return self._store.grievances.get(grievance_id)

    def submit(
        self,
        citizen_id: str,
        title: str,
        description: str,
        location: str,
        category: Optional[Category] = None,
        priority: Optional[Priority] = None,
        image_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Grievance:
        """File a new grievance in PENDING with citizen-set defaults."""
        now = now or datetime.now(timezone.utc)
        self._check_text(title, description, location)
        grievance = Grievance(
            grievance_id=f"grv_{uuid4().hex[:12]}",
            citizen_id=citizen_id,
            title=title.strip(),
            description=description.strip(),
            location=location.strip(),
            category=category or self._resolver.default_category(),
            priority=priority or self._resolver.default_priority(),
            image_ref=image_ref,
            created_utc=now,
            updated_utc=now,
        )
        grievance.fingerprint = fingerprint(grievance_payload(grievance))
        self._store.grievances.insert(grievance)

        self._record(EventKind.GRIEVANCE_SUBMITTED, citizen_id, {
            "grievance_id": grievance.grievance_id,
            "fingerprint": grievance.fingerprint,
            "category": grievance.category,
            "priority": grievance.priority,
        }, now)
        log.info("grievance.submitted", grievance_id=grievance.grievance_id, citizen_id=citizen_id)
        if self._sink is not None:
            self._sink.enqueue(
                LedgerOperation.COMMIT_GRIEVANCE,
                {"grievance_id": grievance.grievance_id},
                {"fingerprint": grievance.fingerprint},
            )
        return grievance

    def update(
        self,
        grievance_id: str,
        actor_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        image_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Grievance:
        """Edit the citizen-owned fields. Only while PENDING or CLASSIFIED."""
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("grievance", grievance_id):
            grievance = self.get(grievance_id)
            self._check_owner(grievance, actor_id)
            if not grievance.is_editable():
                raise ValidationError(
                    f"Grievance {grievance_id} cannot be edited in status "
                    f"{grievance.status.value}"
                )
            new_title = title if title is not None else grievance.title
            new_description = description if description is not None else grievance.description
            new_location = location if location is not None else grievance.location
            self._check_text(new_title, new_description, new_location)

            changed = []
            for name, value in (
                ("title", new_title.strip()),
                ("description", new_description.strip()),
                ("location", new_location.strip()),
                ("image_ref", image_ref if image_ref is not None else grievance.image_ref),
            ):
                if getattr(grievance, name) != value:
                    setattr(grievance, name, value)
                    changed.append(name)
            grievance.updated_utc = now
            self._store.grievances.put(grievance)

        self._record(EventKind.GRIEVANCE_UPDATED, actor_id, {
            "grievance_id": grievance_id,
            "fields": changed,
        }, now)
        return grievance

    def delete(self, grievance_id: str, actor_id: str, now: Optional[datetime] = None) -> None:
        """Hard delete. Only the owner, only while PENDING."""
        with self._locks.hold("grievance", grievance_id):
            grievance = self.get(grievance_id)
            self._check_owner(grievance, actor_id)
            if not grievance.is_deletable():
                raise ValidationError(
                    f"Grievance {grievance_id} cannot be deleted once it has left pending "
                    f"(status {grievance.status.value})"
                )
            self._store.grievances.delete(grievance_id)
        self._record(EventKind.GRIEVANCE_DELETED, actor_id, {"grievance_id": grievance_id}, now)

    def apply_classification(
        self,
        grievance_id: str,
        result: Optional[ClassificationResult],
        now: Optional[datetime] = None,
    ) -> Grievance:
        """Apply the classifier's verdict. Idempotent.

        ``None`` means the classifier gave up; the citizen-set category
        and priority stand and the grievance still becomes CLASSIFIED.
        """
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("grievance", grievance_id):
            grievance = self.get(grievance_id)
            if result is not None:
                grievance.category = result.category
                grievance.priority = result.priority
                grievance.tags = list(result.tags)
                grievance.classification = result
            if grievance.status == GrievanceStatus.PENDING:
                GrievanceStateMachine.apply_transition(grievance, GrievanceStatus.CLASSIFIED)
            grievance.updated_utc = now
            self._store.grievances.put(grievance)

        self._record(EventKind.GRIEVANCE_CLASSIFIED, "classifier", {
            "grievance_id": grievance_id,
            "category": grievance.category,
            "priority": grievance.priority,
            "fallback": result is None,
        }, now)
        return grievance

    def transition(
        self,
        grievance: Grievance,
        target: GrievanceStatus,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Apply a status change. Caller holds the grievance lock."""
        previous = grievance.status
        GrievanceStateMachine.apply_transition(grievance, target)
        grievance.updated_utc = now or datetime.now(timezone.utc)
        self._store.grievances.put(grievance)
        self._record(EventKind.GRIEVANCE_TRANSITION, actor_id, {
            "grievance_id": grievance.grievance_id,
            "from": previous,
            "to": target,
        }, now)

    def list(
        self,
        status: Optional[GrievanceStatus] = None,
        citizen_id: Optional[str] = None,
        category: Optional[Category] = None,
        priority: Optional[Priority] = None,
    ) -> list[Grievance]:
        """Filtered grievances, newest first."""
        def keep(g: Grievance) -> bool:
            return (
                (status is None or g.status == status)
                and (citizen_id is None or g.citizen_id == citizen_id)
                and (category is None or g.category == category)
                and (priority is None or g.priority == priority)
            )
        result = self._store.grievances.where(keep)
        result.sort(key=lambda g: g.created_utc or datetime.min.replace(tzinfo=timezone.utc),
                    reverse=True)
        return result

    def marketplace(self, category: Optional[Category] = None) -> list[Grievance]:
        """Grievances open for bids, highest priority first, then oldest."""
        result = self._store.grievances.where(
            lambda g: g.can_receive_bids() and (category is None or g.category == category)
        )
        rank = {p: i for i, p in enumerate(self._resolver.priority_order())}
        result.sort(key=lambda g: (
            -rank[g.priority],
            g.created_utc or datetime.min.replace(tzinfo=timezone.utc),
        ))
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_text(self, title: str, description: str, location: str) -> None:
        max_title, max_description = self._resolver.text_limits()
        errors = []
        if not title or not title.strip():
            errors.append("title is required")
        elif len(title.strip()) > max_title:
            errors.append(f"title exceeds {max_title} characters")
        if not description or not description.strip():
            errors.append("description is required")
        elif len(description.strip()) > max_description:
            errors.append(f"description exceeds {max_description} characters")
        if not location or not location.strip():
            errors.append("location is required")
        if errors:
            raise ValidationError("; ".join(errors))

    @staticmethod
    def _check_owner(grievance: Grievance, actor_id: str) -> None:
        if grievance.citizen_id != actor_id:
            raise AuthorizationError(
                f"{actor_id} does not own grievance {grievance.grievance_id}"
            )

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
