# app/client/context_cache.py
"""
Client-side mirror of each professional's selected patient.

The mirror is never authoritative: the server row is. State changes go
through `reduce`, a pure function, so the one rule that matters can be
checked in isolation: a present selection is never replaced by an empty
read from the server.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Union
from uuid import UUID

import httpx

from app.utils.datetime_utils import parse_iso_string


@dataclass(frozen=True)
class CachedContext:
    patient_user_id: UUID
    clinic_id: UUID | None = None
    patient: Mapping[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PatientSelected:
    """The user picked a patient in this tab."""

    professional_user_id: UUID
    context: CachedContext


@dataclass(frozen=True)
class ContextFetched:
    """A read of /patients/context came back; `context` is None when empty."""

    professional_user_id: UUID
    context: CachedContext | None


@dataclass(frozen=True)
class ContextCleared:
    """Explicit user action, e.g. logout or "close patient"."""

    professional_user_id: UUID


Action = Union[PatientSelected, ContextFetched, ContextCleared]
State = Mapping[UUID, CachedContext]


def keep_present_value(current: CachedContext | None, incoming: CachedContext | None) -> CachedContext | None:
    """
    Merge a server read into the mirror. An empty read never wipes a
    present value; an older read never replaces a newer one.
    """
    if incoming is None:
        return current
    if current is None:
        return incoming
    if current.updated_at and incoming.updated_at and incoming.updated_at < current.updated_at:
        return current
    return incoming


def reduce(state: State, action: Action) -> dict[UUID, CachedContext]:
    new_state = dict(state)
    key = action.professional_user_id

    if isinstance(action, PatientSelected):
        new_state[key] = action.context
    elif isinstance(action, ContextFetched):
        merged = keep_present_value(state.get(key), action.context)
        if merged is None:
            new_state.pop(key, None)
        else:
            new_state[key] = merged
    elif isinstance(action, ContextCleared):
        new_state.pop(key, None)
    else:
        raise TypeError(f"Unknown action {type(action).__name__}")
    return new_state


def context_from_payload(payload: Mapping[str, Any] | None) -> CachedContext | None:
    if not payload or not payload.get("currentPatientUserId"):
        return None
    clinic_id = payload.get("currentClinicId")
    updated_at = payload.get("updatedAt")
    return CachedContext(
        patient_user_id=UUID(payload["currentPatientUserId"]),
        clinic_id=UUID(clinic_id) if clinic_id else None,
        patient=payload.get("patient") or {},
        updated_at=parse_iso_string(updated_at) if updated_at else None,
    )


class ContextCache:
    def __init__(self) -> None:
        self._state: dict[UUID, CachedContext] = {}

    def get(self, professional_user_id: UUID) -> CachedContext | None:
        return self._state.get(professional_user_id)

    def dispatch(self, action: Action) -> CachedContext | None:
        self._state = reduce(self._state, action)
        return self._state.get(action.professional_user_id)

    async def refresh(self, client: httpx.AsyncClient, professional_user_id: UUID, *, token: str) -> CachedContext | None:
        response = await client.get("/patients/context", headers={"Authorization": f"Bearer {token}"})
        response.raise_for_status()
        fetched = context_from_payload(response.json())
        return self.dispatch(ContextFetched(professional_user_id, fetched))
