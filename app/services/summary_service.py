# app/services/summary_service.py
"""
Structured views over a patient's record, generated by the AI gateway.

Each kind asks the model for one JSON object built from the same bounded
context the chat uses, then tidies the answer so the client can render it
without second-guessing: series sorted by date, graph edges pointing at
known nodes only.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.user import User
from app.schemas.summary import SummaryKind
from app.services.access_grant_service import validate_grant
from app.services.ai_gateway import AIGateway, extract_json_object
from app.services.chat_service import (
    ChatAccessError,
    ChatContext,
    ChatSubject,
    render_context_block,
    resolve_chat_subject,
)

logger = logging.getLogger(__name__)

JSON_ONLY = "Answer ONLY with the JSON object, no text before or after it."

CLINICAL_MAP_PROMPT = f"""You build a clinical map of a patient's record: how their conditions relate to medications, tests and specialists.

Nodes:
- one "patient" node with id "patient" labelled with the patient's full name
- a "condition" node for every diagnosis
- a "medication" node for every medication mentioned
- a "paraclinical" node for key tests and results
- a "specialist" node for every specialty involved

Edges go from "patient" to each condition ("diagnosed with") and from conditions to what treats, monitors or follows them ("treated with", "monitored with", "followed by"). Every node must be connected.

Format:
{{"nodes": [{{"id": "cond_dm2", "type": "condition", "label": "Type 2 diabetes"}}],
  "edges": [{{"id": "e1", "source": "patient", "target": "cond_dm2", "label": "diagnosed with"}}]}}

{JSON_ONLY}"""

LAB_TRENDS_PROMPT = f"""You extract EVERY laboratory result (paraclinical) from a patient's clinical documents.

Group the results by test, keep every dated value, and flag values outside the reference range.

Format:
{{"tests": [{{"id": "fasting_glucose", "name": "Fasting glucose", "category": "Blood chemistry", "unit": "mg/dL",
  "referenceRange": "70-100", "values": [{{"date": "2023-01-15", "value": 95, "abnormal": false, "source": "Lab order 123"}}]}}]}}

{JSON_ONLY}"""

MEDICATIONS_PROMPT = f"""You extract EVERY prescription and medication mentioned in a patient's clinical documents.

For each one give the generic and brand name, dose, frequency, route, duration, prescription date, prescriber, indication, and whether it is still active.

Format:
{{"medications": [{{"id": "metformin_1", "name": "Metformin", "brandName": "Glucophage", "category": "Antidiabetic",
  "dose": "850 mg", "frequency": "Every 12 hours", "route": "Oral", "duration": "30 days", "prescribedOn": "2023-06-15",
  "prescriber": "Internal medicine", "indication": "Type 2 diabetes", "active": true, "source": "Consultation 15/06/2023"}}]}}

{JSON_ONLY}"""

BODY_ANALYSIS_PROMPT = f"""You extract the history of body measurements and vital signs from a patient's clinical documents: weight (kg), height (cm), blood pressure (mmHg) and heart rate (bpm).

Keep every dated record, not only the latest.

Format:
{{"measurements": {{"weight": [{{"date": "2023-01-15", "value": 75.5, "source": "Clinical history"}}],
  "height": [{{"date": "2023-01-15", "value": 170}}],
  "bloodPressure": [{{"date": "2023-01-15", "systolic": 120, "diastolic": 80}}],
  "heartRate": [{{"date": "2023-01-15", "value": 72}}]}}}}

{JSON_ONLY}"""

DIAGNOSTIC_AIDS_PROMPT = f"""You extract the imaging studies from a patient's clinical documents: x-rays, ultrasounds, echocardiograms, MRI, CT, mammograms, endoscopies and similar. Laboratory tests are NOT imaging studies.

Summaries must be short and understandable by the patient.

Format:
{{"studies": [{{"id": "echo_2023_03_22", "type": "Doppler echocardiogram", "date": "2023-03-22", "summary": "...",
  "findings": ["..."], "conclusion": "...", "doctor": "...", "source": "..."}}]}}

{JSON_ONLY}"""


class SummaryError(Exception):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _records(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    items = data.get(key)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _by_date(records: list[dict[str, Any]], field: str = "date", newest_first: bool = False):
    return sorted(records, key=lambda r: str(r.get(field) or ""), reverse=newest_first)


def tidy_clinical_map(data: dict[str, Any]) -> dict[str, Any]:
    nodes = [n for n in _records(data, "nodes") if n.get("id")]
    node_ids = {n["id"] for n in nodes}
    edges = [
        e for e in _records(data, "edges")
        if e.get("source") in node_ids and e.get("target") in node_ids
    ]
    linked = {e["source"] for e in edges} | {e["target"] for e in edges}
    nodes = [n for n in nodes if n["id"] == "patient" or n["id"] in linked]
    return {"nodes": nodes, "edges": edges}


def tidy_lab_trends(data: dict[str, Any]) -> dict[str, Any]:
    tests = []
    for test in _records(data, "tests"):
        if not test.get("name"):
            continue
        values = _by_date(_records(test, "values"))
        for value in values:
            value["abnormal"] = bool(value.get("abnormal"))
        tests.append({**test, "values": values})
    return {"tests": tests}


def tidy_medications(data: dict[str, Any]) -> dict[str, Any]:
    medications = [m for m in _records(data, "medications") if m.get("name")]
    for medication in medications:
        medication["active"] = bool(medication.get("active"))
    return {"medications": _by_date(medications, "prescribedOn", newest_first=True)}


def _bmi_series(weights: list[dict[str, Any]], heights: list[dict[str, Any]]) -> list[dict[str, Any]]:
    height_on = {h.get("date"): h.get("value") for h in heights}
    series = []
    for weight in weights:
        height = height_on.get(weight.get("date"))
        try:
            metres = float(height) / 100
            value = round(float(weight.get("value")) / (metres * metres), 1)
        except (TypeError, ValueError, ZeroDivisionError):
            continue
        series.append({"date": weight.get("date"), "value": value})
    return series


def tidy_body_analysis(data: dict[str, Any]) -> dict[str, Any]:
    raw = data.get("measurements") if isinstance(data.get("measurements"), dict) else {}
    measurements = {
        key: _by_date(_records(raw, key))
        for key in ("weight", "height", "bloodPressure", "heartRate")
    }
    measurements["bmi"] = _bmi_series(measurements["weight"], measurements["height"])

    latest: dict[str, Any] = {}
    for key in ("weight", "height", "heartRate", "bmi"):
        if measurements[key]:
            latest[key] = measurements[key][-1].get("value")
    if measurements["bloodPressure"]:
        last = measurements["bloodPressure"][-1]
        latest["systolic"] = last.get("systolic")
        latest["diastolic"] = last.get("diastolic")
    return {"measurements": measurements, "latest": latest}


def tidy_diagnostic_aids(data: dict[str, Any]) -> dict[str, Any]:
    studies = [s for s in _records(data, "studies") if s.get("type")]
    return {"studies": _by_date(studies, newest_first=True)}


@dataclass(frozen=True)
class SummaryRecipe:
    prompt: str
    tidy: Callable[[dict[str, Any]], dict[str, Any]]


RECIPES: dict[SummaryKind, SummaryRecipe] = {
    SummaryKind.CLINICAL_MAP: SummaryRecipe(CLINICAL_MAP_PROMPT, tidy_clinical_map),
    SummaryKind.LAB_TRENDS: SummaryRecipe(LAB_TRENDS_PROMPT, tidy_lab_trends),
    SummaryKind.MEDICATIONS: SummaryRecipe(MEDICATIONS_PROMPT, tidy_medications),
    SummaryKind.BODY_ANALYSIS: SummaryRecipe(BODY_ANALYSIS_PROMPT, tidy_body_analysis),
    SummaryKind.DIAGNOSTIC_AIDS: SummaryRecipe(DIAGNOSTIC_AIDS_PROMPT, tidy_diagnostic_aids),
}


def resolve_summary_subject(
    db: Session,
    *,
    kind: SummaryKind,
    caller: User | None,
    target_user_id: UUID | None,
    guest_token: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ChatSubject:
    """
    Same access rules as chat, except that guests need the grant's
    allow_notebook flag. Grant errors propagate as AccessGrantError.
    """
    if not guest_token:
        return resolve_chat_subject(db, caller=caller, target_user_id=target_user_id)

    validation = validate_grant(
        db,
        token=guest_token,
        action="view_notebook",
        action_details={"summary": kind.value},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    grant = validation.grant
    if target_user_id is not None and target_user_id != grant.patient_user_id:
        raise ChatAccessError("Not allowed", 403)
    return ChatSubject(patient_user_id=grant.patient_user_id, grant=grant)


async def generate_summary(
    gateway: AIGateway,
    *,
    kind: SummaryKind,
    context: ChatContext,
) -> dict[str, Any]:
    """
    Ask the gateway for one summary. AIGatewayError propagates; an answer
    that is not a JSON object raises SummaryError.
    """
    recipe = RECIPES[kind]
    messages = [
        {"role": "system", "content": recipe.prompt},
        {"role": "user", "content": render_context_block(context)},
    ]
    raw = await gateway.complete(messages, json_mode=True)

    parsed = extract_json_object(raw or "")
    if not isinstance(parsed, dict):
        logger.error(f"Summary '{kind.value}' was not a JSON object: {(raw or '')[:200]!r}")
        raise SummaryError("Could not read the generated summary")
    return recipe.tidy(parsed)
