"""
Tests for the structured record summaries.

Covers:
- Each summary kind against the fake gateway (JSON mode, tidied output)
- Access for owner, linked and unrelated professionals, guests
- Gateway refusals and unreadable answers
"""

import json

import pytest

from app.models.access_grant import GuestAccessLog
from app.models.clinical_document import ClinicalDocument
from app.services import access_grant_service, summary_service
from app.services.ai_gateway import AIGatewayError
from conftest import auth_headers, make_clinic, make_user

SUMMARIES_URL = "/api/v1/summaries"


def _add_document(db, patient, text="Hemograma: hemoglobina 13.2 g/dL"):
    document = ClinicalDocument(
        user_id=patient.id,
        file_name="laboratorio.pdf",
        file_type="application/pdf",
        storage_path=f"patients/{patient.id}/laboratorio.pdf",
        extracted_text=text,
    )
    db.add(document)
    db.commit()
    return document


class TestTidying:
    def test_clinical_map_drops_dangling_edges_and_orphans(self):
        raw = {
            "nodes": [
                {"id": "patient", "type": "patient", "label": "Ana"},
                {"id": "cond_hta", "type": "condition", "label": "Hipertension"},
                {"id": "med_losartan", "type": "medication", "label": "Losartan"},
                {"id": "spec_lonely", "type": "specialist", "label": "Dermatologia"},
                {"type": "condition", "label": "sin id"},
            ],
            "edges": [
                {"id": "e1", "source": "patient", "target": "cond_hta"},
                {"id": "e2", "source": "cond_hta", "target": "med_losartan"},
                {"id": "e3", "source": "cond_hta", "target": "para_missing"},
            ],
        }

        tidy = summary_service.tidy_clinical_map(raw)

        assert [n["id"] for n in tidy["nodes"]] == ["patient", "cond_hta", "med_losartan"]
        assert [e["id"] for e in tidy["edges"]] == ["e1", "e2"]

    def test_lab_values_are_chronological(self):
        raw = {
            "tests": [
                {
                    "name": "Glucosa",
                    "values": [
                        {"date": "2024-05-01", "value": 110, "abnormal": True},
                        {"date": "2023-01-15", "value": 95},
                    ],
                },
                {"values": []},
            ]
        }

        tidy = summary_service.tidy_lab_trends(raw)

        assert len(tidy["tests"]) == 1
        values = tidy["tests"][0]["values"]
        assert [v["date"] for v in values] == ["2023-01-15", "2024-05-01"]
        assert [v["abnormal"] for v in values] == [False, True]

    def test_body_analysis_derives_bmi_and_latest(self):
        raw = {
            "measurements": {
                "weight": [{"date": "2024-02-01", "value": 72}, {"date": "2023-02-01", "value": 75}],
                "height": [{"date": "2024-02-01", "value": 180}],
                "bloodPressure": [{"date": "2024-02-01", "systolic": 130, "diastolic": 85}],
            }
        }

        tidy = summary_service.tidy_body_analysis(raw)

        assert tidy["measurements"]["bmi"] == [{"date": "2024-02-01", "value": 22.2}]
        assert tidy["measurements"]["heartRate"] == []
        assert tidy["latest"] == {
            "weight": 72,
            "height": 180,
            "bmi": 22.2,
            "systolic": 130,
            "diastolic": 85,
        }

    def test_diagnostic_aids_newest_first(self):
        raw = {
            "studies": [
                {"type": "Radiografia de torax", "date": "2022-07-10"},
                {"type": "Ecocardiograma", "date": "2023-03-22"},
                {"date": "2024-01-01"},
            ]
        }

        tidy = summary_service.tidy_diagnostic_aids(raw)

        assert [s["type"] for s in tidy["studies"]] == ["Ecocardiograma", "Radiografia de torax"]


class TestOwnerSummaries:
    def test_clinical_map_for_owner(self, client, db, patient_user, fake_gateway):
        _add_document(db, patient_user)
        fake_gateway.completions = [
            "```json\n"
            + json.dumps(
                {
                    "nodes": [
                        {"id": "patient", "type": "patient", "label": "Ana Maria Perez"},
                        {"id": "cond_anemia", "type": "condition", "label": "Anemia"},
                    ],
                    "edges": [{"id": "e1", "source": "patient", "target": "cond_anemia"}],
                }
            )
            + "\n```"
        ]

        response = client.post(f"{SUMMARIES_URL}/clinical-map", json={}, headers=auth_headers(patient_user))

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "clinical-map"
        assert body["patientUserId"] == str(patient_user.id)
        assert "generatedAt" in body
        assert [n["id"] for n in body["data"]["nodes"]] == ["patient", "cond_anemia"]

        assert fake_gateway.json_mode_calls == [True]
        system, context = fake_gateway.complete_calls[0]
        assert system["content"] == summary_service.CLINICAL_MAP_PROMPT
        assert "Hemograma: hemoglobina 13.2 g/dL" in context["content"]
        assert "Ana Maria Perez" in context["content"]

    def test_lab_trends_for_owner(self, client, patient_user, fake_gateway):
        fake_gateway.completions = [
            json.dumps(
                {
                    "tests": [
                        {
                            "name": "Hemoglobina",
                            "unit": "g/dL",
                            "values": [
                                {"date": "2024-03-01", "value": 13.2},
                                {"date": "2023-03-01", "value": 11.0, "abnormal": True},
                            ],
                        }
                    ]
                }
            )
        ]

        response = client.post(f"{SUMMARIES_URL}/lab-trends", json={}, headers=auth_headers(patient_user))

        assert response.status_code == 200
        values = response.json()["data"]["tests"][0]["values"]
        assert [v["value"] for v in values] == [11.0, 13.2]

    def test_medication_timeline_for_owner(self, client, patient_user, fake_gateway):
        fake_gateway.completions = [
            json.dumps(
                {
                    "medications": [
                        {"name": "Metformina", "prescribedOn": "2022-01-10", "active": False},
                        {"name": "Losartan", "prescribedOn": "2024-06-15", "active": True},
                    ]
                }
            )
        ]

        response = client.post(f"{SUMMARIES_URL}/medications", json={}, headers=auth_headers(patient_user))

        assert response.status_code == 200
        medications = response.json()["data"]["medications"]
        assert [(m["name"], m["active"]) for m in medications] == [("Losartan", True), ("Metformina", False)]

    def test_body_analysis_and_diagnostic_aids(self, client, patient_user, fake_gateway):
        fake_gateway.completions = [
            json.dumps({"measurements": {"heartRate": [{"date": "2024-01-01", "value": 70}]}}),
            json.dumps({"studies": [{"type": "Ecografia abdominal", "date": "2024-02-02"}]}),
        ]
        headers = auth_headers(patient_user)

        body = client.post(f"{SUMMARIES_URL}/body-analysis", json={}, headers=headers).json()
        aids = client.post(f"{SUMMARIES_URL}/diagnostic-aids", json={}, headers=headers).json()

        assert body["data"]["latest"] == {"heartRate": 70}
        assert aids["data"]["studies"][0]["type"] == "Ecografia abdominal"

    def test_unknown_kind_is_rejected(self, client, patient_user, fake_gateway):
        response = client.post(f"{SUMMARIES_URL}/horoscope", json={}, headers=auth_headers(patient_user))
        assert response.status_code == 422
        assert fake_gateway.complete_calls == []

    def test_unauthenticated_is_401(self, client, fake_gateway):
        response = client.post(f"{SUMMARIES_URL}/lab-trends", json={})
        assert response.status_code == 401
        assert fake_gateway.complete_calls == []

    @pytest.mark.parametrize("status_code", [429, 402])
    def test_gateway_refusal_passes_through(self, client, patient_user, fake_gateway, status_code):
        fake_gateway.complete_error = AIGatewayError("refused", status_code)

        response = client.post(f"{SUMMARIES_URL}/medications", json={}, headers=auth_headers(patient_user))

        assert response.status_code == status_code
        assert response.json() == {"error": "refused"}

    def test_unreadable_answer_is_502(self, client, patient_user, fake_gateway):
        fake_gateway.completions = ["No encontré medicamentos en los documentos."]

        response = client.post(f"{SUMMARIES_URL}/medications", json={}, headers=auth_headers(patient_user))

        assert response.status_code == 502
        assert response.json() == {"error": "Could not read the generated summary"}


class TestProfessionalSummaries:
    def test_linked_professional_gets_patient_summary(
        self, client, db, professional_user, patient_user, fake_gateway
    ):
        make_clinic(db, "C1", professionals=[professional_user], patients=[patient_user])
        fake_gateway.completions = [json.dumps({"studies": []})]

        response = client.post(
            f"{SUMMARIES_URL}/diagnostic-aids",
            json={"targetUserId": str(patient_user.id)},
            headers=auth_headers(professional_user),
        )

        assert response.status_code == 200
        assert response.json()["patientUserId"] == str(patient_user.id)

    def test_unrelated_professional_is_forbidden(
        self, client, professional_user, patient_user, fake_gateway
    ):
        response = client.post(
            f"{SUMMARIES_URL}/lab-trends",
            json={"targetUserId": str(patient_user.id)},
            headers=auth_headers(professional_user),
        )

        assert response.status_code == 403
        assert fake_gateway.complete_calls == []

    def test_patient_cannot_read_another_patient(self, client, db, patient_user, fake_gateway):
        other = make_user(db, "other@example.com")

        response = client.post(
            f"{SUMMARIES_URL}/lab-trends",
            json={"targetUserId": str(other.id)},
            headers=auth_headers(patient_user),
        )

        assert response.status_code == 403


class TestGuestSummaries:
    def test_grant_without_notebook_is_forbidden(self, client, db, patient_user, fake_gateway):
        grant = access_grant_service.create_grant(
            db, patient_user_id=patient_user.id, duration_minutes=15, allow_chat=True
        )

        response = client.post(f"{SUMMARIES_URL}/medications", json={"guestToken": grant.token})

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"
        assert fake_gateway.complete_calls == []

    def test_grant_with_notebook_is_counted_and_logged(
        self, client, db, session_factory, patient_user, fake_gateway
    ):
        grant = access_grant_service.create_grant(
            db, patient_user_id=patient_user.id, duration_minutes=15, allow_notebook=True
        )
        fake_gateway.completions = [json.dumps({"medications": []})]

        response = client.post(f"{SUMMARIES_URL}/medications", json={"guestToken": grant.token})

        assert response.status_code == 200
        assert response.json()["patientUserId"] == str(patient_user.id)
        with session_factory() as session:
            logs = session.query(GuestAccessLog).all()
            assert [(log.action_type, log.action_details) for log in logs] == [
                ("view_notebook", {"summary": "medications"})
            ]

    def test_unknown_token_is_404(self, client, fake_gateway):
        response = client.post(f"{SUMMARIES_URL}/medications", json={"guestToken": "nope"})
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
