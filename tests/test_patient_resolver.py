"""
Tests for the cascade patient search and patient selection.
"""

import pytest

from app.models.access_audit import AccessType, PatientAccessLog
from app.models.patient_profile import PatientProfile
from app.models.user import RoleName
from app.services import patient_resolver_service
from app.services.patient_resolver_service import (
    LEVEL_LOCAL,
    LEVEL_NOT_FOUND,
    LEVEL_PLATFORM,
    LEVEL_REGISTRY,
    NoClinicMembershipError,
    PatientAccessDeniedError,
)
from app.services.registry_clients import RegistryLookupError
from conftest import auth_headers, make_clinic, make_patient, make_user


def _search(db, professional, identification, topus, document_type=None):
    return patient_resolver_service.search_patient(
        db,
        professional_user_id=professional.id,
        identification=identification,
        document_type=document_type,
        topus=topus,
    )


class TestCascadeSearch:
    """Levels are tried in order and the first hit wins."""

    def test_patient_of_another_clinic_is_platform_level(self, db, professional_user, fake_topus):
        patient = make_patient(db, "p123@example.com", "123")
        make_clinic(db, "C1", professionals=[professional_user])
        make_clinic(db, "C2", patients=[patient])

        outcome = _search(db, professional_user, "123", fake_topus)

        assert outcome.level == LEVEL_PLATFORM
        assert outcome.found is True
        assert outcome.require_document_type is False
        assert outcome.requires_audit is True
        assert fake_topus.calls == []

    def test_local_match_wins_over_platform(self, db, professional_user, fake_topus):
        patient = make_patient(db, "local@example.com", "555")
        c1 = make_clinic(db, "C1", professionals=[professional_user], patients=[patient])
        make_clinic(db, "C2", patients=[patient])

        outcome = _search(db, professional_user, "555", fake_topus)

        assert outcome.level == LEVEL_LOCAL
        assert outcome.clinic.id == c1.id
        assert outcome.requires_audit is False

    def test_unknown_number_without_type_asks_for_it(self, db, professional_user, fake_topus):
        make_clinic(db, "C1", professionals=[professional_user])

        outcome = _search(db, professional_user, "999", fake_topus)

        assert outcome.level == LEVEL_REGISTRY
        assert outcome.require_document_type is True
        assert outcome.found is False
        assert fake_topus.calls == []

    def test_registry_hit_creates_patient(self, db, professional_user, fake_topus):
        make_clinic(db, "C1", professionals=[professional_user])
        fake_topus.add_person("CC", "777", nombre="Luis", apellido="Gomez", edad="41", eps="Nueva EPS")

        outcome = _search(db, professional_user, "777", fake_topus, document_type="CC")

        assert outcome.level == LEVEL_REGISTRY
        assert outcome.is_new is True
        assert outcome.requires_audit is True
        profile = db.query(PatientProfile).filter(PatientProfile.identification == "777").one()
        assert profile.full_name == "Luis Gomez"
        assert profile.age == 41
        assert profile.user.has_role(RoleName.PATIENT)
        assert profile.user.email.startswith("patient_777_")

    def test_concurrent_creation_falls_back_to_platform(
        self, db, session_factory, professional_user, fake_topus, monkeypatch
    ):
        make_clinic(db, "C1", professionals=[professional_user])
        fake_topus.add_person("CC", "888", nombre="Eva", apellido="Diaz")

        registry_lookup = fake_topus.lookup_identity

        def racing_lookup(document_type, identification):
            # Another request creates the same patient while the registry answers.
            result = registry_lookup(document_type, identification)
            other = session_factory()
            try:
                make_patient(other, "racer@example.com", "888", full_name="Eva Diaz")
            finally:
                other.close()
            return result

        fake_topus.lookup_identity = racing_lookup

        find = patient_resolver_service.find_patient_by_document
        calls = []

        def stale_first_find(session, document_type, identification):
            calls.append(identification)
            if len(calls) == 1:
                return None
            return find(session, document_type, identification)

        monkeypatch.setattr(patient_resolver_service, "find_patient_by_document", stale_first_find)

        outcome = _search(db, professional_user, "888", fake_topus, document_type="CC")

        assert outcome.level == LEVEL_PLATFORM
        assert outcome.is_new is False
        assert outcome.profile.full_name == "Eva Diaz"
        assert db.query(PatientProfile).filter(PatientProfile.identification == "888").count() == 1

    def test_registry_failure_is_level_four(self, db, professional_user, fake_topus):
        make_clinic(db, "C1", professionals=[professional_user])
        fake_topus.fail_with = RegistryLookupError("Registry request failed: timeout")

        outcome = _search(db, professional_user, "4321", fake_topus, document_type="CC")

        assert outcome.level == LEVEL_NOT_FOUND
        assert outcome.found is False

    def test_professional_without_clinic_is_rejected(self, db, professional_user, fake_topus):
        with pytest.raises(NoClinicMembershipError):
            _search(db, professional_user, "123", fake_topus)


class TestSelectPatient:
    """The audit entry's access type is derived from the rosters."""

    def test_out_of_clinic_selection_is_auditable(self, db, professional_user):
        patient = make_patient(db, "far@example.com", "123")
        make_clinic(db, "C1", professionals=[professional_user])
        make_clinic(db, "C2", patients=[patient])

        context, entry = patient_resolver_service.select_patient(
            db,
            professional_user_id=professional_user.id,
            patient_user_id=patient.id,
            level=LEVEL_PLATFORM,
        )

        assert context.current_patient_user_id == patient.id
        assert entry.access_type == AccessType.GLOBAL_OR_EXTERNAL
        assert entry.access_details["auditable_for_patient"] is True
        assert entry.access_details["action"] == "patient_switched"

        visible = patient_resolver_service.list_patient_access_logs(db, patient.id)
        assert [log.id for log, _, _ in visible] == [entry.id]

    def test_in_clinic_selection_is_not_shown_to_patient(self, db, professional_user):
        patient = make_patient(db, "near@example.com", "321")
        make_clinic(db, "C1", professionals=[professional_user], patients=[patient])

        _, entry = patient_resolver_service.select_patient(
            db,
            professional_user_id=professional_user.id,
            patient_user_id=patient.id,
            level=LEVEL_PLATFORM,
        )

        assert entry.access_type == AccessType.CLINIC_LOCAL
        assert patient_resolver_service.list_patient_access_logs(db, patient.id) == []
        assert db.query(PatientAccessLog).count() == 1

    def test_selection_overwrites_previous_patient(self, db, professional_user):
        first = make_patient(db, "first@example.com", "1")
        second = make_patient(db, "second@example.com", "2")
        make_clinic(db, "C1", professionals=[professional_user], patients=[first, second])

        for patient in (first, second):
            patient_resolver_service.select_patient(
                db, professional_user_id=professional_user.id, patient_user_id=patient.id
            )

        context, profile = patient_resolver_service.get_professional_context(db, professional_user.id)
        assert context.current_patient_user_id == second.id
        assert profile.identification == "2"

    def test_foreign_clinic_id_is_denied(self, db, professional_user):
        patient = make_patient(db, "x@example.com", "11")
        make_clinic(db, "C1", professionals=[professional_user])
        other = make_clinic(db, "C2", patients=[patient])

        with pytest.raises(PatientAccessDeniedError):
            patient_resolver_service.select_patient(
                db,
                professional_user_id=professional_user.id,
                patient_user_id=patient.id,
                clinic_id=other.id,
            )


class TestPatientEndpoints:
    def test_search_returns_camel_case_body(self, client, db, professional_user):
        patient = make_patient(db, "p123@example.com", "123")
        make_clinic(db, "C1", professionals=[professional_user])
        make_clinic(db, "C2", patients=[patient])

        response = client.post(
            "/api/v1/patients/search",
            json={"identification": " 123 "},
            headers=auth_headers(professional_user),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["level"] == 2
        assert body["requiresAudit"] is True
        assert body["requireDocumentType"] is False
        assert body["patient"]["userId"] == str(patient.id)

    def test_search_not_found_is_404_with_body(self, client, db, professional_user, fake_topus):
        make_clinic(db, "C1", professionals=[professional_user])

        response = client.post(
            "/api/v1/patients/search",
            json={"identification": "000", "documentType": "cc"},
            headers=auth_headers(professional_user),
        )

        assert response.status_code == 404
        assert response.json()["level"] == 4
        assert fake_topus.calls == [("CC", "000")]

    def test_search_requires_professional_role(self, client, db):
        patient = make_user(db, "only-patient@example.com", RoleName.PATIENT)
        response = client.post(
            "/api/v1/patients/search",
            json={"identification": "123"},
            headers=auth_headers(patient),
        )
        assert response.status_code == 403

    def test_select_and_read_context(self, client, db, professional_user):
        patient = make_patient(db, "sel@example.com", "42")
        make_clinic(db, "C1", professionals=[professional_user], patients=[patient])
        headers = auth_headers(professional_user)

        selected = client.post(
            "/api/v1/patients/select",
            json={"patientUserId": str(patient.id), "level": 1},
            headers=headers,
        )
        assert selected.status_code == 200

        context = client.get("/api/v1/patients/context", headers=headers).json()
        assert context["currentPatientUserId"] == str(patient.id)
        assert context["patient"]["identification"] == "42"
