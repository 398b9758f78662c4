"""Tests for the FHIR REST API routes."""

import pytest

from fhirstore.errors import FhirValidationError
from fhirstore.routes.fhir import etag, parse_if_match

FHIR_JSON = "application/fhir+json"


async def _create(client, headers, resource: dict):
    response = await client.post(f"/fhir/{resource['resourceType']}", json=resource, headers=headers)
    assert response.status_code == 201, response.text
    return response


class TestIfMatch:
    """Tests for ETag rendering and If-Match parsing."""

    def test_etag_is_weak(self):
        assert etag(3) == 'W/"3"'

    @pytest.mark.parametrize("value", ['W/"3"', '"3"', "3", ' W/"3" '])
    def test_parse_if_match(self, value):
        assert parse_if_match(value) == 3

    def test_absent(self):
        assert parse_if_match(None) is None

    def test_malformed(self):
        with pytest.raises(FhirValidationError):
            parse_if_match("W/abc")


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_api_key(self, client):
        response = await client.get("/fhir/Patient")
        assert response.status_code == 401
        assert response.headers["content-type"].startswith(FHIR_JSON)
        outcome = response.json()
        assert outcome["resourceType"] == "OperationOutcome"
        assert outcome["issue"][0]["code"] == "login"
        assert outcome["issue"][0]["diagnostics"] == "Missing API key"

    @pytest.mark.asyncio
    async def test_invalid_api_key(self, client):
        response = await client.get("/fhir/Patient", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401
        assert response.json()["issue"][0]["diagnostics"] == "Invalid API key"


class TestHttpErrors:
    """Framework HTTP errors render as OperationOutcome under /fhir only."""

    @pytest.mark.asyncio
    async def test_unknown_fhir_route(self, client, api_headers):
        response = await client.get("/fhir/Patient/p1/_history/1/extra", headers=api_headers)

        assert response.status_code == 404
        assert response.headers["content-type"].startswith(FHIR_JSON)
        assert response.json()["issue"][0]["code"] == "not-found"

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client, api_headers):
        response = await client.patch("/fhir/Patient/p1", json={}, headers=api_headers)

        assert response.status_code == 405
        assert "Allow" in response.headers
        outcome = response.json()
        assert outcome["resourceType"] == "OperationOutcome"
        assert outcome["issue"][0]["code"] == "not-supported"

    @pytest.mark.asyncio
    async def test_outside_fhir_keeps_default_body(self, client):
        response = await client.get("/no-such-page")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found"}


class TestCreateAndRead:
    """Tests for POST and GET of single resources."""

    @pytest.mark.asyncio
    async def test_create_returns_location_and_etag(self, client, api_headers, patient_resource):
        response = await _create(client, api_headers, patient_resource)

        assert response.headers["Location"] == "/fhir/Patient/patient-1"
        assert response.headers["ETag"] == 'W/"1"'
        data = response.json()
        assert data["fhir_id"] == "patient-1"
        assert data["version_id"] == 1
        assert data["composite_key"] == "Patient/patient-1"
        assert data["resource_json"]["meta"]["versionId"] == "1"

    @pytest.mark.asyncio
    async def test_create_twice_conflicts(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.post("/fhir/Patient", json=patient_resource, headers=api_headers)

        assert response.status_code == 409
        assert response.headers["content-type"].startswith(FHIR_JSON)
        outcome = response.json()
        assert outcome["resourceType"] == "OperationOutcome"
        assert outcome["issue"][0]["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_create_type_mismatch(self, client, api_headers, patient_resource):
        response = await client.post("/fhir/Observation", json=patient_resource, headers=api_headers)
        assert response.status_code == 400
        assert response.json()["issue"][0]["code"] == "invalid"

    @pytest.mark.asyncio
    async def test_create_unknown_type(self, client, api_headers):
        response = await client.post("/fhir/Spaceship", json={"resourceType": "Spaceship"}, headers=api_headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_create_non_object_body(self, client, api_headers):
        response = await client.post("/fhir/Patient", json=["not", "an", "object"], headers=api_headers)
        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"

    @pytest.mark.asyncio
    async def test_create_numeric_id(self, client, api_headers):
        response = await client.post("/fhir/Patient", json={"resourceType": "Patient", "id": 123}, headers=api_headers)

        assert response.status_code == 400
        assert response.json()["issue"][0]["code"] == "invalid"

    @pytest.mark.asyncio
    async def test_create_schema_invalid_body(self, client, api_headers, patient_resource):
        patient_resource["extension"] = [{"valueString": "no url"}]

        response = await client.post("/fhir/Patient", json=patient_resource, headers=api_headers)

        assert response.status_code == 400
        issues = response.json()["issue"]
        assert issues[0]["diagnostics"] == "Resource validation failed"
        assert any("url" in issue["diagnostics"] for issue in issues[1:])

    @pytest.mark.asyncio
    async def test_create_with_malformed_name_is_stored_unindexed(self, client, api_headers):
        resource = {"resourceType": "Patient", "id": "p1", "name": {"family": "X"}}

        await _create(client, api_headers, resource)

        response = await client.get("/fhir/Patient?family=X", headers=api_headers)
        assert response.json()["total_count"] == 0

    @pytest.mark.asyncio
    async def test_create_records_user(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.get("/fhir/Patient/patient-1/_history", headers=api_headers)
        assert response.json()["versions"][0]["created_by"] == "test-user"

    @pytest.mark.asyncio
    async def test_get_returns_etag(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.get("/fhir/Patient/patient-1", headers=api_headers)

        assert response.status_code == 200
        assert response.headers["ETag"] == 'W/"1"'
        assert response.headers["content-type"].startswith(FHIR_JSON)
        data = response.json()
        assert data["resource_json"]["name"][0]["family"] == "Smith"
        assert data["organization_reference"] == "Organization/org-1"

    @pytest.mark.asyncio
    async def test_get_missing_returns_outcome(self, client, api_headers):
        response = await client.get("/fhir/Patient/missing", headers=api_headers)

        assert response.status_code == 404
        outcome = response.json()
        assert outcome["resourceType"] == "OperationOutcome"
        assert outcome["issue"][0]["code"] == "not-found"


class TestUpdate:
    """Tests for PUT."""

    @pytest.mark.asyncio
    async def test_update_increments_version(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.put(
            "/fhir/Patient/patient-1",
            json=dict(patient_resource, gender="other"),
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.headers["ETag"] == 'W/"2"'
        assert response.json()["version_id"] == 2

    @pytest.mark.asyncio
    async def test_update_with_matching_if_match(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.put(
            "/fhir/Patient/patient-1",
            json=patient_resource,
            headers={**api_headers, "If-Match": 'W/"1"'},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_update_with_stale_if_match(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.put("/fhir/Patient/patient-1", json=patient_resource, headers=api_headers)

        response = await client.put(
            "/fhir/Patient/patient-1",
            json=patient_resource,
            headers={**api_headers, "If-Match": 'W/"1"'},
        )

        assert response.status_code == 409
        assert response.json()["issue"][0]["code"] == "conflict"

        current = await client.get("/fhir/Patient/patient-1", headers=api_headers)
        assert current.json()["version_id"] == 2

    @pytest.mark.asyncio
    async def test_update_with_malformed_if_match(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.put(
            "/fhir/Patient/patient-1",
            json=patient_resource,
            headers={**api_headers, "If-Match": "yesterday"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_missing_returns_404(self, client, api_headers, patient_resource):
        response = await client.put("/fhir/Patient/patient-1", json=patient_resource, headers=api_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_schema_invalid_body(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        patient_resource["contained"] = [{"id": "no-type"}]

        response = await client.put("/fhir/Patient/patient-1", json=patient_resource, headers=api_headers)

        assert response.status_code == 400
        assert response.json()["issue"][0]["code"] == "invalid"
        current = await client.get("/fhir/Patient/patient-1", headers=api_headers)
        assert current.json()["version_id"] == 1

    @pytest.mark.asyncio
    async def test_update_id_mismatch(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.put(
            "/fhir/Patient/patient-1",
            json=dict(patient_resource, id="patient-2"),
            headers=api_headers,
        )
        assert response.status_code == 400


class TestDeleteAndHistory:
    """Tests for DELETE and the history endpoints."""

    @pytest.mark.asyncio
    async def test_delete_then_read(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.delete("/fhir/Patient/patient-1?reason=duplicate", headers=api_headers)
        assert response.status_code == 204

        response = await client.get("/fhir/Patient/patient-1", headers=api_headers)
        assert response.status_code == 404

        response = await client.delete("/fhir/Patient/patient-1", headers=api_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_history_lifecycle(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.put("/fhir/Patient/patient-1", json=dict(patient_resource, gender="other"), headers=api_headers)
        await client.delete("/fhir/Patient/patient-1?reason=merged", headers=api_headers)

        response = await client.get("/fhir/Patient/patient-1/_history", headers=api_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 3
        assert data["composite_key"] == "Patient/patient-1"
        versions = data["versions"]
        assert [v["version_id"] for v in versions] == [3, 2, 1]
        assert [v["operation"] for v in versions] == ["delete", "update", "create"]
        assert [v["is_current_version"] for v in versions] == [True, False, False]
        assert versions[0]["deletion_reason"] == "merged"

    @pytest.mark.asyncio
    async def test_history_excluding_deleted(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.delete("/fhir/Patient/patient-1", headers=api_headers)

        response = await client.get("/fhir/Patient/patient-1/_history?includeDeleted=false", headers=api_headers)
        assert [v["version_id"] for v in response.json()["versions"]] == [1]

    @pytest.mark.asyncio
    async def test_recreate_after_delete_is_a_create(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.delete("/fhir/Patient/patient-1", headers=api_headers)

        response = await _create(client, api_headers, patient_resource)
        assert response.json()["version_id"] == 3

        history = await client.get("/fhir/Patient/patient-1/_history", headers=api_headers)
        assert [v["operation"] for v in history.json()["versions"]] == ["create", "delete", "create"]

    @pytest.mark.asyncio
    async def test_history_pagination(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        for _ in range(2):
            await client.put("/fhir/Patient/patient-1", json=patient_resource, headers=api_headers)

        response = await client.get("/fhir/Patient/patient-1/_history?page=2&_count=2", headers=api_headers)
        data = response.json()
        assert data["total_pages"] == 2
        assert data["has_previous_page"] is True
        assert data["has_next_page"] is False
        assert [v["version_id"] for v in data["versions"]] == [1]

    @pytest.mark.asyncio
    async def test_history_missing(self, client, api_headers):
        response = await client.get("/fhir/Patient/missing/_history", headers=api_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_read_specific_version(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.put("/fhir/Patient/patient-1", json=dict(patient_resource, gender="other"), headers=api_headers)

        response = await client.get("/fhir/Patient/patient-1/_history/1", headers=api_headers)

        assert response.status_code == 200
        assert response.headers["ETag"] == 'W/"1"'
        assert response.json()["resource_json"]["gender"] == "female"

        response = await client.get("/fhir/Patient/patient-1/_history/9", headers=api_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_read_deleted_version(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)
        await client.delete("/fhir/Patient/patient-1", headers=api_headers)

        response = await client.get("/fhir/Patient/patient-1/_history/2", headers=api_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "deleted"


class TestSearch:
    """Tests for GET /fhir/{resource_type}."""

    @pytest.mark.asyncio
    async def test_search_by_index_parameter(self, client, api_headers, observation_factory):
        await _create(client, api_headers, observation_factory("obs-1", code="8867-4"))
        await _create(client, api_headers, observation_factory("obs-2", code="2339-0"))

        response = await client.get("/fhir/Observation?code=2339-0", headers=api_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 1
        assert data["resources"][0]["fhir_id"] == "obs-2"

    @pytest.mark.asyncio
    async def test_search_sort_and_page(self, client, api_headers, observation_factory):
        for obs_id in ("obs-b", "obs-a", "obs-c"):
            await _create(client, api_headers, observation_factory(obs_id))

        response = await client.get("/fhir/Observation?_sort=_id&_sortDir=asc&_count=2", headers=api_headers)

        data = response.json()
        assert [r["fhir_id"] for r in data["resources"]] == ["obs-a", "obs-b"]
        assert data["total_count"] == 3
        assert data["has_next_page"] is True

    @pytest.mark.asyncio
    async def test_search_by_patient(self, client, api_headers, observation_factory):
        await _create(client, api_headers, observation_factory("obs-1", patient_id="p1"))
        await _create(client, api_headers, observation_factory("obs-2", patient_id="p2"))

        response = await client.get("/fhir/Observation?patient=Patient/p1", headers=api_headers)
        assert [r["fhir_id"] for r in response.json()["resources"]] == ["obs-1"]

    @pytest.mark.asyncio
    async def test_search_by_bare_patient_id(self, client, api_headers, observation_factory):
        await _create(client, api_headers, observation_factory("obs-1", patient_id="p1"))
        await _create(client, api_headers, observation_factory("obs-2", patient_id="p2"))

        response = await client.get("/fhir/Observation?patient=p2", headers=api_headers)
        assert [r["fhir_id"] for r in response.json()["resources"]] == ["obs-2"]

    @pytest.mark.asyncio
    async def test_search_include_deleted(self, client, api_headers, observation_factory):
        await _create(client, api_headers, observation_factory("obs-1"))
        await client.delete("/fhir/Observation/obs-1", headers=api_headers)

        hidden = await client.get("/fhir/Observation", headers=api_headers)
        shown = await client.get("/fhir/Observation?_includeDeleted=true", headers=api_headers)

        assert hidden.json()["total_count"] == 0
        assert shown.json()["total_count"] == 1

    @pytest.mark.asyncio
    async def test_search_unknown_sort(self, client, api_headers):
        response = await client.get("/fhir/Observation?_sort=resource_json", headers=api_headers)

        assert response.status_code == 400
        issues = response.json()["issue"]
        assert any("Supported sort fields" in issue["diagnostics"] for issue in issues)

    @pytest.mark.asyncio
    async def test_search_invalid_count(self, client, api_headers):
        response = await client.get("/fhir/Observation?_count=0", headers=api_headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_search_non_integer_page(self, client, api_headers):
        response = await client.get("/fhir/Observation?page=first", headers=api_headers)
        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"

    @pytest.mark.asyncio
    async def test_search_unknown_type(self, client, api_headers):
        response = await client.get("/fhir/Spaceship", headers=api_headers)
        assert response.status_code == 400


class TestBundleOperations:
    """Tests for $import-bundle and $export-bundle."""

    @pytest.mark.asyncio
    async def test_import_report(self, client, api_headers, patient_resource, organization_resource, observation_resource):
        bundle = {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [
                {"resource": observation_resource},
                {"resource": patient_resource},
                {"resource": organization_resource},
                {"resource": {"resourceType": "Observation", "id": "bad id"}},
            ],
        }

        response = await client.post("/fhir/$import-bundle", json=bundle, headers=api_headers)

        assert response.status_code == 200
        report = response.json()
        assert report["strategy"] == "CreateOrUpdate"
        assert report["total_processed"] == 4
        assert report["created"] == 3
        assert report["failed_to_import"] == 1
        assert report["errors"][0]["entry_index"] == 3

        read = await client.get("/fhir/Observation/obs-1", headers=api_headers)
        assert read.status_code == 200

    @pytest.mark.asyncio
    async def test_import_legacy_flags(self, client, api_headers, organization_resource):
        await _create(client, api_headers, organization_resource)
        bundle = {"resourceType": "Bundle", "type": "collection", "entry": [{"resource": organization_resource}]}

        response = await client.post("/fhir/$import-bundle?skipExisting=true", json=bundle, headers=api_headers)

        report = response.json()
        assert report["strategy"] == "SkipExisting"
        assert report["skipped"] == 1

    @pytest.mark.asyncio
    async def test_import_explicit_strategy(self, client, api_headers, organization_resource):
        bundle = {"resourceType": "Bundle", "type": "collection", "entry": [{"resource": organization_resource}]}

        response = await client.post("/fhir/$import-bundle?strategy=UpdateOnly", json=bundle, headers=api_headers)

        report = response.json()
        assert report["failed_to_import"] == 1
        assert report["errors"][0]["error_code"] == "RESOURCE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_import_rejects_non_bundle(self, client, api_headers, patient_resource):
        response = await client.post("/fhir/$import-bundle", json=patient_resource, headers=api_headers)

        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"

    @pytest.mark.asyncio
    async def test_export_get(self, client, api_headers, patient_resource, observation_factory):
        await _create(client, api_headers, patient_resource)
        await _create(client, api_headers, observation_factory("obs-1"))
        await _create(client, api_headers, observation_factory("obs-2", code="2339-0"))

        response = await client.get(
            "/fhir/$export-bundle?resourceType=Observation&observationCode=8867-4&bundleType=searchset",
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(FHIR_JSON)
        assert response.headers["X-Export-Resources-Processed"] == "2"
        assert response.headers["X-Export-Resources-Included"] == "1"
        assert response.headers["X-Export-Resources-Excluded"] == "1"
        bundle = response.json()
        assert bundle["resourceType"] == "Bundle"
        assert bundle["type"] == "searchset"
        assert [e["fullUrl"] for e in bundle["entry"]] == ["Observation/obs-1"]

    @pytest.mark.asyncio
    async def test_export_get_by_ids(self, client, api_headers, observation_factory):
        for obs_id in ("obs-1", "obs-2", "obs-3"):
            await _create(client, api_headers, observation_factory(obs_id))

        response = await client.get("/fhir/$export-bundle?fhirIds=obs-1,obs-3", headers=api_headers)

        urls = sorted(e["fullUrl"] for e in response.json()["entry"])
        assert urls == ["Observation/obs-1", "Observation/obs-3"]

    @pytest.mark.asyncio
    async def test_export_get_search_parameters(self, client, api_headers, observation_factory):
        await _create(client, api_headers, observation_factory("obs-1", code="8867-4"))
        await _create(client, api_headers, observation_factory("obs-2", code="2339-0"))

        response = await client.get("/fhir/$export-bundle?resourceType=Observation&code=2339-0", headers=api_headers)
        assert [e["fullUrl"] for e in response.json()["entry"]] == ["Observation/obs-2"]

    @pytest.mark.asyncio
    async def test_export_get_invalid_bundle_type(self, client, api_headers):
        response = await client.get("/fhir/$export-bundle?bundleType=pile", headers=api_headers)

        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"

    @pytest.mark.asyncio
    async def test_export_post(self, client, api_headers, patient_resource):
        await _create(client, api_headers, patient_resource)

        response = await client.post(
            "/fhir/$export-bundle",
            json={"resource_type": "Patient", "include_meta": False},
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.headers["X-Export-Patients-Included"] == "1"
        resource = response.json()["entry"][0]["resource"]
        assert "meta" not in resource

    @pytest.mark.asyncio
    async def test_export_post_invalid_body(self, client, api_headers):
        response = await client.post("/fhir/$export-bundle", json={"page_size": 0}, headers=api_headers)
        assert response.status_code == 400
