from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from webengine.apps.api.main import create_app
from webengine.tests.utils.auth import create_test_user, login


async def _submit_project(client: AsyncClient, headers: dict[str, str], title: str) -> int:
    response = await client.post(
        "/v1/portfolio/projects",
        json={"title": title, "description": "Brand refresh", "media": ["cover.png"]},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    project_id = response.json()["data"]["id"]
    response = await client.post(f"/v1/portfolio/projects/{project_id}/submit", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "pending"
    return project_id


@pytest.mark.asyncio
async def test_project_moderation_flow() -> None:
    # A client submits, staff approves, and the client publishes the project.
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="studio_client", role="client")
    await create_test_user(username="studio_mod", role="employee")

    async with AsyncClient(transport=transport, base_url="http://test") as client_http, AsyncClient(
        transport=transport, base_url="http://test"
    ) as mod_http:
        client_headers = await login(client_http, "studio_client")
        mod_headers = await login(mod_http, "studio_mod")

        project_id = await _submit_project(client_http, client_headers, "Coffee shop site")

        response = await client_http.get("/v1/moderation/projects")
        assert response.status_code == 403

        response = await mod_http.get("/v1/moderation/projects")
        queue = response.json()["data"]
        assert queue["total"] == 1
        assert queue["items"][0]["id"] == project_id

        response = await client_http.patch(
            f"/v1/portfolio/projects/{project_id}",
            json={"title": "Edited while pending"},
            headers=client_headers,
        )
        assert response.status_code == 409

        response = await mod_http.post(
            f"/v1/moderation/projects/{project_id}",
            json={"action": "approve", "notes": "Great work"},
            headers=mod_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "published"

        response = await mod_http.post(
            f"/v1/moderation/projects/{project_id}",
            json={"action": "reject", "notes": "Changed my mind"},
            headers=mod_headers,
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"

        response = await client_http.post(
            f"/v1/portfolio/projects/{project_id}/toggle-visibility", headers=client_headers
        )
        assert response.json()["data"]["visibility"] == "public"

    async with AsyncClient(transport=transport, base_url="http://test") as anonymous:
        response = await anonymous.get("/v1/public/projects")
        assert [item["id"] for item in response.json()["data"]["items"]] == [project_id]
        response = await anonymous.get(f"/v1/portfolio/projects/{project_id}")
        assert response.status_code == 200
        assert response.json()["data"]["moderation_notes"] == "Great work"


@pytest.mark.asyncio
async def test_bulk_moderation_reports_partial_failures() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="bulk_client", role="client")
    await create_test_user(username="bulk_admin", role="admin")

    async with AsyncClient(transport=transport, base_url="http://test") as client_http, AsyncClient(
        transport=transport, base_url="http://test"
    ) as admin_http:
        client_headers = await login(client_http, "bulk_client")
        admin_headers = await login(admin_http, "bulk_admin")
        first = await _submit_project(client_http, client_headers, "First project")
        second = await _submit_project(client_http, client_headers, "Second project")

        response = await admin_http.post(
            "/v1/moderation/projects/bulk",
            json={"project_ids": [first, second, 777], "action": "reject", "notes": "Needs screenshots"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed_count"] == 2
        assert data["errors"] == ["Project ID 777 not found"]
        assert data["message"] == "Processed 2 projects successfully"

        response = await admin_http.post(
            "/v1/moderation/projects/bulk",
            json={"project_ids": [first], "action": "archive"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid moderation action"

        response = await admin_http.get("/v1/moderation/stats")
        stats = response.json()["data"]
        assert stats["projects"]["rejected"] == 2
        assert stats["pending_projects"] == 0

        response = await client_http.get("/v1/portfolio/projects")
        items = response.json()["data"]["items"]
        assert {item["status"] for item in items} == {"rejected"}
        assert {item["moderation_notes"] for item in items} == {"Needs screenshots"}


@pytest.mark.asyncio
async def test_foreign_project_is_access_denied() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    await create_test_user(username="owner_client", role="client")
    await create_test_user(username="nosy_client", role="client")

    async with AsyncClient(transport=transport, base_url="http://test") as owner_http, AsyncClient(
        transport=transport, base_url="http://test"
    ) as nosy_http:
        owner_headers = await login(owner_http, "owner_client")
        nosy_headers = await login(nosy_http, "nosy_client")
        response = await owner_http.post("/v1/portfolio/projects", json={"title": "Secret"}, headers=owner_headers)
        project_id = response.json()["data"]["id"]

        foreign = await nosy_http.delete(f"/v1/portfolio/projects/{project_id}", headers=nosy_headers)
        missing = await nosy_http.delete("/v1/portfolio/projects/99999", headers=nosy_headers)

    assert foreign.status_code == missing.status_code == 403
    assert foreign.json()["error"]["message"] == missing.json()["error"]["message"] == "Access denied"
