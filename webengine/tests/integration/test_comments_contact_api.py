from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from webengine.apps.api.main import create_app
from webengine.domain.models import Article
from webengine.persistence.db import SessionLocal
from webengine.providers.mail.factory import get_mail_transport
from webengine.providers.mail.fake_mail import FakeMailTransport
from webengine.tests.utils.auth import create_test_user, fetch_csrf_token, login


async def _create_article() -> int:
    async with SessionLocal() as session:
        article = Article(title="Studio news", slug="studio-news", body="We moved offices.")
        session.add(article)
        await session.commit()
        return article.id


@pytest.mark.asyncio
async def test_comments_wait_for_moderation_before_showing() -> None:
    # Reader comments stay hidden until a moderator approves them.
    app = create_app()
    transport = ASGITransport(app=app)
    article_id = await _create_article()
    await create_test_user(username="comment_reader")
    await create_test_user(username="comment_mod", role="employee")

    async with AsyncClient(transport=transport, base_url="http://test") as reader_http, AsyncClient(
        transport=transport, base_url="http://test"
    ) as mod_http:
        reader_headers = await login(reader_http, "comment_reader")
        mod_headers = await login(mod_http, "comment_mod")

        response = await reader_http.post(
            "/v1/comments",
            json={"target_type": "article", "target_id": article_id, "content": "Congrats on the move!"},
            headers=reader_headers,
        )
        assert response.status_code == 201
        comment_id = response.json()["data"]["id"]
        assert response.json()["data"]["is_approved"] is False

        response = await reader_http.get(f"/v1/comments/article/{article_id}")
        assert response.json()["data"]["items"] == []

        response = await mod_http.get("/v1/moderation/comments")
        assert [item["id"] for item in response.json()["data"]["items"]] == [comment_id]

        response = await mod_http.post(
            f"/v1/moderation/comments/{comment_id}",
            json={"action": "reject"},
            headers=mod_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Rejection reason is required"

        response = await mod_http.post(
            f"/v1/moderation/comments/{comment_id}",
            json={"action": "approve"},
            headers=mod_headers,
        )
        assert response.json()["data"]["is_approved"] is True

        response = await reader_http.get(f"/v1/comments/article/{article_id}")
        items = response.json()["data"]["items"]
        assert [item["id"] for item in items] == [comment_id]

        response = await reader_http.delete(f"/v1/comments/{comment_id}", headers=reader_headers)
        assert response.json()["data"]["status"] == "deleted"
        response = await reader_http.get(f"/v1/comments/article/{article_id}")
        assert response.json()["data"]["items"] == []


@pytest.mark.asyncio
async def test_contact_form_relays_to_admin() -> None:
    app = create_app()
    transport = FakeMailTransport()
    app.dependency_overrides[get_mail_transport] = lambda: transport

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/contact",
            json={"name": "Ann", "email": "ann@example.test", "subject": "Quote", "message": "Need a new site."},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Thank you for your message. We will get back to you soon!"

        response = await client.post(
            "/v1/contact",
            json={"name": "Ann", "email": "", "subject": "Quote", "message": "Need a new site."},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 400

        response = await client.post(
            "/v1/contact",
            json={"name": "Ann", "email": "ann@example.test", "subject": "Quote\r\nBcc: x@example.test", "message": "Hi"},
            headers={"X-CSRF-Token": token},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Name and subject must be a single line."

    (message,) = transport.outbox
    assert message.template == "contact_form"
    assert message.headers["Reply-To"] == "ann@example.test"


@pytest.mark.asyncio
async def test_contact_form_reports_mail_outage() -> None:
    app = create_app()
    app.dependency_overrides[get_mail_transport] = lambda: FakeMailTransport(fail=True)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await fetch_csrf_token(client)
        response = await client.post(
            "/v1/contact",
            json={"name": "Ann", "email": "ann@example.test", "subject": "Quote", "message": "Need a new site."},
            headers={"X-CSRF-Token": token},
        )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "MAIL_UNAVAILABLE"
