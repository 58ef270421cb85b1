"""API tests for /api/clients."""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.security import get_session_context

ROUTES = "api.routes.clients"


@pytest.fixture
def client(ctx):
    app.dependency_overrides[get_session_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def maria(ctx):
    return SimpleNamespace(
        id=uuid4(),
        user_id=ctx.tenant_id,
        name="Maria Souza",
        email="maria@example.com",
        phone="(11) 98765-4321",
        created_at=datetime(2024, 1, 2, 9, 0, tzinfo=UTC),
    )


def _returning(mock_session, *rows):
    result = MagicMock()
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    result.scalars.return_value.all.return_value = list(rows)
    mock_session.execute.return_value = result


def test_search_matches_name_email_or_phone(client, ctx, mock_session, session_factory, maria):
    _returning(mock_session, maria)

    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.get("/api/clients", params={"search": "maria"})

    assert response.status_code == 200
    assert response.json()["items"][0]["phone"] == "(11) 98765-4321"
    params = mock_session.execute.await_args.args[0].compile().params
    assert ctx.tenant_id in params.values()
    assert list(params.values()).count("%maria%") == 3


def test_create_assigns_tenant(client, ctx, mock_session, session_factory):
    def stamp(obj):
        obj.id = uuid4()
        obj.created_at = datetime(2024, 1, 2, tzinfo=UTC)

    mock_session.refresh.side_effect = stamp

    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.post("/api/clients", json={"name": "João", "phone": "11987654321"})

    assert response.status_code == 201
    assert response.json()["name"] == "João"
    assert response.json()["email"] is None
    assert mock_session.add.call_args.args[0].user_id == ctx.tenant_id


def test_create_without_name_is_400(client, mock_session, session_factory):
    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.post("/api/clients", json={"phone": "11987654321"})

    assert response.status_code == 400
    mock_session.add.assert_not_called()


def test_update_keeps_name_when_null_and_clears_email(client, mock_session, session_factory, maria):
    _returning(mock_session, maria)

    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.put(f"/api/clients/{maria.id}", json={"name": None, "email": None})

    assert response.status_code == 200
    assert maria.name == "Maria Souza"
    assert maria.email is None
    mock_session.commit.assert_awaited_once()


def test_other_tenants_client_is_404(client, mock_session, session_factory):
    _returning(mock_session)

    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.get(f"/api/clients/{uuid4()}")

    assert response.status_code == 404


def test_delete(client, mock_session, session_factory, maria):
    _returning(mock_session, maria)

    with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
        response = client.delete(f"/api/clients/{maria.id}")

    assert response.status_code == 204
    mock_session.delete.assert_awaited_once_with(maria)
    mock_session.commit.assert_awaited_once()
