"""
API tests for /api/services.

The session dependency is overridden with a fixed SessionContext and the
database session is a mock yielded by the patched get_async_session.
"""

from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from api.main import app
from api.security import get_session_context

ROUTES = "api.routes.services"
CREATED_AT = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def client(ctx):
    app.dependency_overrides[get_session_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stored_service(ctx):
    return SimpleNamespace(
        id=uuid4(),
        user_id=ctx.tenant_id,
        name="Corte",
        duration_minutes=30,
        price=Decimal("50.00"),
        created_at=CREATED_AT,
    )


def _returning(mock_session, *rows):
    result = MagicMock()
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    result.scalars.return_value.all.return_value = list(rows)
    mock_session.execute.return_value = result


def _stamp(obj):
    obj.id = obj.id or uuid4()
    obj.created_at = CREATED_AT


class TestListAndCreate:
    def test_list_scoped_to_tenant(self, client, ctx, mock_session, session_factory, stored_service):
        _returning(mock_session, stored_service)

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.get("/api/services")

        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["price"] == "50.00"
        query = mock_session.execute.await_args.args[0]
        assert ctx.tenant_id in query.compile().params.values()

    def test_create(self, client, ctx, mock_session, session_factory):
        mock_session.refresh.side_effect = _stamp

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.post(
                "/api/services",
                json={"name": "Escova", "duration_minutes": 45, "price": "70.00"},
            )

        assert response.status_code == 201
        assert response.json()["duration_minutes"] == 45
        added = mock_session.add.call_args.args[0]
        assert added.user_id == ctx.tenant_id
        mock_session.commit.assert_awaited_once()

    @pytest.mark.parametrize(
        "body",
        [
            {"name": "Escova", "duration_minutes": 0, "price": "70.00"},
            {"name": "Escova", "duration_minutes": 45, "price": "-1"},
        ],
        ids=["zero-duration", "negative-price"],
    )
    def test_invalid_values_are_400(self, client, mock_session, session_factory, body):
        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.post("/api/services", json=body)

        assert response.status_code == 400
        mock_session.add.assert_not_called()


class TestUpdate:
    def test_price_and_duration_change_touches_only_the_service(
        self, client, mock_session, session_factory, stored_service
    ):
        _returning(mock_session, stored_service)

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.put(
                f"/api/services/{stored_service.id}",
                json={"duration_minutes": 60, "price": "90.00"},
            )

        assert response.status_code == 200
        assert response.json()["duration_minutes"] == 60
        assert response.json()["price"] == "90.00"
        assert stored_service.name == "Corte"
        # Only the ownership lookup runs; no statement rewrites appointments
        assert mock_session.execute.await_count == 1

    def test_unknown_service_is_404(self, client, mock_session, session_factory):
        _returning(mock_session)

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.put(f"/api/services/{uuid4()}", json={"price": "10.00"})

        assert response.status_code == 404
        mock_session.commit.assert_not_awaited()


class TestDelete:
    def test_unreferenced_service_deleted(self, client, mock_session, session_factory, stored_service):
        _returning(mock_session, stored_service)

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.delete(f"/api/services/{stored_service.id}")

        assert response.status_code == 204
        mock_session.delete.assert_awaited_once_with(stored_service)

    def test_referenced_service_is_409(self, client, mock_session, session_factory, stored_service):
        _returning(mock_session, stored_service)
        mock_session.commit.side_effect = IntegrityError(
            "DELETE FROM services ...", {}, Exception("violates foreign key constraint")
        )

        with patch(f"{ROUTES}.get_async_session", session_factory(mock_session)):
            response = client.delete(f"/api/services/{stored_service.id}")

        assert response.status_code == 409
        assert response.json() == {
            "error": "CONFLICT",
            "message": "Service is used by existing appointments",
            "details": {"service_id": str(stored_service.id)},
        }
        mock_session.rollback.assert_awaited_once()
