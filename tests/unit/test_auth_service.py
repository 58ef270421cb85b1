"""Unit tests for booking/services/auth_service.py."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from booking.errors import ConflictError, ExternalServiceError, ValidationError
from booking.services.auth_service import hash_password, signup, verify_password
from database.models import UserRole

MODULE = "booking.services.auth_service"


def _result(scalar_one_or_none=None, scalar=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar_one_or_none
    result.scalar.return_value = scalar
    return result


class TestPasswords:
    def test_hash_verifies(self):
        hashed = hash_password("Agenda#2024")

        assert hashed != "Agenda#2024"
        assert verify_password("Agenda#2024", hashed)
        assert not verify_password("agenda#2024", hashed)

    def test_malformed_hash_never_matches(self):
        assert verify_password("Agenda#2024", "not-a-bcrypt-hash") is False


class TestSignup:
    @pytest.mark.asyncio
    async def test_first_account_becomes_admin(self, mock_session, session_factory):
        mock_session.execute.side_effect = [_result(None), _result(scalar=0)]

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.seed_default_templates", AsyncMock()) as mock_seed, \
             patch(f"{MODULE}.ensure_instance", AsyncMock()):
            result = await signup("  Ana@Example.com ", "Agenda#2024", "Ana")

        assert result.user.email == "ana@example.com"
        assert result.user.role == UserRole.ADMIN
        assert result.warnings == []
        mock_seed.assert_awaited_once()
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_later_accounts_are_professionals(self, mock_session, session_factory):
        mock_session.execute.side_effect = [_result(None), _result(scalar=3)]

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.seed_default_templates", AsyncMock()), \
             patch(f"{MODULE}.ensure_instance", AsyncMock()):
            result = await signup("bruno@example.com", "Agenda#2024")

        assert result.user.role == UserRole.PROFESSIONAL

    @pytest.mark.asyncio
    async def test_instance_failure_is_a_warning(self, mock_session, session_factory):
        mock_session.execute.side_effect = [_result(None), _result(scalar=1)]

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)), \
             patch(f"{MODULE}.seed_default_templates", AsyncMock()), \
             patch(
                 f"{MODULE}.ensure_instance",
                 AsyncMock(side_effect=ExternalServiceError("Could not create WhatsApp instance")),
             ):
            result = await signup("bruno@example.com", "Agenda#2024")

        assert result.user.email == "bruno@example.com"
        assert result.warnings == [
            "WhatsApp instance could not be created; create it later in Settings"
        ]

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, mock_session, session_factory):
        mock_session.execute.side_effect = [_result("existing-id")]

        with patch(f"{MODULE}.get_async_session", session_factory(mock_session)):
            with pytest.raises(ConflictError):
                await signup("ana@example.com", "Agenda#2024")

        mock_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_weak_password_lists_problems(self):
        with pytest.raises(ValidationError) as exc_info:
            await signup("ana@example.com", "fraca")

        assert "one uppercase letter" in exc_info.value.details["password"]

    @pytest.mark.asyncio
    async def test_invalid_email(self):
        with pytest.raises(ValidationError):
            await signup("not-an-email", "Agenda#2024")
