"""
Startup configuration validation module.

Catches misconfigurations early (fail-fast) rather than at runtime when a
user tries to book or send a message.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    try:
        validate_startup_config()
    except StartupValidationError as e:
        logger.critical(f"Startup blocked: {e}")
        raise
"""

import logging

from shared.config import get_settings

logger = logging.getLogger(__name__)

PLACEHOLDER_JWT_SECRET = "change-this-jwt-secret"
MIN_JWT_SECRET_LENGTH = 32


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


def validate_startup_config() -> dict[str, bool]:
    """
    Validate configuration at startup.

    Performs tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup (WhatsApp and Google
      features are unavailable until configured)

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    if settings.JWT_SECRET == PLACEHOLDER_JWT_SECRET:
        critical_failures.append(
            "JWT_SECRET is default placeholder - generate one with: openssl rand -hex 32"
        )
        results["jwt_secret"] = False
    elif len(settings.JWT_SECRET) < MIN_JWT_SECRET_LENGTH:
        logger.warning(
            f"JWT_SECRET is shorter than {MIN_JWT_SECRET_LENGTH} characters - use a longer secret"
        )
        results["jwt_secret"] = True
    else:
        results["jwt_secret"] = True
        logger.info("  [OK] JWT secret configured")

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    if settings.EVOLUTION_API_KEY == "placeholder":
        logger.warning("  [WARN] EVOLUTION_API_KEY is placeholder - WhatsApp messaging disabled")
        results["evolution_api_key"] = False
    else:
        results["evolution_api_key"] = True
        logger.info("  [OK] Evolution API key configured")

    if "placeholder" in (settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET):
        logger.warning(
            "  [WARN] GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET are placeholders - "
            "Google Calendar sync disabled"
        )
        results["google_oauth_client"] = False
    else:
        results["google_oauth_client"] = True
        logger.info("  [OK] Google OAuth client configured")

    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        logger.warning(
            "DATABASE_URL should use asyncpg driver: postgresql+asyncpg://..."
        )
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results
