"""
Sentry Error Tracking Configuration

Features:
- Automatic error capture with full stack traces
- Breadcrumbs from the standard logging module
- SQLAlchemy and httpx spans
- Environment separation (dev/staging/prod)

Usage:
    from societyhub.monitoring.sentry_config import init_sentry
    
    init_sentry(settings)
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def init_sentry(config: Optional[Settings] = None) -> bool:
    """
    Initialize Sentry error tracking.
    
    Returns:
        True if Sentry was initialised, False when no DSN is configured
    """
    config = config or default_settings
    
    # Skip initialization if no DSN provided (local development)
    if not config.SENTRY_DSN:
        logger.info("Sentry DSN not configured, skipping initialization")
        return False
    
    traces_sample_rate = config.SENTRY_TRACES_SAMPLE_RATE
    if config.ENVIRONMENT == "development":
        traces_sample_rate = 1.0
    
    # Configure logging integration
    logging_integration = LoggingIntegration(
        level=logging.INFO,  # Capture info and above as breadcrumbs
        event_level=logging.ERROR  # Capture error and above as events
    )
    
    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        environment=config.ENVIRONMENT,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            logging_integration,
            AsyncioIntegration(),
            SqlalchemyIntegration(),
            HttpxIntegration(),
        ],
        send_default_pii=False,
    )
    
    logger.info(f"Sentry initialized (environment={config.ENVIRONMENT})")
    return True


def set_user_context(profile_id: Optional[str], society_id: Optional[str] = None) -> None:
    """Attach the signed-in profile to subsequent Sentry events (ids only, no PII)."""
    if profile_id is None:
        sentry_sdk.set_user(None)
        return
    sentry_sdk.set_user({"id": profile_id})
    if society_id:
        sentry_sdk.set_tag("society_id", society_id)
