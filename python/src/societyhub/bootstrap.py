"""
Application composition root.

Builds every component once and hands them to each other explicitly:

    async with SocietyHub.create(settings) as hub:
        profile = await hub.identity.sign_in(email, secret)
        await hub.occupancy.assign_resident(profile.id, "tenant", flat_number="A-101")

Startup:
- Logging and (optional) Sentry
- Table creation in development
- Initial session probe of the identity store

Shutdown closes the store, the auth HTTP client and the database engine.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .core.config import Settings, settings as default_settings
from .core.logging import configure_logging
from .monitoring.sentry_config import init_sentry
from .persistence.database import close_db, create_engine, create_session_maker, init_db
from .persistence.gateway import RecordGateway
from .persistence.sql_gateway import SQLRecordGateway
from .services.auth_provider import AuthProvider, SupabaseAuthProvider
from .services.identity_store import IdentityStore
from .services.occupancy import OccupancyCoordinator
from .services.session_resolver import SessionResolver

logger = logging.getLogger(__name__)


class SocietyHub:
    """Owns the engine, gateway, auth provider and the three core services."""

    def __init__(
        self,
        config: Settings,
        gateway: RecordGateway,
        auth: AuthProvider,
        engine: Optional[AsyncEngine] = None,
    ):
        self.config = config
        self.engine = engine
        self.gateway = gateway
        self.auth = auth
        self.resolver = SessionResolver(gateway, auth, config)
        self.identity = IdentityStore(self.resolver, auth, config)
        self.occupancy = OccupancyCoordinator(gateway, self.resolver, config)

    @classmethod
    def create(
        cls,
        config: Optional[Settings] = None,
        auth: Optional[AuthProvider] = None,
    ) -> "SocietyHub":
        """
        Build the application from settings.

        Args:
            config: Settings (defaults to the environment)
            auth: Auth provider override; defaults to Supabase from settings
        """
        config = config or default_settings
        engine = create_engine(config)
        gateway = SQLRecordGateway(create_session_maker(engine), config=config)
        auth = auth or SupabaseAuthProvider.from_settings(config)
        return cls(config, gateway, auth, engine=engine)

    async def start(self) -> None:
        configure_logging(self.config)
        init_sentry(self.config)
        logger.info(f"Starting societyhub (environment={self.config.ENVIRONMENT})")

        if self.engine is not None and self.config.ENVIRONMENT == "development":
            await init_db(self.engine)

        snapshot = await self.identity.initialize()
        logger.info(f"Identity store initialised in state {snapshot.state}")

    async def stop(self) -> None:
        logger.info("Shutting down societyhub...")
        await self.identity.close()
        await self.auth.close()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("Shutdown complete")

    async def __aenter__(self) -> "SocietyHub":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
