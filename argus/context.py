"""Service context: the explicitly constructed set of collaborators.

The API, the Celery tasks and the CLI each build one ``ServiceContext`` for
their process (or request scope) instead of reaching for module-level
clients. ``startup`` creates missing tables; ``aclose`` releases held browser
profiles and disposes the connection pool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from argus.config import Settings, settings
from argus.db import build_engine, build_sessionmaker, create_all
from argus.scraper.portal_driver import PortalDriver
from argus.scraper.remote_browser import GoLoginController
from argus.scraper.session_manager import SessionManager
from argus.scraper.store import SessionStore

logger = logging.getLogger("argus.context")


@dataclass
class ServiceContext:
    settings: Settings
    engine: AsyncEngine
    store: SessionStore
    controller: GoLoginController
    driver: PortalDriver
    manager: SessionManager

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        controller: Optional[GoLoginController] = None,
        driver: Optional[PortalDriver] = None,
    ) -> "ServiceContext":
        """Wire the default collaborators; tests pass fakes for the browser side."""
        engine = build_engine(config)
        store = SessionStore(build_sessionmaker(engine))
        controller = controller or GoLoginController(config)
        driver = driver or PortalDriver(config)
        manager = SessionManager(store, controller, driver, config)
        return cls(
            settings=config,
            engine=engine,
            store=store,
            controller=controller,
            driver=driver,
            manager=manager,
        )

    async def startup(self) -> None:
        await create_all(self.engine)
        logger.info("Argus context ready (db=%s)", self.engine.url.render_as_string(hide_password=True))

    async def check_database(self) -> bool:
        """Run ``SELECT 1``; ``False`` if the database is unreachable."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.error("Database health check failed: %s", exc)
            return False

    async def aclose(self) -> None:
        await self.manager.aclose()
        await self.engine.dispose()
        logger.info("Argus context closed")
