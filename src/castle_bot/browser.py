"""
Playwright browser session.

A persistent Chromium context backed by ``user_data_dir`` so the login
survives restarts. Callers own the session and must close it (or use it as
an async context manager).
"""

from pathlib import Path
from typing import Optional, Any, List

from playwright.async_api import async_playwright, BrowserContext, Page, Playwright, Route

from castle_bot.config import BrowserConfig
from castle_bot.logging import get_logger

logger = get_logger(__name__)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})

# Needed to run headless Chromium inside containers
HEADLESS_ARGS: List[str] = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]


def launch_args(headless: bool) -> List[str]:
    return list(HEADLESS_ARGS) if headless else []


async def _block_media(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class BrowserSession:
    """Owns the Playwright driver, the persistent context and its page."""

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig()
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session not started")
        return self._page

    @property
    def context(self) -> Optional[BrowserContext]:
        return self._context

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> Page:
        """Launch the persistent context and return its first page."""
        profile_path = Path(self.config.user_data_dir).expanduser()
        profile_path.mkdir(parents=True, exist_ok=True)

        logger.info("Launching browser", profile=str(profile_path), headless=self.config.headless)

        self._playwright = await async_playwright().start()
        try:
            self._context = await self._playwright.chromium.launch_persistent_context(
                str(profile_path),
                headless=self.config.headless,
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
                locale="en-US",
                args=launch_args(self.config.headless),
            )
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise

        self._page = self._context.pages[0] if self._context.pages else await self._context.new_page()

        if self.config.block_media:
            await self._page.route("**/*", _block_media)
            logger.info("Media blocking enabled", types=sorted(BLOCKED_RESOURCE_TYPES))

        return self._page

    async def close(self) -> None:
        """Dispose of the context and the driver."""
        try:
            if self._context is not None:
                await self._context.close()
        except Exception as e:
            logger.warning("Error closing browser context", error=str(e))
        finally:
            self._context = None
            self._page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser closed")
