"""
Page health checks.

A health check never raises: every probe that fails to evaluate counts as
"not visible" / "not matching", and all problems are collected into one
result so the caller sees the full picture.
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any, Callable, Awaitable, Dict, List

from castle_bot.config import HealthConfig
from castle_bot.logging import get_logger

logger = get_logger(__name__)


class View(str, Enum):
    """Overview pages the loop navigates between."""

    BUILDINGS = "buildings"
    RECRUITMENT = "recruitment"
    TRADING = "trading"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check."""

    healthy: bool
    issues: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_issues(cls, issues: List[str], **context: Any) -> "HealthCheckResult":
        return cls(healthy=not issues, issues=list(issues), context=context)


HealthChecker = Callable[[Any], Awaitable[HealthCheckResult]]


async def _is_visible(page: Any, selector: str) -> bool:
    try:
        return bool(await page.locator(selector).first.is_visible())
    except asyncio.CancelledError:
        raise
    except Exception:
        return False


async def _text_of(page: Any, selector: str) -> str:
    try:
        text = await page.locator(selector).first.text_content()
    except asyncio.CancelledError:
        raise
    except Exception:
        return ""
    return (text or "").strip()


class PageHealthChecker:
    """
    Health checker for a Playwright-like page.

    Evaluates all four probes on every call:
    URL pattern, blocking overlays, expected view marker, error indicators.
    """

    def __init__(self, config: Optional[HealthConfig] = None, expected_view: Optional[View] = None):
        self.config = config or HealthConfig()
        self.expected_view = expected_view
        self._url_patterns = [re.compile(p) for p in self.config.url_patterns]

    def for_view(self, view: Optional[View]) -> "PageHealthChecker":
        """Checker with the same configuration and a different expected view."""
        return PageHealthChecker(self.config, expected_view=view)

    async def __call__(self, page: Any) -> HealthCheckResult:
        issues: List[str] = []

        try:
            url = str(page.url)
        except Exception:
            url = ""

        if not self.is_on_game_page(url):
            issues.append(f"Not on game page (URL: {url})")

        if await self.has_blocking_overlay(page):
            issues.append("Blocking overlay detected")

        if self.expected_view is not None and not await self.has_view_marker(page, self.expected_view):
            issues.append(f"Expected {self.expected_view.value} view not found")

        error = await self.find_error_state(page)
        if error:
            issues.append(f"Error state: {error}")

        view = self.expected_view.value if self.expected_view else None
        return HealthCheckResult.from_issues(issues, url=url, expected_view=view)

    def is_on_game_page(self, url: str) -> bool:
        return any(p.search(url) for p in self._url_patterns)

    async def has_blocking_overlay(self, page: Any) -> bool:
        for selector in self.config.overlay_selectors:
            if await _is_visible(page, selector):
                return True
        return False

    async def has_view_marker(self, page: Any, view: View) -> bool:
        selector = self.config.view_selectors.get(view.value)
        if not selector:
            return True
        return await _is_visible(page, selector)

    async def find_error_state(self, page: Any) -> Optional[str]:
        """Return "<type>: <text>" for the first visible error indicator."""
        for selector, error_type in self.config.error_selectors.items():
            if await _is_visible(page, selector):
                return f"{error_type}: {await _text_of(page, selector)}"
        return None


async def check_health(
    page: Any,
    expected_view: Optional[View] = None,
    config: Optional[HealthConfig] = None,
) -> HealthCheckResult:
    """Run a single health check against a page."""
    return await PageHealthChecker(config, expected_view)(page)


async def wait_for_healthy(
    ctx: Any,
    checker: HealthChecker,
    max_attempts: int = 3,
    delay_ms: int = 1000,
) -> HealthCheckResult:
    """
    Re-run the full check until healthy or attempts run out.

    Returns the last result whether or not it converged; callers must branch
    on ``.healthy``. A checker that raises yields an unhealthy result for
    that attempt.

    Args:
        ctx: Session context handed to the checker
        checker: Health checker callable
        max_attempts: Number of checks to run at most
        delay_ms: Delay between attempts (not after the last one)
    """
    result = HealthCheckResult(healthy=False, issues=["Not checked"])

    for attempt in range(max_attempts):
        try:
            result = await checker(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = HealthCheckResult(healthy=False, issues=[f"Health check raised: {e}"])

        if result.healthy:
            return result

        if attempt < max_attempts - 1:
            logger.info(
                "Unhealthy, retrying check",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                issues=result.issues,
            )
            await asyncio.sleep(delay_ms / 1000)

    return result
