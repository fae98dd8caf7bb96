"""
Escalating recovery.

Recovery actions form an ordered list, from least to most invasive. The
engine walks the list once per call and stops at the first action that
reports success. ``with_recovery`` wraps any fallible step so that it either
produces a value or the supplied default; it never raises.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable, TypeVar, Any, Awaitable, Sequence, List

from castle_bot.config import RecoveryConfig
from castle_bot.logging import get_logger
from castle_bot.resilience import call_maybe_async, wait_with_early_exit

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RecoveryAction:
    """A named recovery step. ``execute`` returns True if it helped."""

    name: str
    execute: Callable[[Any], Awaitable[bool]]


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of one escalation pass."""

    success: bool
    strategy_used: str
    message: str


FailureHook = Callable[[RecoveryAction, str], Any]


async def escalating_recovery(
    ctx: Any,
    actions: Sequence[RecoveryAction],
    on_failure: Optional[FailureHook] = None,
) -> RecoveryResult:
    """
    Try each recovery action in order until one succeeds.

    Each action runs at most once. An action that raises is treated as a
    failure, reported to ``on_failure`` and followed by the next action.

    Args:
        ctx: Session context passed to every action
        actions: Ordered recovery actions, least invasive first
        on_failure: Optional hook called as ``on_failure(action, message)``

    Returns:
        RecoveryResult naming the action that worked, or strategy "none"
    """
    for position, action in enumerate(actions):
        logger.info("Attempting recovery", strategy=action.name, tier=position + 1, tiers=len(actions))

        try:
            ok = bool(await action.execute(ctx))
            message = "reported failure"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            message = str(e) or type(e).__name__

        if ok:
            logger.info("Recovery succeeded", strategy=action.name)
            return RecoveryResult(success=True, strategy_used=action.name, message=f"Recovered with {action.name}")

        logger.warning("Recovery action failed", strategy=action.name, error=message)
        if on_failure is not None:
            try:
                await call_maybe_async(on_failure, action, message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Recovery failure hook raised", strategy=action.name, error=str(e))

    logger.error("All recovery strategies exhausted", tiers=len(actions))
    return RecoveryResult(success=False, strategy_used="none", message="All recovery strategies exhausted")


async def with_recovery(
    ctx: Any,
    action: Callable[[], Awaitable[T]],
    recovery_actions: Sequence[RecoveryAction],
    default: T,
    name: str = "action",
    on_failure: Optional[FailureHook] = None,
) -> T:
    """
    Run ``action``; on failure recover once and retry it exactly once.

    Returns the action's value, or ``default`` when the action fails and
    recovery does not help. Never raises (cancellation still propagates).
    """
    try:
        return await action()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Step failed, attempting recovery", step=name, error=str(e))

    recovery = await escalating_recovery(ctx, recovery_actions, on_failure)
    if not recovery.success:
        logger.warning("Recovery failed, using default", step=name)
        return default

    try:
        return await action()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Step failed after recovery, using default", step=name, error=str(e))
        return default


# Page-level helpers

async def dismiss_overlays(page: Any, selectors: Sequence[str], settle_ms: int = 500) -> int:
    """
    Click every visible dismiss button.

    Returns:
        Number of overlays dismissed
    """
    dismissed = 0
    for selector in selectors:
        try:
            locator = page.locator(selector).first
            if await locator.is_visible():
                await locator.click()
                dismissed += 1
                logger.debug("Dismissed overlay", selector=selector)
                await asyncio.sleep(settle_ms / 1000)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Overlay dismissal skipped", selector=selector, error=str(e))
    return dismissed


async def any_visible(page: Any, selectors: Sequence[str]) -> bool:
    """True if any selector matches a visible element. Lookup errors count as not visible."""
    for selector in selectors:
        try:
            if await page.locator(selector).first.is_visible():
                return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Visibility probe failed", selector=selector, error=str(e))
    return False


async def force_refresh(page: Any, config: RecoveryConfig) -> None:
    """Reload the page to drop cached DOM state."""
    logger.warning("Forcing page refresh")
    await page.reload(wait_until="domcontentloaded", timeout=config.navigation_timeout_ms)
    await asyncio.sleep(config.wait_ms / 1000)
    await dismiss_overlays(page, config.popup_selectors, config.settle_ms)


def create_recovery_actions(config: Optional[RecoveryConfig] = None) -> List[RecoveryAction]:
    """
    Build the canonical recovery ladder for a Playwright page.

    dismiss_overlay, wait_and_retry, reload_page, navigate_home, full_reset
    """
    config = config or RecoveryConfig()
    wait_s = config.wait_ms / 1000

    async def dismiss_overlay(page: Any) -> bool:
        await dismiss_overlays(page, config.popup_selectors, config.settle_ms)
        await asyncio.sleep(config.settle_ms / 1000)
        return True

    async def wait_and_retry(page: Any) -> bool:
        async def overlays_gone() -> bool:
            return not await any_visible(page, config.popup_selectors)

        await wait_with_early_exit(overlays_gone, config.wait_ms, interval_ms=min(500, config.wait_ms))
        await dismiss_overlays(page, config.popup_selectors, config.settle_ms)
        return True

    async def reload_page(page: Any) -> bool:
        await page.reload(wait_until="networkidle", timeout=config.navigation_timeout_ms)
        await asyncio.sleep(wait_s)
        await dismiss_overlays(page, config.popup_selectors, config.settle_ms)
        return True

    async def navigate_home(page: Any) -> bool:
        await page.goto(config.home_url, wait_until="networkidle", timeout=config.navigation_timeout_ms)
        await asyncio.sleep(wait_s)
        await dismiss_overlays(page, config.popup_selectors, config.settle_ms)
        return True

    async def full_reset(page: Any) -> bool:
        await page.context.clear_cookies()
        await page.goto(config.home_url, wait_until="networkidle", timeout=config.navigation_timeout_ms)
        await asyncio.sleep(wait_s)
        return True

    return [
        RecoveryAction("dismiss_overlay", dismiss_overlay),
        RecoveryAction("wait_and_retry", wait_and_retry),
        RecoveryAction("reload_page", reload_page),
        RecoveryAction("navigate_home", navigate_home),
        RecoveryAction("full_reset", full_reset),
    ]


class RecoveryRecorder:
    """
    ``on_failure`` hook that records failed recovery tiers.

    Optionally saves a screenshot and the page HTML for each failed tier so
    the page state can be inspected afterwards.
    """

    def __init__(
        self,
        page: Any = None,
        metrics: Any = None,
        debug_dir: Optional[Path] = None,
    ):
        self.page = page
        self.metrics = metrics
        self.debug_dir = debug_dir
        self.failures: List[str] = []

    async def __call__(self, action: RecoveryAction, message: str) -> None:
        self.failures.append(action.name)

        if self.metrics is not None:
            self.metrics.recovery(action.name, success=False, error=message)

        if self.page is not None and self.debug_dir is not None:
            await save_debug_context(self.page, f"recovery-failed-{action.name}", self.debug_dir)


async def save_debug_context(page: Any, label: str, directory: Path) -> Optional[Path]:
    """Write a screenshot and the page HTML next to each other; never raises."""
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    base = directory / f"{stamp}-{label}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(base.with_suffix(".png")), full_page=True)
        base.with_suffix(".html").write_text(await page.content(), encoding="utf-8")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("Failed to save debug context", label=label, error=str(e))
        return None
    logger.info("Saved debug context", path=str(base))
    return base
