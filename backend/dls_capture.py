"""Drive the DLS map site with Playwright and capture a screenshot.

One browser per call: launch -> navigate -> select the known form
fields -> wait for the map -> full-page screenshot -> close.
"""

from __future__ import annotations

import base64
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Callable

from playwright.async_api import Browser, Page, Playwright, async_playwright

log = logging.getLogger("dls_capture")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TARGET_URL = "https://maps.dls.gov.jo/dlsweb/"

# Enumeration order matters: each select narrows the next one on the page.
SELECTORS: dict[str, str] = {
    "governorate": "#form-gov-select",
    "directorate": "#form-directorate-select",
    "village": "#form-village-select",
    "basin": "#form-hode-select",
    "sector": "#form-sector-select",
    "parcel": "#form-parcel-select",
}

VIEWPORT = {"width": 1920, "height": 1080}
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1920,1080",
]


@dataclass(frozen=True)
class CaptureSettings:
    target_url: str = TARGET_URL
    executable_path: str | None = None
    settle_ms: int = 3_000
    field_delay_ms: int = 500
    render_ms: int = 5_000
    timeout_ms: int = 60_000
    select_timeout_ms: int = 5_000

    @classmethod
    def from_env(cls) -> CaptureSettings:
        """Read overrides from the process environment."""
        return cls(
            target_url=os.getenv("DLS_TARGET_URL", TARGET_URL),
            executable_path=os.getenv("BROWSER_EXECUTABLE_PATH")
                or os.getenv("PUPPETEER_EXECUTABLE_PATH")
                or None,
            settle_ms=int(os.getenv("DLS_SETTLE_MS", "3000")),
            field_delay_ms=int(os.getenv("DLS_FIELD_DELAY_MS", "500")),
            render_ms=int(os.getenv("DLS_RENDER_MS", "5000")),
            timeout_ms=int(os.getenv("DLS_TIMEOUT_MS", "60000")),
            select_timeout_ms=int(os.getenv("DLS_SELECT_TIMEOUT_MS", "5000")),
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DlsCaptureError(Exception):
    """Base class for failures that abort a capture."""


class SessionLaunchError(DlsCaptureError):
    pass


class NavigationError(DlsCaptureError):
    pass


class CaptureError(DlsCaptureError):
    pass


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

async def start_playwright(
    stack: AsyncExitStack, playwright_factory: Callable[[], Any],
) -> Playwright:
    """Start the Playwright driver; it is stopped when ``stack`` closes."""
    try:
        return await stack.enter_async_context(playwright_factory())
    except Exception as exc:
        raise SessionLaunchError(str(exc)) from exc


async def launch_browser(pw: Playwright, settings: CaptureSettings) -> Browser:
    """Start headless Chromium with sandboxing disabled."""
    try:
        return await pw.chromium.launch(
            headless=True,
            args=LAUNCH_ARGS,
            executable_path=settings.executable_path,
        )
    except Exception as exc:
        raise SessionLaunchError(str(exc)) from exc


async def new_page(browser: Browser, settings: CaptureSettings) -> Page:
    try:
        page = await browser.new_page(viewport=VIEWPORT)
    except Exception as exc:
        raise SessionLaunchError(str(exc)) from exc
    page.set_default_timeout(settings.timeout_ms)
    return page


async def open_target(page: Page, settings: CaptureSettings) -> None:
    """Load the DLS site and let the client-side app settle."""
    try:
        log.info("Navigating to %s ...", settings.target_url)
        await page.goto(settings.target_url, wait_until="networkidle")

        # Map widgets keep rendering after network idle.
        await page.wait_for_timeout(settings.settle_ms)
    except Exception as exc:
        raise NavigationError(str(exc)) from exc


async def fill_fields(
    page: Page, fields: dict[str, Any], settings: CaptureSettings,
) -> list[dict[str, Any]]:
    """Select each known field that has a value. Never raises.

    Returns one result per known key, in selector order, with status
    ``set``, ``skipped``, ``not_found`` or ``failed``.
    """
    results: list[dict[str, Any]] = []
    for key, selector in SELECTORS.items():
        value = fields.get(key)
        entry: dict[str, Any] = {
            "field": key,
            "selector": selector,
            "status": "skipped",
            "detail": None,
        }
        results.append(entry)
        if not value:
            continue

        try:
            handle = await page.query_selector(selector)
            if handle is None:
                log.warning("Selector not found for %s (%s)", key, selector)
                entry["status"] = "not_found"
                continue

            log.info("Setting %s: %s", key, value)
            await page.select_option(
                selector, value, timeout=settings.select_timeout_ms,
            )
            await page.wait_for_timeout(settings.field_delay_ms)
            entry["status"] = "set"
            entry["detail"] = value
        except Exception as exc:
            log.warning("Could not set %s: %s", key, exc)
            entry["status"] = "failed"
            entry["detail"] = str(exc)

    return results


async def take_screenshot(page: Page) -> str:
    """Full-page PNG, base64 encoded."""
    try:
        png = await page.screenshot(full_page=True, type="png")
    except Exception as exc:
        raise CaptureError(str(exc)) from exc
    return base64.b64encode(png).decode("ascii")


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

async def capture_dls(
    fields: dict[str, Any],
    settings: CaptureSettings | None = None,
    playwright_factory: Callable[[], Any] = async_playwright,
) -> dict[str, Any]:
    """Fill the DLS search form and return a screenshot of the result.

    Raises:
        SessionLaunchError: the driver, browser or page could not be started.
        NavigationError: the site could not be opened.
        CaptureError: the screenshot failed.
    """
    settings = settings or CaptureSettings()

    async with AsyncExitStack() as stack:
        pw = await start_playwright(stack, playwright_factory)
        browser = await launch_browser(pw, settings)
        try:
            page = await new_page(browser, settings)
            await open_target(page, settings)

            field_results = await fill_fields(page, fields, settings)

            log.info("Waiting for map to load...")
            await page.wait_for_timeout(settings.render_ms)

            screenshot = await take_screenshot(page)
            log.info("Screenshot captured (%d base64 chars)", len(screenshot))

            return {"screenshot": screenshot, "field_results": field_results}

        finally:
            await browser.close()
            log.info("Browser closed.")
