"""Shared fakes for the Playwright objects used by backend.dls_capture."""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.dls_capture import SELECTORS

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-data"


def _make_page(present, screenshot_error=None):
    page = MagicMock()
    page.set_default_timeout = MagicMock()
    page.goto = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.query_selector = AsyncMock(
        side_effect=lambda sel: MagicMock() if sel in present else None,
    )
    page.select_option = AsyncMock()
    page.screenshot = AsyncMock(return_value=PNG_BYTES, side_effect=screenshot_error)
    return page


@pytest.fixture
def fake_browser():
    """Build a fake async_playwright factory.

    Returns a function taking ``present`` (selectors that exist on the
    page) plus exceptions to inject at each step (``enter_error`` for the
    driver start, ``launch_error``, ``new_page_error``, ``goto_error``,
    ``screenshot_error``); it returns a namespace with ``factory``, ``browser`` and ``page``.
    """

    def build(
        present=tuple(SELECTORS.values()),
        enter_error=None,
        launch_error=None,
        new_page_error=None,
        goto_error=None,
        screenshot_error=None,
    ):
        page = _make_page(set(present), screenshot_error)
        if goto_error is not None:
            page.goto.side_effect = goto_error

        browser = MagicMock()
        browser.new_page = AsyncMock(return_value=page, side_effect=new_page_error)
        browser.close = AsyncMock()

        pw = MagicMock()
        pw.chromium.launch = AsyncMock(return_value=browser, side_effect=launch_error)

        @asynccontextmanager
        async def factory():
            if enter_error is not None:
                raise enter_error
            yield pw

        return SimpleNamespace(factory=factory, pw=pw, browser=browser, page=page)

    return build
