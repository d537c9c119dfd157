from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

logger = logging.getLogger(__name__)

NETWORK_IDLE_TIMEOUT_MS = 20_000
DOM_READY_TIMEOUT_MS = 10_000
READY_SETTLE_MS = 1_500
SCROLL_SETTLE_MS = 1_500
SCROLL_TOP_SETTLE_MS = 500
PAGINATION_SETTLE_MS = 2_500
DETAIL_DOM_TIMEOUT_MS = 15_000
DETAIL_IDLE_TIMEOUT_MS = 10_000
DETAIL_SETTLE_MS = 2_000
NAVIGATION_TIMEOUT_MS = 60_000

NEXT_PAGE_SELECTORS = (
    "#pagination a.arrow.next",
    ".pagination a.arrow.next",
    "#pagination a.next",
    ".pagination a.next",
    ".pager a.next",
    'a[aria-label="Next"]',
    'a[aria-label="Next page"]',
    '[rel="next"]',
    'button[aria-label="Next"]',
    'button[aria-label="Next page"]',
    ".pagination button.next",
    "#pagination button.next",
    'button:has-text("Load More")',
    'button:has-text("Show More")',
    'a:has-text("Load More")',
    'a:has-text("Show More")',
)
ACTIVE_PAGE_SELECTOR = '#pagination .active, .pagination .active, [aria-current="page"]'
PAGE_NUMBER_SELECTOR = (
    "#pagination a, #pagination button, .pagination a, .pagination button, .pager a, .pager button"
)
_POINTER_EVENTS_NONE_RE = re.compile(r"pointer-events\s*:\s*none", re.IGNORECASE)
_DIGITS_RE = re.compile(r"\d+")


@asynccontextmanager
async def open_browser(*, headless: bool = True) -> AsyncIterator[Any]:
    """Launch chromium and yield a context that hands out pages via ``new_page()``."""
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=headless,
            args=["--disable-blink-features=AutomationControlled"],
        )
        context = await browser.new_context()
        try:
            yield context
        finally:
            await context.close()
            await browser.close()


async def wait_for_page_ready(page: Any) -> None:
    try:
        await page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
    except PlaywrightError:
        logger.info("network idle not reached for %s; falling back to DOM ready", page.url)
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=DOM_READY_TIMEOUT_MS)
        except PlaywrightError as exc:
            logger.warning("page readiness wait failed for %s: %s; continuing", page.url, exc)
    await page.wait_for_timeout(READY_SETTLE_MS)


async def wait_for_detail_page(page: Any) -> None:
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=DETAIL_DOM_TIMEOUT_MS)
        await page.wait_for_load_state("networkidle", timeout=DETAIL_IDLE_TIMEOUT_MS)
    except PlaywrightError:
        logger.info("detail page load timeout for %s; continuing with available content", page.url)
    await page.wait_for_timeout(DETAIL_SETTLE_MS)


async def smart_scroll(page: Any, *, max_scrolls: int) -> int:
    """Scroll until the page height is stable twice in a row or ``max_scrolls`` is hit.

    Returns the number of scrolls performed. Always ends back at the top of
    the page so pagination controls and link positions are stable.
    """
    previous_height = await page.evaluate("document.body.scrollHeight")
    stable_checks = 0
    scrolls = 0
    while scrolls < max_scrolls and stable_checks < 2:
        await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        await page.wait_for_timeout(SCROLL_SETTLE_MS)
        scrolls += 1
        height = await page.evaluate("document.body.scrollHeight")
        if height == previous_height:
            stable_checks += 1
        else:
            stable_checks = 0
        previous_height = height
    await page.evaluate("window.scrollTo(0, 0)")
    await page.wait_for_timeout(SCROLL_TOP_SETTLE_MS)
    return scrolls


async def advance_pagination(page: Any) -> bool:
    for selector in NEXT_PAGE_SELECTORS:
        try:
            element = await page.query_selector(selector)
            if element is None or not await is_clickable(element):
                continue
            await element.click()
        except PlaywrightError as exc:
            logger.debug("pagination selector %r failed: %s", selector, exc)
            continue
        await page.wait_for_timeout(PAGINATION_SETTLE_MS)
        logger.info("advanced pagination via %s", selector)
        return True

    return await _advance_numbered_pagination(page)


async def is_clickable(element: Any) -> bool:
    style = await element.get_attribute("style") or ""
    if _POINTER_EVENTS_NONE_RE.search(style):
        return False
    if (await element.get_attribute("aria-disabled") or "").lower() == "true":
        return False
    if await element.get_attribute("disabled") is not None:
        return False
    return bool(await element.is_visible())


async def _advance_numbered_pagination(page: Any) -> bool:
    try:
        active = await page.query_selector(ACTIVE_PAGE_SELECTOR)
        if active is None:
            return False
        match = _DIGITS_RE.search(await active.text_content() or "")
        if match is None:
            return False
        target = str(int(match.group()) + 1)
        for element in await page.query_selector_all(PAGE_NUMBER_SELECTOR):
            if (await element.text_content() or "").strip() != target:
                continue
            if not await is_clickable(element):
                continue
            await element.click()
            await page.wait_for_timeout(PAGINATION_SETTLE_MS)
            logger.info("advanced numbered pagination to page %s", target)
            return True
    except PlaywrightError as exc:
        logger.debug("numbered pagination failed: %s", exc)
    return False
