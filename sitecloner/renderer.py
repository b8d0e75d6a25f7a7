"""Renderer adapter — Playwright captures of reference and generated pages.

The pipeline and the comparison engine only depend on the Renderer protocol,
so tests and alternative backends can inject their own implementation.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from sitecloner.errors import ExternalUnavailableError
from sitecloner.models.capture import BoundingBox, ReferenceMetadata, SectionInfo
from sitecloner.models.config import ViewportConfig

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)

_STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
if (!window.chrome) { window.chrome = {}; }
if (!window.chrome.runtime) { window.chrome.runtime = {}; }
"""

# Top-level blocks of the page: children of <main>, else children of <body>
_SECTION_SELECTORS = ("main > *", "body > *")

_DESCRIBE_ELEMENT = """
(el) => {
    const r = el.getBoundingClientRect();
    return {
        name: [el.tagName, el.id, typeof el.className === 'string' ? el.className : '',
               el.getAttribute('role') || '', el.getAttribute('data-framer-name') || ''].join(' ').toLowerCase(),
        x: r.x + window.scrollX,
        y: r.y + window.scrollY,
        width: r.width,
        height: r.height,
    };
}
"""

MIN_SECTION_HEIGHT = 10

_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("footer", ("footer", "contentinfo")),
    ("header", ("header", "nav", "banner")),
    ("hero", ("hero", "landing", "jumbotron", "masthead")),
    ("pricing", ("pricing", "plans", "subscription")),
    ("testimonials", ("testimonial", "review", "quote", "social-proof")),
    ("features", ("feature", "services", "benefits", "capabilities")),
    ("faq", ("faq",)),
    ("cta", ("cta", "call-to-action", "signup", "get-started")),
]


def classify_section(name: str, index: int, total: int, height: float) -> str:
    """Guess a section type from its tag/class/id text and its position."""
    name = name.lower()
    for section_type, keywords in _TYPE_KEYWORDS:
        if any(k in name for k in keywords):
            return section_type
    if index == 0:
        return "header" if height < 200 else "hero"
    if index == 1:
        return "hero"
    if index == total - 1:
        return "footer"
    return "section"


class Renderer(Protocol):
    async def capture_reference(self, url: str, output_dir: Path) -> ReferenceMetadata:
        """Write fullpage.png and sections/NN-type.png under output_dir."""
        ...

    async def capture_sections(self, url: str, output_paths: list[Path]) -> list[Path]:
        """Screenshot the top-level sections of url, in order, into output_paths.

        Returns the paths actually written; a page with fewer sections than
        paths yields a shorter list.
        """
        ...


async def launch_browser(playwright: Playwright, headless: bool = True) -> Browser:
    """Launch Chromium with anti-detection arguments."""
    return await playwright.chromium.launch(
        headless=headless,
        args=["--disable-blink-features=AutomationControlled"],
    )


async def create_context(browser: Browser, viewport: ViewportConfig,
                         user_agent: Optional[str] = None) -> BrowserContext:
    context = await browser.new_context(
        viewport={"width": viewport.width, "height": viewport.height},
        user_agent=user_agent or DEFAULT_USER_AGENT,
        locale="en-US",
        extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
    )
    await context.add_init_script(_STEALTH_INIT_SCRIPT)
    return context


class PlaywrightRenderer:
    """Renderer backed by headless Chromium."""

    def __init__(
        self,
        viewport: Optional[ViewportConfig] = None,
        headless: bool = True,
        page_load_timeout_ms: int = 30000,
        timeout_seconds: float = 120.0,
    ):
        self.viewport = viewport or ViewportConfig()
        self.headless = headless
        self.page_load_timeout_ms = page_load_timeout_ms
        self.timeout_seconds = timeout_seconds

    async def capture_reference(self, url: str, output_dir: Path) -> ReferenceMetadata:
        return await self._bounded(self._capture_reference(url, Path(output_dir)), url)

    async def capture_sections(self, url: str, output_paths: list[Path]) -> list[Path]:
        return await self._bounded(self._capture_sections(url, output_paths), url)

    async def _bounded(self, coro, url: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ExternalUnavailableError(
                f"Capture of {url} did not finish within {self.timeout_seconds:.0f}s"
            ) from e
        except PlaywrightError as e:
            raise ExternalUnavailableError(f"Browser failed to render {url}: {e}") from e

    async def _open(self, context: BrowserContext, url: str) -> Page:
        page = await context.new_page()
        page.set_default_timeout(self.page_load_timeout_ms)
        logger.debug("Loading %s", url)
        await page.goto(url, wait_until="networkidle", timeout=self.page_load_timeout_ms)
        await self._scroll_through(page)
        return page

    @staticmethod
    async def _scroll_through(page: Page) -> None:
        """Scroll to the bottom and back so lazy content is loaded."""
        height = await page.evaluate("document.body.scrollHeight")
        step = 600
        for offset in range(0, int(height or 0), step):
            await page.evaluate(f"window.scrollTo(0, {offset})")
            await page.wait_for_timeout(50)
        await page.evaluate("window.scrollTo(0, 0)")
        await page.wait_for_timeout(200)

    @staticmethod
    async def _section_handles(page: Page) -> list:
        for selector in _SECTION_SELECTORS:
            handles = await page.query_selector_all(selector)
            if handles:
                logger.debug("Found %d sections with '%s'", len(handles), selector)
                return handles
        return []

    async def _capture_reference(self, url: str, output_dir: Path) -> ReferenceMetadata:
        sections_dir = output_dir / "sections"
        sections_dir.mkdir(parents=True, exist_ok=True)

        async with async_playwright() as p:
            browser = await launch_browser(p, headless=self.headless)
            try:
                context = await create_context(browser, self.viewport)
                page = await self._open(context, url)
                await page.screenshot(path=str(output_dir / "fullpage.png"), full_page=True)

                described = []
                for handle in await self._section_handles(page):
                    info = await handle.evaluate(_DESCRIBE_ELEMENT)
                    if info["height"] < MIN_SECTION_HEIGHT or info["width"] <= 0:
                        continue
                    described.append((handle, info))

                sections: list[SectionInfo] = []
                for i, (handle, info) in enumerate(described):
                    section = SectionInfo(
                        id=f"section-{uuid.uuid4().hex[:8]}",
                        type=classify_section(info["name"], i, len(described), info["height"]),
                        bounding_box=BoundingBox(
                            x=info["x"], y=info["y"], width=info["width"], height=info["height"],
                        ),
                    )
                    path = sections_dir / f"{section.file_stem(i)}.png"
                    await handle.screenshot(path=str(path))
                    sections.append(section)
                    logger.debug("Captured section %s (%s)", path.name, section.type)
            finally:
                await browser.close()

        logger.info("Captured %d sections from %s", len(sections), url)
        return ReferenceMetadata(
            url=url,
            captured_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            viewport_width=self.viewport.width,
            viewport_height=self.viewport.height,
            sections=sections,
        )

    async def _capture_sections(self, url: str, output_paths: list[Path]) -> list[Path]:
        written: list[Path] = []
        async with async_playwright() as p:
            browser = await launch_browser(p, headless=self.headless)
            try:
                context = await create_context(browser, self.viewport)
                page = await self._open(context, url)
                index = 0
                for handle in await self._section_handles(page):
                    if index >= len(output_paths):
                        break
                    box = await handle.bounding_box()
                    if not box or box["height"] < MIN_SECTION_HEIGHT:
                        continue
                    path = Path(output_paths[index])
                    path.parent.mkdir(parents=True, exist_ok=True)
                    try:
                        await handle.screenshot(path=str(path))
                        written.append(path)
                    except PlaywrightError as e:
                        logger.warning("Could not capture section %d of %s: %s", index, url, e)
                    index += 1
            finally:
                await browser.close()

        logger.info("Captured %d/%d generated sections from %s",
                    len(written), len(output_paths), url)
        return written
