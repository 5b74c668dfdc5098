"""
Playwright page driver

Handles all Playwright-specific browser automation for the host system. Page
detection checks the URL first and falls back to page content; everything
else tries the shared selector lists in order.
"""

import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from ...exceptions import (
    BrowserInitializationError, ElementNotFoundError, FormInteractionError, PageNavigationError
)
from ...models.credentials import CookieEntry, PasswordCredentials
from ...models.job import ArtifactKind, SourceFile
from .form_helpers import PageSelectors
from .page_driver import PageDriver, PageKind, ResultRow
from .result_detector import ResultDetector

LOGIN_URL_MARKERS = ("login", "signin", "sign-in")
REPORT_URL_MARKERS = ("/report", "/viewer", "/similarity")
LISTING_URL_MARKERS = ("/home", "/my-files", "/files")


class PlaywrightPageDriver(PageDriver):
    """Playwright page driver for the host system's web UI"""

    def __init__(self, headless: bool = True, element_timeout: float = 10, download_timeout: float = 60):
        super().__init__()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.headless = headless
        self.element_timeout = element_timeout
        self.download_timeout = download_timeout

        # Playwright browser management
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.browser_context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    def get_driver_name(self) -> str:
        return "playwright"

    # =================== Browser lifecycle ===================

    async def _initialize_browser(self):
        """Initialize Playwright browser and context"""
        try:
            if not self.playwright:
                self.playwright = await async_playwright().start()

            if not self.browser:
                self.browser = await self.playwright.chromium.launch(
                    headless=self.headless,
                    args=[
                        '--disable-blink-features=AutomationControlled',
                        '--no-first-run',
                        '--no-default-browser-check',
                        '--disable-dev-shm-usage',
                    ],
                    timeout=60000
                )

            if not self.browser_context:
                self.browser_context = await self.browser.new_context(
                    viewport={'width': 1280, 'height': 800},
                    accept_downloads=True,
                )
                # Block media files
                await self.browser_context.route(
                    "**/*.{mp4,avi,mov,wmv,flv,webm,mp3,wav,ogg}", lambda route: route.abort()
                )
        except PlaywrightError as e:
            error = BrowserInitializationError(f"Failed to initialize browser: {e}", "playwright")
            self.logger.error(str(error))
            raise error

    async def _ensure_page(self) -> Page:
        await self._initialize_browser()
        if self.page is None or self.page.is_closed():
            self.page = await self.browser_context.new_page()
        return self.page

    async def close(self):
        """Clean up Playwright browser resources"""
        try:
            if self.browser_context:
                await self.browser_context.close()
            if self.browser:
                await self.browser.close()
            if self.playwright:
                await self.playwright.stop()
        except PlaywrightError as e:
            self.logger.warning(f"Error during browser cleanup: {e}")
        finally:
            self.page = None
            self.browser_context = None
            self.browser = None
            self.playwright = None

    # =================== PageDriver interface ===================

    async def open(self, url: str):
        page = await self._ensure_page()
        await self._safe_navigate(page, url)
        self._log(f"Opened {url}")

    @staticmethod
    def to_playwright_cookie(entry: CookieEntry) -> dict:
        """Map an imported cookie to the shape BrowserContext.add_cookies expects"""
        return {
            "name": entry.name,
            "value": entry.value,
            "domain": entry.domain,
            "path": entry.path or "/",
            "secure": entry.secure,
            "httpOnly": entry.http_only,
            "expires": entry.expires_at.timestamp() if entry.expires_at else -1,
        }

    async def inject_cookies(self, entries: List[CookieEntry]):
        await self._initialize_browser()
        await self.browser_context.add_cookies([self.to_playwright_cookie(e) for e in entries])

    @staticmethod
    def classify_url(url: str) -> Optional[PageKind]:
        """Page kind implied by the URL alone, or None if the URL is not conclusive"""
        parsed = urlparse((url or "").lower())
        target = parsed.path + ("?" + parsed.query if parsed.query else "")
        if any(marker in target for marker in LOGIN_URL_MARKERS):
            return PageKind.LOGIN
        if any(marker in target for marker in REPORT_URL_MARKERS):
            return PageKind.REPORT_VIEWER
        if any(marker in target for marker in LISTING_URL_MARKERS):
            return PageKind.FOLDER_LISTING
        return None

    async def detect_page_kind(self) -> PageKind:
        page = await self._ensure_page()

        # An open upload dialog takes precedence over whatever page hosts it
        if await self._is_any_visible(page, PageSelectors.UPLOAD_MODAL):
            return PageKind.UPLOAD_MODAL

        kind = self.classify_url(page.url)
        if kind == PageKind.LOGIN:
            return kind

        # The post-login landing page lives under the listing URLs
        if await self._is_any_visible(page, PageSelectors.LAUNCH_BUTTONS):
            return PageKind.LAUNCH_PROMPT
        if kind is not None:
            return kind

        if await self._is_any_visible(page, PageSelectors.LOGIN_PASSWORD_FIELDS):
            return PageKind.LOGIN
        if await self._is_any_visible(page, PageSelectors.RESULT_ROWS):
            return PageKind.FOLDER_LISTING
        return PageKind.UNKNOWN

    async def submit_login(self, credentials: PasswordCredentials):
        page = await self._ensure_page()
        await self._safe_fill_element(page, PageSelectors.LOGIN_USERNAME_FIELDS, credentials.username, "username_field")
        await self._safe_fill_element(page, PageSelectors.LOGIN_PASSWORD_FIELDS, credentials.secret, "password_field")
        await self._safe_click_element(page, PageSelectors.LOGIN_SUBMIT_BUTTONS, "login_button")
        await self._settle(page)
        self._log("Login submitted")

    async def click_launch(self):
        page = await self._ensure_page()
        await self._safe_click_element(page, PageSelectors.LAUNCH_BUTTONS, "launch_button")
        await self._settle(page)

    async def navigate_to_folder(self, name: str) -> bool:
        page = await self._ensure_page()
        if await self._in_folder(page, name):
            return True

        try:
            await self._safe_click_element(page, PageSelectors.for_name(PageSelectors.FOLDER_LINKS, name), "folder_link")
        except ElementNotFoundError:
            return False

        await self._settle(page)
        return True

    async def is_already_uploaded(self, display_name: str) -> bool:
        return await self.find_result_row(display_name) is not None

    async def attach_and_submit(self, source_file: SourceFile, title: str):
        page = await self._ensure_page()

        if not await self._is_any_visible(page, PageSelectors.UPLOAD_MODAL):
            await self._safe_click_element(page, PageSelectors.UPLOAD_BUTTONS, "upload_button")

        file_input = page.locator(PageSelectors.FILE_INPUTS[0]).first
        try:
            await file_input.set_input_files({
                "name": source_file.name,
                "mimeType": source_file.mime_type,
                "buffer": source_file.content,
            })
        except PlaywrightError as e:
            raise FormInteractionError("attach", "file_input", {"error": str(e)})

        try:
            await self._safe_fill_element(page, PageSelectors.TITLE_FIELDS, title, "title_field", timeout=2)
        except ElementNotFoundError:
            self.logger.debug("No title field in upload form")

        await self._safe_click_element(page, PageSelectors.UPLOAD_SUBMIT_BUTTONS, "upload_submit_button")
        await self._settle(page)
        self._log(f"Submitted {source_file.name}")

    async def find_result_row(self, display_name: str) -> Optional[ResultRow]:
        page = await self._ensure_page()
        for selector in PageSelectors.RESULT_ROWS:
            for row in await page.locator(selector).all():
                text = await row.inner_text()
                if ResultDetector.row_matches(text, display_name):
                    return ResultRow(text=text, scores=ResultDetector.parse_scores(text))
        return None

    async def open_result_viewer(self, display_name: str) -> bool:
        page = await self._ensure_page()
        row = await self._locate_row(page, display_name)
        if row is None:
            return False

        link = row.locator("a").first
        if await link.count() == 0:
            return False

        await link.click()
        await self._settle(page)
        return self.classify_url(page.url) == PageKind.REPORT_VIEWER

    async def download_artifact(self, kind: ArtifactKind) -> Optional[bytes]:
        page = await self._ensure_page()
        try:
            await self._safe_click_element(page, PageSelectors.DOWNLOAD_BUTTONS, "download_button", timeout=5)
            option, _ = await self._safe_wait_for_element(
                page, PageSelectors.ARTIFACT_OPTIONS[kind.value], f"{kind.value}_download_option", timeout=5
            )
        except ElementNotFoundError:
            return None

        async with page.expect_download(timeout=self.download_timeout * 1000) as download_info:
            await option.click()
        download = await download_info.value
        path = await download.path()
        return await asyncio.to_thread(path.read_bytes) if path else None

    async def refresh(self):
        page = await self._ensure_page()
        await page.reload(wait_until='domcontentloaded')

    # =================== Element helpers ===================

    async def _settle(self, page: Page):
        try:
            await page.wait_for_load_state('domcontentloaded', timeout=self.element_timeout * 1000)
        except PlaywrightTimeoutError:
            self.logger.debug("Page did not settle, continuing")

    async def _in_folder(self, page: Page, name: str) -> bool:
        for selector in ('nav[aria-label*="breadcrumb" i]', '[class*="breadcrumb"]', 'h1'):
            locator = page.locator(selector).first
            if await locator.count() and name.lower() in (await locator.inner_text()).lower():
                return True
        return False

    async def _locate_row(self, page: Page, display_name: str):
        for selector in PageSelectors.RESULT_ROWS:
            for row in await page.locator(selector).all():
                if ResultDetector.row_matches(await row.inner_text(), display_name):
                    return row
        return None

    async def _is_any_visible(self, page: Page, selectors: List[str]) -> bool:
        for selector in selectors:
            try:
                if await page.locator(selector).first.is_visible():
                    return True
            except PlaywrightError:
                continue
        return False

    async def _safe_navigate(self, page: Page, url: str, max_retries: int = 3, timeout: int = 30):
        """Navigate to URL with retry logic and proper error handling"""
        for attempt in range(max_retries):
            try:
                await page.goto(url, wait_until='domcontentloaded', timeout=timeout * 1000)
                return
            except PlaywrightError as e:
                if attempt < max_retries - 1:
                    await asyncio.sleep(2)
                    continue
                raise PageNavigationError(url, max_retries, str(e))

    async def _safe_wait_for_element(self, page: Page, selectors: List[str], element_type: str,
                                     timeout: float = None) -> Tuple[object, str]:
        """Wait for element with multiple selectors"""
        timeout = timeout or self.element_timeout
        for selector in selectors:
            try:
                await page.wait_for_selector(selector, timeout=timeout * 1000)
                for element in await page.locator(selector).all():
                    if await element.is_visible():
                        return element, selector
            except PlaywrightTimeoutError:
                continue

        raise ElementNotFoundError(
            selector=" or ".join(selectors),
            element_type=element_type,
            timeout=timeout
        )

    async def _safe_click_element(self, page: Page, selectors: List[str], element_type: str,
                                  timeout: float = None) -> str:
        """Safely click element with multiple selector fallbacks"""
        element, successful_selector = await self._safe_wait_for_element(page, selectors, element_type, timeout)
        try:
            await element.click()
            return successful_selector
        except PlaywrightError as e:
            raise FormInteractionError("click", element_type, {"selector": successful_selector, "error": str(e)})

    async def _safe_fill_element(self, page: Page, selectors: List[str], value: str, element_type: str,
                                 timeout: float = None) -> str:
        """Safely fill element with multiple selector fallbacks"""
        element, successful_selector = await self._safe_wait_for_element(page, selectors, element_type, timeout)
        try:
            await element.fill(value)
            return successful_selector
        except PlaywrightError as e:
            raise FormInteractionError("fill", element_type, {
                "selector": successful_selector,
                "error": str(e),
                "value_length": len(value)
            })
