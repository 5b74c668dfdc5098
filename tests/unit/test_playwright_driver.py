"""
Unit tests for the Playwright page driver and its helpers

These tests never launch a browser: page access is patched out.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from scan_agent.models.credentials import CookieEntry
from scan_agent.services.automation.form_helpers import PageSelectors, RetryHelper
from scan_agent.services.automation.page_driver import PageKind
from scan_agent.services.automation.playwright_driver import PlaywrightPageDriver


class TestClassifyUrl:
    """Page kind from the URL alone"""

    @pytest.mark.parametrize("url, expected", [
        ("https://host.test/login", PageKind.LOGIN),
        ("https://host.test/sso/SignIn?next=/home", PageKind.LOGIN),
        ("https://host.test/auth/sign-in", PageKind.LOGIN),
        ("https://host.test/report/123", PageKind.REPORT_VIEWER),
        ("https://host.test/viewer/submissions/9", PageKind.REPORT_VIEWER),
        ("https://host.test/home", PageKind.FOLDER_LISTING),
        ("https://host.test/my-files/folder/7", PageKind.FOLDER_LISTING),
        ("https://host.test/", None),
        ("", None),
        (None, None),
    ])
    def test_classify(self, url, expected):
        assert PlaywrightPageDriver.classify_url(url) == expected

    def test_host_name_is_not_inspected(self):
        assert PlaywrightPageDriver.classify_url("https://login.host.test/") is None


class TestCookieMapping:
    """Imported cookies in BrowserContext.add_cookies shape"""

    def test_with_expiry(self):
        expires = datetime(2026, 6, 1, tzinfo=timezone.utc)
        entry = CookieEntry("sid", "abc", ".host.test", "/", True, True, expires)

        cookie = PlaywrightPageDriver.to_playwright_cookie(entry)

        assert cookie == {
            "name": "sid",
            "value": "abc",
            "domain": ".host.test",
            "path": "/",
            "secure": True,
            "httpOnly": True,
            "expires": expires.timestamp(),
        }

    def test_session_cookie(self):
        cookie = PlaywrightPageDriver.to_playwright_cookie(CookieEntry("sid", "abc", ".host.test", path=""))

        assert cookie["expires"] == -1
        assert cookie["path"] == "/"


class TestDetectPageKind:
    """Page classification order"""

    @staticmethod
    def make_driver(url, visible):
        driver = PlaywrightPageDriver()

        async def is_any_visible(page, selectors):
            return any(selectors is group for group in visible)

        driver._ensure_page = AsyncMock(return_value=SimpleNamespace(url=url))
        driver._is_any_visible = is_any_visible
        return driver

    @pytest.mark.asyncio
    async def test_upload_modal_wins(self):
        driver = self.make_driver("https://host.test/home", [PageSelectors.UPLOAD_MODAL])

        assert await driver.detect_page_kind() == PageKind.UPLOAD_MODAL

    @pytest.mark.asyncio
    async def test_login_url(self):
        driver = self.make_driver("https://host.test/login", [PageSelectors.LAUNCH_BUTTONS])

        assert await driver.detect_page_kind() == PageKind.LOGIN

    @pytest.mark.asyncio
    async def test_launch_prompt_on_listing_url(self):
        driver = self.make_driver("https://host.test/home", [PageSelectors.LAUNCH_BUTTONS])

        assert await driver.detect_page_kind() == PageKind.LAUNCH_PROMPT

    @pytest.mark.asyncio
    async def test_listing_url(self):
        driver = self.make_driver("https://host.test/home", [])

        assert await driver.detect_page_kind() == PageKind.FOLDER_LISTING

    @pytest.mark.asyncio
    async def test_password_field_means_login(self):
        driver = self.make_driver("https://host.test/", [PageSelectors.LOGIN_PASSWORD_FIELDS])

        assert await driver.detect_page_kind() == PageKind.LOGIN

    @pytest.mark.asyncio
    async def test_result_rows_mean_listing(self):
        driver = self.make_driver("https://host.test/", [PageSelectors.RESULT_ROWS])

        assert await driver.detect_page_kind() == PageKind.FOLDER_LISTING

    @pytest.mark.asyncio
    async def test_unknown(self):
        driver = self.make_driver("https://host.test/", [])

        assert await driver.detect_page_kind() == PageKind.UNKNOWN


class TestDriverLifecycle:
    """Resource handling without a browser"""

    def test_driver_name(self):
        assert PlaywrightPageDriver().get_driver_name() == "playwright"

    @pytest.mark.asyncio
    async def test_close_without_browser(self):
        driver = PlaywrightPageDriver()

        await driver.close()

        assert driver.page is None
        assert driver.browser is None

    @pytest.mark.asyncio
    async def test_close_releases_handles(self):
        driver = PlaywrightPageDriver()
        driver.browser_context = AsyncMock()
        driver.browser = AsyncMock()
        driver.playwright = AsyncMock()
        context, browser, playwright = driver.browser_context, driver.browser, driver.playwright

        await driver.close()

        context.close.assert_awaited_once()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        assert driver.browser_context is None

    def test_log_callback(self):
        driver = PlaywrightPageDriver()
        messages = []
        driver.set_log_callback(messages.append)

        driver._log("Login submitted")

        assert messages == ["Login submitted"]


class TestFormHelpers:
    """Selector templates and retries"""

    def test_folder_selectors(self):
        selectors = PageSelectors.for_name(PageSelectors.FOLDER_LINKS, 'Bio "2"')

        assert selectors[0] == 'a:has-text("Bio \\"2\\"")'
        assert len(selectors) == len(PageSelectors.FOLDER_LINKS)

    @pytest.mark.asyncio
    async def test_retry_until_success(self):
        func = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])

        with patch("asyncio.sleep", new=AsyncMock()) as sleep:
            result = await RetryHelper.retry_async(func, 3, 1.0, (ConnectionError,), "arg")

        assert result == "ok"
        assert func.await_count == 3
        func.assert_awaited_with("arg")
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_gives_up(self):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            await RetryHelper.retry_async(func, 2, 0, (ConnectionError,))
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        func = AsyncMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            await RetryHelper.retry_async(func, 3, 0, (ConnectionError,))
        assert func.await_count == 1
