"""
Page interaction helpers for page drivers

Provides the selector lists for the host system's pages and the retry helper
shared by the driver and the result reporter.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class PageSelectors:
    """Selector fallbacks for the host system's pages, tried in order"""

    LOGIN_USERNAME_FIELDS = [
        'input[name="email"]',
        'input[type="email"]',
        'input[name="username"]',
        '#email',
        '#username',
    ]

    LOGIN_PASSWORD_FIELDS = [
        'input[name="password"]',
        'input[type="password"]',
        '#password',
    ]

    LOGIN_SUBMIT_BUTTONS = [
        'button[type="submit"]',
        'input[type="submit"]',
        'text="Log in"',
        'text="Sign in"',
    ]

    LAUNCH_BUTTONS = [
        'text="Launch"',
        'a:has-text("Launch")',
        'button:has-text("Launch")',
        'a[href*="launch"]',
    ]

    FOLDER_LINKS = [
        'a:has-text("{name}")',
        'text="{name}"',
        '[title="{name}"]',
    ]

    UPLOAD_BUTTONS = [
        'button:has-text("Upload")',
        'a:has-text("Upload")',
        'text="Submit a file"',
        '[data-test-id="upload-button"]',
    ]

    UPLOAD_MODAL = [
        '[role="dialog"] input[type="file"]',
        '.modal input[type="file"]',
        'form input[type="file"]',
    ]

    FILE_INPUTS = [
        'input[type="file"]',
    ]

    TITLE_FIELDS = [
        'input[name="title"]',
        'input[placeholder*="Title"]',
        '#title',
    ]

    UPLOAD_SUBMIT_BUTTONS = [
        'button:has-text("Upload and Review")',
        'button:has-text("Submit")',
        'button:has-text("Confirm")',
        'button[type="submit"]',
    ]

    RESULT_ROWS = [
        'table tbody tr',
        '[role="row"]',
        '.submission-row',
    ]

    DOWNLOAD_BUTTONS = [
        'button[aria-label*="Download"]',
        'button:has-text("Download")',
        'a:has-text("Download")',
    ]

    ARTIFACT_OPTIONS = {
        "similarity": [
            'text="Current View"',
            'text="Similarity Report"',
            'a:has-text("Similarity")',
        ],
        "ai": [
            'text="AI Writing Report"',
            'a:has-text("AI Writing")',
            'a:has-text("AI")',
        ],
    }

    @staticmethod
    def for_name(templates: list, name: str) -> list:
        """Fill a display name into selector templates"""
        escaped = name.replace('"', '\\"')
        return [template.format(name=escaped) for template in templates]


class RetryHelper:
    """Helper for retry operations"""

    @staticmethod
    async def retry_async(func: Callable[..., Awaitable[T]], max_retries: int = 3, delay: float = 1.0,
                          retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                          *args, **kwargs) -> T:
        """
        Retry an async function with exponential backoff

        Only exceptions matching ``retry_on`` are retried; anything else
        propagates immediately. The last matching exception is re-raised once
        ``max_retries`` attempts are used up.
        """
        for attempt in range(max_retries):
            try:
                return await func(*args, **kwargs)
            except retry_on as e:
                if attempt == max_retries - 1:
                    raise
                wait = delay * (2 ** attempt)
                logger.debug(f"Attempt {attempt + 1}/{max_retries} failed ({e}), retrying in {wait:g}s")
                await asyncio.sleep(wait)
