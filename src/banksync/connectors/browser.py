"""Playwright-driven connector base.

Each run gets its own Chromium instance, context and page. Playwright failures
are translated into the sync error taxonomy: during login a timeout becomes
``AuthError(Timeout)`` and any other browser error ``AuthError(UnknownUiState)``;
while listing accounts or exporting, both become ``TransientError``.

Documentation: https://playwright.dev/python/docs/api/class-playwright
"""

import logging
from abc import abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from banksync.errors import AuthError, AuthFailure, TransientError

from .base import AccountDescriptor, BankConnector, BankCredentials, DateWindow, ExportArtifact

logger = logging.getLogger(__name__)

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1280,800",
]

_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass
class BrowserSession:
    """Live browser handles owned by one run."""

    playwright: Playwright
    browser: Browser
    context: BrowserContext
    page: Page


def classify_login_failure(error: PlaywrightError) -> AuthError:
    """Map a Playwright error raised during login to an ``AuthError``."""
    if isinstance(error, PlaywrightTimeoutError):
        return AuthError(AuthFailure.TIMEOUT, "Login page did not respond in time")
    return AuthError(AuthFailure.UNKNOWN_UI_STATE, "Login page was not in the expected state")


class BrowserConnector(BankConnector):
    """Connector whose session is a headless Chromium page."""

    login_url: ClassVar[str]

    async def open_session(self) -> BrowserSession:
        config = self.settings.browser
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(
                headless=config.headless, args=_LAUNCH_ARGS
            )
            context = await browser.new_context(
                viewport={"width": 1280, "height": 800},
                user_agent=_USER_AGENT,
                accept_downloads=True,
                locale=config.locale,
                timezone_id=config.timezone_id,
            )
            page = await context.new_page()
        except BaseException:
            await playwright.stop()
            raise

        page.set_default_navigation_timeout(config.navigation_timeout_ms)
        page.set_default_timeout(config.action_timeout_ms)
        logger.debug(f"Opened browser session for {self.slug}")
        return BrowserSession(playwright=playwright, browser=browser, context=context, page=page)

    async def release(self, session: BrowserSession) -> None:
        try:
            await session.browser.close()
        finally:
            await session.playwright.stop()

    async def reload(self, session: BrowserSession) -> None:
        try:
            await session.page.reload(wait_until="domcontentloaded")
        except PlaywrightError as e:
            raise TransientError(f"Page reload failed: {e.message}") from e

    async def login(self, session: BrowserSession, credentials: BankCredentials) -> None:
        try:
            await self.perform_login(session.page, credentials)
        except PlaywrightError as e:
            # Browser error text may echo typed input
            raise classify_login_failure(e) from None

    async def list_accounts(self, session: BrowserSession) -> list[AccountDescriptor]:
        try:
            return await self.read_accounts(session.page)
        except PlaywrightError as e:
            raise TransientError(f"Could not read account list: {e.message}") from e

    async def export_transactions(
        self, session: BrowserSession, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        try:
            return await self.perform_export(session.page, account, window)
        except PlaywrightError as e:
            raise TransientError(
                f"Export of {account.display_name} failed: {e.message}"
            ) from e

    @staticmethod
    async def download(page: Page, trigger_selector: str, timeout_ms: float) -> tuple[bytes, str]:
        """Click a control that starts a download and return the file body.

        Returns:
            tuple: File content and the suggested filename
        """
        async with page.expect_download(timeout=timeout_ms) as download_info:
            await page.click(trigger_selector)
        download = await download_info.value
        path = await download.path()
        return Path(path).read_bytes(), download.suggested_filename

    @abstractmethod
    async def perform_login(self, page: Page, credentials: BankCredentials) -> None:
        """Drive the login form; raise ``AuthError`` for recognized failures."""

    @abstractmethod
    async def read_accounts(self, page: Page) -> list[AccountDescriptor]:
        """Read the accounts shown after login."""

    @abstractmethod
    async def perform_export(
        self, page: Page, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        """Export one account's transactions."""
