"""American Express (Australia) connector.

The portal shows a single card account. Its QIF export writes dates as
DD/MM/YYYY regardless of the connection's configured order.
"""

import logging
import re

from playwright.async_api import Page

from banksync.errors import AuthError, AuthFailure
from banksync.models import QifDateOrder
from banksync.parsers import StatementFormat

from .base import AccountDescriptor, BankCredentials, DateWindow, ExportArtifact
from .browser import BrowserConnector
from .registry import register_connector

logger = logging.getLogger(__name__)

_LOGIN_URL = "https://www.americanexpress.com/en-au/account/login"
_ACTIVITY_URL = "https://global.americanexpress.com/activity/recent"
_COOKIE_BUTTON = re.compile(r"accept|agree|allow", re.IGNORECASE)
_USER_ID = "input#eliloUserID"
_PASSWORD = "input#eliloPassword"
_SUBMIT = "#loginSubmit"
_LOGIN_MESSAGE = ".dls-icon-message-wrapper"
_MFA_TEXT = re.compile(r"verification code|one-time code", re.IGNORECASE)
_DOWNLOAD_BUTTON = "#action-icon-dls-icon-download-"
_QIF_OPTION = "label[for*='qif']"
_RECENT_OPTION = "label[for='axp-activity-download-body-checkbox-options-downloadMostRecent']"
_CONFIRM_DOWNLOAD = "[data-test-id*='download-confirm']"

_DOWNLOAD_TIMEOUT_MS = 120_000

CARD_ACCOUNT = AccountDescriptor(remote_id="amex-card", display_name="Amex Card", type="credit")


def _logged_in(page: Page) -> bool:
    return "dashboard" in page.url or "activity" in page.url


@register_connector
class AmexConnector(BrowserConnector):
    slug = "amex"
    display_name = "American Express"
    description = "American Express Australia card activity (QIF export)"
    login_url = _LOGIN_URL

    async def perform_login(self, page: Page, credentials: BankCredentials) -> None:
        if not _logged_in(page):
            await page.goto(self.login_url, wait_until="domcontentloaded")

        cookie_button = page.get_by_role("button", name=_COOKIE_BUTTON).first
        if await cookie_button.is_visible():
            await cookie_button.click()

        if _logged_in(page):
            return

        await page.wait_for_selector(_PASSWORD, timeout=10_000)
        await page.fill(_USER_ID, credentials.username)
        await page.fill(_PASSWORD, credentials.password)
        await page.click(_SUBMIT)
        await page.wait_for_load_state("networkidle", timeout=20_000)

        if _logged_in(page):
            return

        if await page.get_by_text(_MFA_TEXT).count() > 0:
            raise AuthError(AuthFailure.MFA_REQUIRED, "Portal requested a verification code")

        message = await page.query_selector(_LOGIN_MESSAGE)
        if message is not None and await message.is_visible():
            raise AuthError(AuthFailure.INVALID_CREDENTIALS, "Portal rejected the login")

        raise AuthError(AuthFailure.UNKNOWN_UI_STATE, "Dashboard not shown after login")

    async def read_accounts(self, page: Page) -> list[AccountDescriptor]:
        return [CARD_ACCOUNT]

    async def perform_export(
        self, page: Page, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        if "activity" not in page.url:
            await page.goto(_ACTIVITY_URL, wait_until="domcontentloaded")

        await page.wait_for_selector(_DOWNLOAD_BUTTON, timeout=20_000)
        await page.click(_DOWNLOAD_BUTTON, force=True)

        await page.wait_for_selector(_QIF_OPTION, timeout=15_000)
        await page.click(_QIF_OPTION)

        recent = await page.query_selector(_RECENT_OPTION)
        if recent is not None and await recent.is_visible():
            await recent.click()

        content, filename = await self.download(page, _CONFIRM_DOWNLOAD, _DOWNLOAD_TIMEOUT_MS)
        logger.info(f"Exported {account.display_name} ({len(content)} bytes)")

        return ExportArtifact(
            content=content,
            format=StatementFormat.QIF,
            filename=filename,
            date_order=QifDateOrder.DMY,
        )
