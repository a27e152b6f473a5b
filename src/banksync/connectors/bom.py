"""Bank of Melbourne internet banking connector.

Login needs the Customer Access Number, the Security Number (carried in
``BomMetadata``) and the internet banking password. Each account on the
summary page is exported separately as QIF.
"""

import logging
import re

from playwright.async_api import Page

from banksync.errors import AuthError, AuthFailure, InvalidMetadataError
from banksync.metadata import BomMetadata
from banksync.parsers import StatementFormat

from .base import AccountDescriptor, BankCredentials, DateWindow, ExportArtifact
from .browser import BrowserConnector
from .registry import register_connector

logger = logging.getLogger(__name__)

_LOGIN_URL = "https://ibanking.bankofmelbourne.com.au/ibank/loginPage.action"
_ACCESS_NUMBER = "input#access-number"
_SECURITY_NUMBER = "input#securityNumber"
_PASSWORD = "input#internet-password"
_LOGIN_BUTTON = "input#logonButton"
_LOGIN_ERROR = ".error-message, .alert, .error"
_MFA_PROMPT = "#secureCodeInput, input[name='secureCode']"
_ACCOUNT_LIST = "#acctSummaryList li"
_ACCOUNT_LINKS = "#acctSummaryList li h2 a"
_EXPORT_FORMAT = "#export-file-format"
_INCLUDE_CATEGORIES = "#includeCategories"
_INCLUDE_SUBCATEGORIES = "#includeSubCategories:not([disabled])"
_EXPORT_BUTTON = "#transHistExport"
_HOME_MENU = "li#mainMenu0 a"

_DOWNLOAD_TIMEOUT_MS = 30_000


def _safe_filename(name: str) -> str:
    return re.sub(r"[ /]", "_", name)


@register_connector
class BomConnector(BrowserConnector):
    slug = "bom"
    display_name = "Bank of Melbourne"
    description = "Bank of Melbourne internet banking (QIF export per account)"
    requires_security_number = True
    login_url = _LOGIN_URL

    def validate_credentials(self, credentials: BankCredentials) -> None:
        if not isinstance(credentials.metadata, BomMetadata):
            raise InvalidMetadataError(
                "Bank of Melbourne connections require a security number"
            )

    async def perform_login(self, page: Page, credentials: BankCredentials) -> None:
        assert isinstance(credentials.metadata, BomMetadata)  # noqa: S101

        await page.goto(self.login_url, wait_until="domcontentloaded")

        await self._fill(page, _ACCESS_NUMBER, credentials.username)
        await self._fill(page, _SECURITY_NUMBER, credentials.metadata.security_number)
        await self._fill(page, _PASSWORD, credentials.password)

        await page.wait_for_selector(_LOGIN_BUTTON, state="visible")
        async with page.expect_navigation(wait_until="networkidle", timeout=60_000):
            await page.click(_LOGIN_BUTTON)

        error = await page.query_selector(_LOGIN_ERROR)
        if error is not None and await error.is_visible():
            raise AuthError(AuthFailure.INVALID_CREDENTIALS, "Portal rejected the login")

        if await page.query_selector(_MFA_PROMPT) is not None:
            raise AuthError(AuthFailure.MFA_REQUIRED, "Portal requested a one-time code")

        if await page.query_selector(_ACCOUNT_LIST) is None:
            raise AuthError(
                AuthFailure.UNKNOWN_UI_STATE, "Account summary not shown after login"
            )

    @staticmethod
    async def _fill(page: Page, selector: str, value: str) -> None:
        await page.wait_for_selector(selector, state="visible")
        await page.fill(selector, "")
        await page.fill(selector, value)

    async def read_accounts(self, page: Page) -> list[AccountDescriptor]:
        await page.wait_for_selector(_ACCOUNT_LIST)
        accounts: list[AccountDescriptor] = []
        seen: set[str] = set()
        for link in await page.query_selector_all(_ACCOUNT_LINKS):
            if not await link.is_visible():
                continue
            name = (await link.inner_text()).strip()
            if name and name not in seen:
                seen.add(name)
                accounts.append(AccountDescriptor(remote_id=name, display_name=name))

        logger.info(f"Found {len(accounts)} Bank of Melbourne account(s)")
        return accounts

    async def perform_export(
        self, page: Page, account: AccountDescriptor, window: DateWindow
    ) -> ExportArtifact:
        # The export form offers the portal's default history; the window is
        # not selectable.
        if await page.query_selector(_ACCOUNT_LIST) is None:
            await page.click(_HOME_MENU)
            await page.wait_for_selector(_ACCOUNT_LINKS)

        await page.locator(_ACCOUNT_LINKS).filter(has_text=account.display_name).first.click()
        await page.wait_for_load_state("networkidle")

        await page.wait_for_selector(_EXPORT_FORMAT, timeout=15_000)
        await page.select_option(_EXPORT_FORMAT, "QIF")
        await page.check(_INCLUDE_CATEGORIES)
        if await page.query_selector(_INCLUDE_SUBCATEGORIES) is not None:
            await page.check(_INCLUDE_SUBCATEGORIES)

        content, _ = await self.download(page, _EXPORT_BUTTON, _DOWNLOAD_TIMEOUT_MS)
        logger.info(f"Exported {account.display_name} ({len(content)} bytes)")

        await page.click(_HOME_MENU)
        await page.wait_for_selector(_ACCOUNT_LINKS)

        return ExportArtifact(
            content=content,
            format=StatementFormat.QIF,
            filename=f"bom_{_safe_filename(account.display_name)}.qif",
        )
