"""Interactive e-mail + code login."""

from __future__ import annotations

from playwright.sync_api import Error as PWError, Page, TimeoutError as PWTimeout

from . import config
from .error_codes import AuthExpiredError
from .utils import log_line, wait_seconds

_LOGGED_IN_JS = """
() => {
    const hasSearch = !!document.querySelector('input[placeholder*="Search your threads"]');
    const hasModal = !!document.querySelector('div[role="dialog"]')
        || !!Array.from(document.querySelectorAll("h2, h3, div")).find(el =>
            (el.textContent || "").includes("Sign in to save"));
    return hasSearch && !hasModal;
}
"""

_LOGIN_SURFACE_JS = """
() => {
    if (document.querySelector('input[type="email"]')) return true;
    return Array.from(document.querySelectorAll("button")).some(btn =>
        (btn.textContent || "").includes("Continue with email"));
}
"""

CODE_INPUT_SELECTOR = (
    'input[placeholder*="Code"], input[placeholder*="code"], '
    'input[type="text"][inputmode="numeric"], input[placeholder="Enter Code"]'
)
ASK_INPUT_SELECTOR = "#ask-input"


def is_login_page(page: Page) -> bool:
    """Return ``True`` when the page shows the sign-in surface."""

    try:
        return bool(page.evaluate(_LOGIN_SURFACE_JS))
    except PWError as exc:
        log_line(f"[LOGIN] Unable to inspect page for login surface: {exc}")
        return False


def has_active_session(page: Page) -> bool:
    """Open the library and report whether it renders for a signed-in user."""

    try:
        page.goto(config.LIBRARY_URL, wait_until="networkidle", timeout=20000)
        # Sign-in modals pop up a moment after load.
        wait_seconds(page, 3)
        return bool(page.evaluate(_LOGGED_IN_JS))
    except (PWTimeout, PWError) as exc:
        log_line(f"[LOGIN] Error checking the library ({exc}); proceeding to fresh login.")
        return False


def _click_if_present(page: Page, selector: str, *, label: str) -> None:
    try:
        loc = page.locator(selector).first
        if loc.count():
            loc.click(timeout=1500)
            log_line(f"[LOGIN] Clicked {label}")
    except Exception:  # noqa: BLE001
        return


def login(page: Page, email: str, *, code_timeout_seconds: float = 120) -> None:
    """Sign in with ``email``, letting the user type the e-mailed code.

    Returns immediately when a session is already active, so calling it again
    is harmless. Raises ``AuthExpiredError`` if the login surface never leads
    to the signed-in app.
    """

    log_line("[LOGIN] Checking session status at /library...")
    if has_active_session(page):
        log_line("[LOGIN] Active session detected, skipping login.")
        return

    if not email:
        raise AuthExpiredError("Login required but no email is configured")

    log_line("[LOGIN] Navigating to home page for login...")
    try:
        page.goto(config.BASE_URL, wait_until="domcontentloaded", timeout=config.NAV_TIMEOUT_SECONDS * 1000)
        wait_seconds(page, 2)
        _click_if_present(page, "button:has-text('Accept All Cookies')", label="cookie banner")
        _click_if_present(page, "button:has-text('Sign In')", label="'Sign In'")

        page.wait_for_selector('input[type="email"]', timeout=15000)
        page.fill('input[type="email"]', email)
        page.click("button:has-text('Continue with email')")

        page.wait_for_selector(CODE_INPUT_SELECTOR, timeout=60000)
        log_line("[LOGIN] Check your email and enter the code in the browser window.")
        page.wait_for_selector(ASK_INPUT_SELECTOR, timeout=int(code_timeout_seconds * 1000))
    except (PWTimeout, PWError) as exc:
        raise AuthExpiredError(f"Login failed: {exc}") from exc

    log_line("[LOGIN] Successfully logged in.")


__all__ = ["is_login_page", "has_active_session", "login"]
