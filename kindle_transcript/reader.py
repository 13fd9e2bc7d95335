"""
Kindle Cloud Reader page source driven by Playwright.

Opens a book at read.amazon.com with a persistent browser profile, signs in
when needed, captures the startReading / YJmetadata responses, and exposes the
navigation, footer and screenshot primitives the extractor needs. UI helpers
are best effort: a control that is missing or hidden yields False/None rather
than an exception, and the extractor decides what that means.
"""

import json
import time
from urllib.parse import parse_qs, urlparse

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from kindle_transcript.errors import SessionError
from kindle_transcript.extract import PageSource
from kindle_transcript.position import parse_position
from kindle_transcript.toc import TocEntry

CONTENT_CAPTURE_SELECTORS = (
    "#kr-renderer .kg-full-page-img img",
    "#kr-renderer .kg-full-page-img",
    "#kr-renderer",
)
FOOTER_TEXT_SELECTORS = (
    'ion-title[item-i-d="reader-footer-title"] .text-div',
    "ion-footer ion-title",
    ".footer-label-color-default",
)
ALERT_ROOT_SELECTORS = ("ion-alert", '[role="alertdialog"]')
ALERT_DISMISS_SELECTORS = ("button[aria-label='Close']", ".alert-button-role-cancel")
READER_HEADER_SELECTOR = "#reader-header"
TOP_CHROME_SELECTOR = ".top-chrome"
READER_SETTINGS_TEST_ID = "top_menu_reader_settings"
TOC_BUTTON_TEST_ID = "top_menu_table_of_contents"
NAVIGATION_MENU_TEST_ID = "top_menu_navigation_menu"
READER_MENU_LABEL = "Reader menu"
TOC_ITEM_SELECTOR = "ion-list ion-item"
TOC_BUTTON_SELECTOR = "button.toc-item-button"
TOC_CHAPTER_TITLE_SELECTOR = ".chapter-title"
TOC_SCROLLABLE_SELECTOR = ".side-menu-content .scrollable-content"
TOC_BOTTOM_SELECTOR = ".toc-bottom"
SIDE_MENU_CLOSE_SELECTOR = ".side-menu-close-button"
GO_TO_PAGE_MENU_ITEM_SELECTOR = 'ion-item[role="listitem"]'
GO_TO_PAGE_INPUT_SELECTOR = 'ion-modal input[placeholder="page number"]'
GO_TO_PAGE_BUTTON_SELECTOR = 'ion-modal ion-button[item-i-d="go-to-modal-go-button"]'
NEXT_PAGE_SELECTORS = ("#kr-chevron-right", ".kr-chevron-container-right")
FONT_OPTION_SELECTOR = "#AmazonEmber"
COLUMNS_OPTION_SELECTOR = '[role="radiogroup"][aria-label$=" columns"]'
SIGNIN_EMAIL_SELECTOR = 'input[type="email"]'
SIGNIN_PASSWORD_SELECTOR = 'input[type="password"]'
SIGNIN_SUBMIT_SELECTOR = 'input[type="submit"]'
SIGNIN_OTP_SELECTOR = 'input[type="tel"]'
START_READING_PATH = "/service/mobile/reader/startReading"
INFO_DROPPED_KEYS = ("karamelToken", "metadataUrl", "YJFormatVersion")
META_DROPPED_KEYS = ("cpr",)
BROWSER_ARGS = (
    "--hide-crash-restore-bubble",
    "--disable-save-password-bubble",
    "--password-store=basic",
    "--use-mock-keychain",
    "--no-first-run",
)

FREEZE_CHROME_JS = """
(el) => {
    el.style.transition = "none";
    el.style.transform = "none";
}
"""
NESTED_IMAGE_SRC_JS = """
(el) => {
    const img = el.tagName?.toLowerCase() === "img" ? el : el.querySelector("img");
    return img ? (img.getAttribute("src") || img.currentSrc || null) : null;
}
"""
SCROLL_TOC_JS = """
(el) => {
    const before = el.scrollTop;
    el.scrollBy(0, Math.max(240, Math.floor(el.clientHeight * 0.8)));
    return el.scrollTop !== before;
}
"""


def parse_jsonp_response(body):
    """Extract a JSON object from a JSONP response body."""
    start, end = body.find("("), body.rfind(")")
    if start == -1 or end <= start:
        raise ValueError("Invalid JSONP response")
    return json.loads(body[start + 1 : end])


def normalize_authors(raw):
    """Flatten Kindle author payloads (strings or {name|authorName} dicts) into names."""
    if not isinstance(raw, list):
        return []
    names = []
    for item in raw:
        if isinstance(item, dict):
            item = item.get("name") or item.get("authorName")
        if isinstance(item, str) and item.strip():
            names.append(item.strip())
    return names


def sanitize_info(payload):
    """Drop session tokens and volatile fields from a startReading payload."""
    if not isinstance(payload, dict):
        return None
    return {k: v for k, v in payload.items() if k not in INFO_DROPPED_KEYS}


def sanitize_meta(payload):
    if not isinstance(payload, dict):
        return None
    meta = {k: v for k, v in payload.items() if k not in META_DROPPED_KEYS}
    for key in ("authorsList", "authorList"):
        if isinstance(meta.get(key), list):
            meta[key] = normalize_authors(meta[key])
    return meta


class KindleReaderSource(PageSource):
    """PageSource backed by a persistent Chromium profile on read.amazon.com."""

    def __init__(self, settings, log, footer_timeout_ms=800):
        self.settings = settings
        self.log = log
        self.footer_timeout_ms = footer_timeout_ms
        self._playwright = None
        self.context = None
        self.page = None
        self._intercepted = {"info": None, "meta": None}

    # -- session ---------------------------------------------------------

    def open_session(self):
        self.settings.profile_dir.mkdir(parents=True, exist_ok=True)
        self._playwright = sync_playwright().start()
        self.context = self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.settings.profile_dir),
            headless=self.settings.headless,
            viewport={"width": 1280, "height": 900},
            device_scale_factor=2,
            args=list(BROWSER_ARGS),
            ignore_default_args=["--enable-automation"],
        )
        self.page = self.context.pages[0] if self.context.pages else self.context.new_page()
        self.page.on("response", self._on_response)
        self.page.goto(self.settings.reader_url, wait_until="domcontentloaded")

        if "signin" in self.page.url:
            self._sign_in()

        if self._wait_until(self._next_control_visible, timeout_ms=30_000) is None:
            raise SessionError("Next-page controls not visible within 30s.")
        self._stabilize()

        self.page.wait_for_timeout(1000)
        for key, name in (("info", "startReading"), ("meta", "YJmetadata.jsonp")):
            if self._intercepted[key] is None:
                self.log.warning(f"{name} metadata response was not captured.")
        return sanitize_info(self._intercepted["info"]), sanitize_meta(self._intercepted["meta"])

    def _on_response(self, response):
        if response.status != 200:
            return
        url = urlparse(response.url)
        asin = self.settings.asin.lower()
        try:
            if url.hostname == "read.amazon.com" and url.path == START_READING_PATH:
                requested = parse_qs(url.query).get("asin", [""])[0]
                if requested.lower() == asin:
                    self._intercepted["info"] = response.json()
            elif url.path.endswith("YJmetadata.jsonp"):
                payload = parse_jsonp_response(response.text())
                if isinstance(payload, dict) and str(payload.get("asin", "")).lower() == asin:
                    self._intercepted["meta"] = payload
        except (PlaywrightError, ValueError) as exc:
            self.log.warning(f"metadata response parsing failed for {response.url}: {exc}")

    def _sign_in(self):
        page = self.page
        self.log.info("Signing in to Amazon...")
        for selector, value in (
            (SIGNIN_EMAIL_SELECTOR, self.settings.amazon_email),
            (SIGNIN_PASSWORD_SELECTOR, self.settings.amazon_password),
        ):
            page.locator(selector).fill(value)
            page.locator(SIGNIN_SUBMIT_SELECTOR).first.click()
        page.wait_for_load_state("domcontentloaded")

        if "read.amazon.com" not in page.url and self._visible(SIGNIN_OTP_SELECTOR):
            code = input("2-factor auth code? ").strip()
            if code:
                page.locator(SIGNIN_OTP_SELECTOR).fill(code)
                page.locator(SIGNIN_SUBMIT_SELECTOR).first.click()

        page.wait_for_url("**/read.amazon.com/**", timeout=300_000)
        if self.settings.asin.lower() not in page.url.lower():
            page.goto(self.settings.reader_url, wait_until="domcontentloaded")

    def _stabilize(self):
        """Dismiss alerts, freeze top chrome, pick single column + Amazon Ember."""
        if self._dismiss_alert():
            self.log.info("dismissed blocking alert.")
        if self._freeze_top_chrome():
            self.log.info("stabilized top chrome UI motion.")
        if self._apply_reader_settings():
            self.log.info("applied reader settings (Single Column + Amazon Ember).")
        else:
            self.log.warning("could not fully apply reader settings; continuing.")

    def close(self):
        if self.context is not None:
            self.context.close()
            self.context = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None

    # -- PageSource ------------------------------------------------------

    def read_toc(self):
        if not self._open_toc():
            self.log.warning("could not open the table of contents.")
            return []
        try:
            return self._walk_toc()
        finally:
            self._close_toc()

    def navigate_to_start(self, start):
        if self.go_to_page(start.page):
            return True
        # Fall back to clicking the entry itself in the TOC panel.
        if not self._open_toc():
            return False
        try:
            button = self.page.locator(TOC_BUTTON_SELECTOR, has_text=start.title).first
            if button.count() == 0:
                return False
            button.scroll_into_view_if_needed()
            button.click()
            self.page.wait_for_timeout(1000)
            return True
        except PlaywrightError:
            return False
        finally:
            self._close_toc()

    def go_to_page(self, page_number):
        if page_number is None or page_number < 1:
            return False
        self._dismiss_alert()
        page = self.page
        try:
            if self._reveal_controls(NAVIGATION_MENU_TEST_ID):
                page.get_by_test_id(NAVIGATION_MENU_TEST_ID).first.click()
            else:
                fallback = page.get_by_label(READER_MENU_LABEL).first
                if fallback.count() == 0:
                    return False
                fallback.click()
            page.wait_for_timeout(600)

            menu_item = page.locator(GO_TO_PAGE_MENU_ITEM_SELECTOR, has_text="Go to Page").first
            menu_item.wait_for(state="visible", timeout=5000)
            menu_item.click()
            page.wait_for_timeout(250)

            field = page.locator(GO_TO_PAGE_INPUT_SELECTOR).first
            go_button = page.locator(GO_TO_PAGE_BUTTON_SELECTOR).first
            if field.count() == 0 or go_button.count() == 0:
                return False
            field.fill(str(page_number))
            go_button.click()
            page.wait_for_timeout(900)
            return True
        except PlaywrightError as exc:
            self.log.warning(f"go to page {page_number} failed: {exc}")
            return False

    def advance(self):
        self._dismiss_alert()
        for selector in NEXT_PAGE_SELECTORS:
            control = self.page.locator(selector).first
            try:
                if self._is_shown(control):
                    control.click(timeout=1000)
                    return True
            except PlaywrightError:
                continue
        return False

    def current_position(self):
        return self._wait_until(self._footer_text, timeout_ms=self.footer_timeout_ms)

    def content_signature(self):
        """Identify the rendered page by its image src."""
        for selector, locator in self._content_locators():
            try:
                src = locator.get_attribute("src")
                if src:
                    return f"{selector}|src:{src}"
                nested = locator.evaluate(NESTED_IMAGE_SRC_JS)
                if nested:
                    return f"{selector}|nested-src:{nested}"
            except PlaywrightError:
                continue
        return None

    def capture_bitmap(self):
        for _selector, locator in self._content_locators():
            try:
                return locator.screenshot(type="png", scale="css")
            except PlaywrightError:
                continue
        self.log.warning("content element capture failed; using viewport screenshot.")
        return self.page.screenshot(type="png")

    # -- UI helpers ------------------------------------------------------

    def _wait_until(self, probe, timeout_ms, poll_ms=100):
        """Poll `probe()` until it returns something truthy or the timeout passes."""
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            value = probe()
            if value:
                return value
            if time.monotonic() >= deadline:
                return None
            self.page.wait_for_timeout(poll_ms)

    @staticmethod
    def _is_shown(locator):
        return locator.count() > 0 and locator.is_visible()

    def _visible(self, selector):
        try:
            return self._is_shown(self.page.locator(selector).first)
        except PlaywrightError:
            return False

    def _next_control_visible(self):
        return any(self._visible(selector) for selector in NEXT_PAGE_SELECTORS)

    def _footer_text(self):
        for selector in FOOTER_TEXT_SELECTORS:
            locator = self.page.locator(selector).first
            try:
                text = locator.text_content() if self._is_shown(locator) else None
            except PlaywrightError:
                continue
            if text and text.strip():
                return text.strip()
        return None

    def _content_locators(self):
        """Yield visible, non-empty content elements in capture preference order."""
        for selector in CONTENT_CAPTURE_SELECTORS:
            locator = self.page.locator(selector).first
            try:
                if not self._is_shown(locator):
                    continue
                box = locator.bounding_box()
            except PlaywrightError:
                continue
            if box and box["width"] > 1 and box["height"] > 1:
                yield selector, locator

    def _reveal_controls(self, test_id=None, timeout_ms=5000):
        """Hover the reader header so the top menu buttons become visible."""
        try:
            header = self.page.locator(READER_HEADER_SELECTOR).first
            if header.count() > 0:
                header.hover(force=True)
                self.page.wait_for_timeout(150)
            if test_id is None:
                return True
            button = self.page.get_by_test_id(test_id).first
            if button.count() == 0:
                return False
            button.wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightError:
            return False

    def _freeze_top_chrome(self):
        try:
            chrome = self.page.locator(TOP_CHROME_SELECTOR).first
            if chrome.count() == 0:
                return False
            chrome.evaluate(FREEZE_CHROME_JS)
            return True
        except PlaywrightError:
            return False

    def _dismiss_alert(self):
        roots = [self.page.locator(s).first for s in ALERT_ROOT_SELECTORS if self._visible(s)]
        for root in roots:
            candidates = [root.locator("button", has_text="No").first]
            candidates += [root.locator(selector).first for selector in ALERT_DISMISS_SELECTORS]
            for button in candidates:
                try:
                    if self._is_shown(button):
                        button.click()
                        self.page.wait_for_timeout(200)
                        return True
                except PlaywrightError:
                    continue
        if not roots:
            return False
        return self._press_escape()

    def _press_escape(self):
        try:
            self.page.keyboard.press("Escape")
            self.page.wait_for_timeout(200)
        except PlaywrightError:
            return False
        return True

    def _apply_reader_settings(self):
        if not self._reveal_controls(READER_SETTINGS_TEST_ID):
            return False
        settings_button = self.page.get_by_test_id(READER_SETTINGS_TEST_ID).first
        try:
            settings_button.click()
            self.page.wait_for_timeout(700)
        except PlaywrightError:
            return False

        applied = False
        for option in (
            self.page.locator(FONT_OPTION_SELECTOR).first,
            self.page.locator(COLUMNS_OPTION_SELECTOR, has_text="Single Column").first,
        ):
            try:
                if self._is_shown(option):
                    option.click()
                    self.page.wait_for_timeout(200)
                    applied = True
            except PlaywrightError:
                continue

        self._reveal_controls()
        try:
            if settings_button.is_visible():
                settings_button.click()
                self.page.wait_for_timeout(200)
        except PlaywrightError:
            pass
        return applied

    def _toc_open(self):
        return any(
            self._visible(selector)
            for selector in (SIDE_MENU_CLOSE_SELECTOR, TOC_ITEM_SELECTOR, TOC_BOTTOM_SELECTOR)
        )

    def _open_toc(self):
        if self._toc_open():
            return True
        if not self._reveal_controls(TOC_BUTTON_TEST_ID):
            return False
        try:
            self.page.get_by_test_id(TOC_BUTTON_TEST_ID).first.click()
            self.page.wait_for_timeout(600)
        except PlaywrightError:
            return False
        return self._wait_until(self._toc_open, timeout_ms=2000) is not None

    def _close_toc(self):
        for _ in range(2):
            if not self._toc_open():
                return True
            try:
                if self._visible(SIDE_MENU_CLOSE_SELECTOR):
                    self.page.locator(SIDE_MENU_CLOSE_SELECTOR).first.click()
                    self.page.wait_for_timeout(250)
                    continue
            except PlaywrightError:
                pass
            self._press_escape()
        return not self._toc_open()

    def _walk_toc(self, max_scroll_passes=160):
        """Click through every TOC entry of the virtualized list, reading the footer after each.

        An entry whose footer cannot be parsed keeps a None position.
        """
        items = self.page.locator(TOC_ITEM_SELECTOR)
        scrollable = self.page.locator(TOC_SCROLLABLE_SELECTOR).first
        entries = []
        seen = set()
        idle_rounds = 0

        try:
            items.first.wait_for(state="visible", timeout=5000)
        except PlaywrightError:
            return entries

        for _ in range(max_scroll_passes):
            added = 0
            for index in range(items.count()):
                entry = self._read_toc_item(items.nth(index), seen)
                if entry is not None:
                    entries.append(entry)
                    added += 1

            at_bottom = self._visible(TOC_BOTTOM_SELECTOR)
            try:
                moved = scrollable.count() > 0 and bool(scrollable.evaluate(SCROLL_TOC_JS))
            except PlaywrightError:
                moved = False

            if at_bottom and added == 0:
                break
            idle_rounds = 0 if moved else idle_rounds + 1
            if idle_rounds >= 3:
                break
            self.page.wait_for_timeout(180)

        self.log.info(f"TOC walk read {len(entries)} entries.")
        return entries

    def _read_toc_item(self, item, seen):
        try:
            button = item.locator(TOC_BUTTON_SELECTOR).first
            if button.count() == 0:
                return None
            key = button.get_attribute("aria-label")
            title_node = item.locator(TOC_CHAPTER_TITLE_SELECTOR).first
            raw_title = (title_node if title_node.count() > 0 else item).text_content()
        except PlaywrightError:
            return None

        title = " ".join((raw_title or "").split())
        key = (key or title).strip().lower()
        if not title or key in seen:
            return None

        try:
            button.scroll_into_view_if_needed()
            button.click()
            self.page.wait_for_timeout(250)
        except PlaywrightError:
            return None

        seen.add(key)
        return TocEntry(title=title, position=parse_position(self.current_position()))
