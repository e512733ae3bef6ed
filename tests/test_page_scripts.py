"""
In-page scripts run against a real Chromium DOM.

The other browser tests fake every script result; these drive a
BrowserSession over a headless Playwright page so the snapshot, typing and
page-text scripts actually execute. Skipped when Chromium is not installed.
"""

import pytest

sync_api = pytest.importorskip("playwright.sync_api")

from tabagent.browser import FOCUS_AND_CLEAR_SCRIPT, SET_VALUE_SCRIPT, BrowserSession  # noqa: E402
from tabagent.cdp import PlaywrightTabConnection  # noqa: E402
from tabagent.resolver import ElementKind, ElementResolver  # noqa: E402
from tabagent.types import BrowserTab  # noqa: E402


class PageTransport:
    """Transport exposing one Playwright page as the only tab."""

    def __init__(self, page) -> None:
        self.page = page
        self.tab = BrowserTab(id="fixture", title="Fixture", url="about:blank")

    def list_targets(self) -> list[BrowserTab]:
        return [self.tab]

    def connect(self, tab: BrowserTab) -> PlaywrightTabConnection:
        return PlaywrightTabConnection(self.page, self.page.context.new_cdp_session(self.page))

    def close(self) -> None:
        pass


@pytest.fixture(scope="module")
def chromium():
    playwright = sync_api.sync_playwright().start()
    try:
        browser = playwright.chromium.launch(headless=True)
    except sync_api.Error as e:
        playwright.stop()
        pytest.skip(f"Chromium is not available: {e}")
    yield browser
    browser.close()
    playwright.stop()


@pytest.fixture
def page(chromium):
    page = chromium.new_page()
    yield page
    page.close()


@pytest.fixture
def browser(page):
    session = BrowserSession(PageTransport(page))
    session.attach(0)
    yield session
    session.detach()


EVENT_LOG = """
<script>
  window.events = [];
  document.addEventListener('input', e => window.events.push('input:' + e.target.id), true);
  document.addEventListener('change', e => window.events.push('change:' + e.target.id), true);
</script>
"""


class TestSnapshot:
    """Test SNAPSHOT_SCRIPT through the resolver."""

    def test_plain_word_falls_through_to_text(self, page) -> None:
        """'Submit' is a valid tag selector that matches nothing, so text matching runs."""
        page.set_content("<a href='#'>Home</a><button>Cancel</button><button id='go'>Submit</button>")
        conn = PlaywrightTabConnection(page, None)

        resolution = ElementResolver(conn.evaluate).resolve("Submit", ElementKind.CLICKABLE)

        assert resolution.strategy == "text"
        assert page.evaluate("(sel) => document.querySelector(sel).id", resolution.element.selector) == "go"

    def test_invalid_selector_is_not_an_error(self, page) -> None:
        page.set_content("<button>[Reply</button>")
        conn = PlaywrightTabConnection(page, None)
        resolution = ElementResolver(conn.evaluate).resolve("[Reply", ElementKind.CLICKABLE)
        assert resolution.element.tag == "button"

    def test_match_late_in_long_link_text(self, page) -> None:
        filler = "Lorem ipsum dolor sit amet. " * 30
        page.set_content(f"<a href='#' id='card'>{filler}Read the full story</a>")
        conn = PlaywrightTabConnection(page, None)

        resolution = ElementResolver(conn.evaluate).resolve("Read the full story", ElementKind.CLICKABLE)

        assert resolution is not None
        assert len(resolution.element.text) > 500

    def test_typeable_by_placeholder(self, page) -> None:
        page.set_content("<input name='user'><textarea placeholder='Write a comment'></textarea>")
        conn = PlaywrightTabConnection(page, None)
        resolution = ElementResolver(conn.evaluate).resolve("comment", ElementKind.TYPEABLE)
        assert resolution.element.tag == "textarea"
        assert resolution.strategy == "attribute"


class TestClick:
    """Test clicking resolved elements."""

    def test_click_runs_handler(self, browser, page) -> None:
        page.set_content("<button onclick=\"window.clicked = 'yes'\">Submit</button>")
        assert browser.click("Submit") == 'Clicked: BUTTON "Submit"'
        assert page.evaluate("() => window.clicked") == "yes"


class TestTyping:
    """Test the clear and value-backstop scripts."""

    def test_backstop_fires_input_and_change_once(self, page) -> None:
        page.set_content(EVENT_LOG + "<input id='q' value='old text'>")
        conn = PlaywrightTabConnection(page, None)
        args = {"selector": "#q", "text": "hello"}

        assert conn.evaluate(FOCUS_AND_CLEAR_SCRIPT, {"selector": "#q", "richText": False})
        assert page.input_value("#q") == ""
        assert conn.evaluate(SET_VALUE_SCRIPT, args)

        assert page.input_value("#q") == "hello"
        assert page.evaluate("() => window.events") == ["input:q", "change:q"]

    def test_missing_element(self, page) -> None:
        page.set_content("<p>nothing here</p>")
        conn = PlaywrightTabConnection(page, None)
        assert conn.evaluate(SET_VALUE_SCRIPT, {"selector": "#q", "text": "x"}) is False

    def test_type_text_leaves_text_once(self, browser, page) -> None:
        """Key events and the backstop together must not double the text."""
        page.set_content("<input name='q' placeholder='Search' value='old text'>")

        result = browser.type_text("search", "hello")

        assert result == 'Typed "hello" into INPUT[q]'
        assert page.input_value("input[name=q]") == "hello"

    def test_contenteditable(self, browser, page) -> None:
        page.set_content("<div contenteditable='true' class='editor'>draft</div>")
        browser.type_text("anything", "hello")
        assert page.inner_text(".editor").strip() == "hello"


class TestPageText:
    """Test PAGE_TEXT_SCRIPT output."""

    def test_hidden_and_script_text_skipped(self, browser, page) -> None:
        page.set_content(
            "<title>Fixture</title>"
            "<p>Visible paragraph</p>"
            "<p style='display:none'>Hidden paragraph</p>"
            "<span style='visibility:hidden'>Invisible span</span>"
            "<script>var note = 'script text';</script>"
            "<style>p { color: red; }</style>"
            "<button>Send</button>"
            "<input aria-label='Search box'>"
        )

        text = browser.get_page_text()

        assert text.startswith("=== Page: Fixture ===\n")
        assert "Visible paragraph" in text
        for skipped in ("Hidden paragraph", "Invisible span", "script text", "color: red"):
            assert skipped not in text
        assert "Button: Send" in text
        assert "Input: Search box" in text

    def test_link_list_is_capped(self, browser, page) -> None:
        links = "".join(f"<a href='/p/{i}'>Post {i}</a>" for i in range(20))
        page.set_content(links)

        text = browser.get_page_text()

        interactive = text.split("--- Interactive Elements ---\n")[1]
        assert interactive.count("Link: ") == 15
        assert "Link: Post 14 -> /p/14" in interactive
        assert "Post 15 ->" not in interactive
