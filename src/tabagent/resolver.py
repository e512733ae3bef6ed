"""
Element Resolver - Turn a human description into one DOM element.

The model describes targets the way a person would ("Submit", "search",
"#email", "div[role=textbox]"). Resolution runs in two halves:

1. SNAPSHOT_SCRIPT runs in the page. The descriptor is passed as a
   structured argument (never interpolated into the script body). It tags
   every candidate element with a data-tabagent-ref attribute and returns
   plain facts about them.
2. choose_element() applies the layered matching strategy to those facts.
   It is pure Python, so the priority rules are testable without a browser.

Strategy, in strict priority order, stopping at the first match:

1. The descriptor as a CSS selector (first match wins).
2. Clickable: interactive elements whose text / aria-label / value equals or
   contains the descriptor. Typeable: form-like elements whose placeholder,
   name, aria-label, type or role contains it.
3. Clickable only: any rendered element whose whole text equals it.
4. Typeable only: the first visible contenteditable, else the first
   role=textbox, else a known rich-editor container.

A resolved element is scrolled into view before it is handed back.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

REF_ATTRIBUTE = "data-tabagent-ref"

# Checked in this order when nothing else matched a typeable descriptor.
RICH_EDITOR_CLASSES = ("ProseMirror", "public-DraftEditor-content", "ql-editor")

MAX_TEXT_MATCHES = 50


class ElementKind(str, Enum):
    """What the caller intends to do with the element."""
    CLICKABLE = "clickable"
    TYPEABLE = "typeable"


@dataclass
class ElementFacts:
    """Facts about one tagged element, as reported by SNAPSHOT_SCRIPT."""
    ref: int
    tag: str
    text: str = ""
    aria_label: str = ""
    value: str = ""
    placeholder: str = ""
    name: str = ""
    type: str = ""
    role: str = ""
    class_name: str = ""
    content_editable: bool = False
    aria_hidden: bool = False
    rendered: bool = True
    editor_class: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementFacts":
        return cls(
            ref=int(data["ref"]),
            tag=data.get("tag", ""),
            text=data.get("text") or "",
            aria_label=data.get("aria_label") or "",
            value=data.get("value") or "",
            placeholder=data.get("placeholder") or "",
            name=data.get("name") or "",
            type=data.get("type") or "",
            role=data.get("role") or "",
            class_name=data.get("class_name") or "",
            content_editable=bool(data.get("content_editable")),
            aria_hidden=bool(data.get("aria_hidden")),
            rendered=bool(data.get("rendered", True)),
            editor_class=data.get("editor_class") or "",
        )

    @property
    def selector(self) -> str:
        """CSS selector addressing exactly this element."""
        return f'[{REF_ATTRIBUTE}="{self.ref}"]'

    @property
    def is_rich_text(self) -> bool:
        """True for contenteditable widgets rather than native form controls."""
        return self.content_editable or self.role == "textbox"

    @property
    def label(self) -> str:
        """Short identifying label, e.g. for 'Typed ... into TEXTAREA[comment]'."""
        first_class = self.class_name.split(" ")[0] if self.class_name else ""
        ident = self.name or self.role or self.type or first_class or "input"
        return f"{self.tag.upper()}[{ident}]"


@dataclass
class PageSnapshot:
    """Everything choose_element() needs to know about the page."""
    selector_match: ElementFacts | None = None
    candidates: list[ElementFacts] = field(default_factory=list)
    text_matches: list[ElementFacts] = field(default_factory=list)
    editors: list[ElementFacts] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageSnapshot":
        selector_match = data.get("selector_match")
        return cls(
            selector_match=ElementFacts.from_dict(selector_match) if selector_match else None,
            candidates=[ElementFacts.from_dict(d) for d in data.get("candidates") or []],
            text_matches=[ElementFacts.from_dict(d) for d in data.get("text_matches") or []],
            editors=[ElementFacts.from_dict(d) for d in data.get("editors") or []],
        )


@dataclass
class Resolution:
    """A resolved element and the strategy step that found it."""
    element: ElementFacts
    strategy: str


def _clickable_text(element: ElementFacts) -> str:
    # First non-empty of text, aria-label, value
    return (element.text or element.aria_label or element.value).lower().strip()


def _typeable_fields(element: ElementFacts) -> tuple[str, ...]:
    return (
        element.placeholder.lower(),
        element.name.lower(),
        element.aria_label.lower(),
        element.type.lower(),
        element.role.lower(),
    )


def choose_element(
    snapshot: PageSnapshot,
    descriptor: str,
    kind: ElementKind,
) -> Resolution | None:
    """Apply the layered matching strategy to a page snapshot."""
    if snapshot.selector_match is not None:
        return Resolution(snapshot.selector_match, "selector")

    if kind == ElementKind.CLICKABLE:
        search = descriptor.lower().strip()
        for element in snapshot.candidates:
            text = _clickable_text(element)
            if text == search or search in text:
                return Resolution(element, "text")

        for element in snapshot.text_matches:
            if element.rendered and element.text.lower().strip() == search:
                return Resolution(element, "rendered_text")
        return None

    search = descriptor.lower()
    for element in snapshot.candidates:
        if any(search in value for value in _typeable_fields(element)):
            return Resolution(element, "attribute")

    for element in snapshot.candidates:
        if element.content_editable and not element.aria_hidden:
            return Resolution(element, "fallback_editor")
    for element in snapshot.candidates:
        if element.role == "textbox":
            return Resolution(element, "fallback_editor")
    for editor_class in RICH_EDITOR_CLASSES:
        for element in snapshot.editors:
            if element.editor_class == editor_class:
                return Resolution(element, "fallback_editor")
    return None


class ElementResolver:
    """
    Resolve descriptors against a live page.

    `evaluate` is the page's script evaluator: evaluate(expression, arg).
    """

    def __init__(self, evaluate: Callable[[str, Any], Any]) -> None:
        self._evaluate = evaluate

    def snapshot(self, descriptor: str, kind: ElementKind) -> PageSnapshot:
        raw = self._evaluate(
            SNAPSHOT_SCRIPT,
            {
                "descriptor": descriptor,
                "kind": kind.value,
                "refAttribute": REF_ATTRIBUTE,
                "editorClasses": list(RICH_EDITOR_CLASSES),
                "maxTextMatches": MAX_TEXT_MATCHES,
            },
        )
        return PageSnapshot.from_dict(raw or {})

    def resolve(self, descriptor: str, kind: ElementKind) -> Resolution | None:
        """Find one element, scroll it into view, or return None."""
        resolution = choose_element(self.snapshot(descriptor, kind), descriptor, kind)
        if resolution is None:
            logger.info(f"No {kind.value} element matches {descriptor!r}")
            return None

        logger.debug(
            f"Resolved {descriptor!r} via {resolution.strategy} "
            f"to <{resolution.element.tag}> ref={resolution.element.ref}"
        )
        self._evaluate(SCROLL_INTO_VIEW_SCRIPT, resolution.element.selector)
        return resolution


SNAPSHOT_SCRIPT = """
(args) => {
    const ATTR = args.refAttribute;
    document.querySelectorAll('[' + ATTR + ']').forEach(el => el.removeAttribute(ATTR));

    let counter = 0;
    const facts = (el, extra) => {
        if (!el.hasAttribute(ATTR)) {
            el.setAttribute(ATTR, String(counter++));
        }
        const attr = (n) => el.getAttribute(n) || '';
        return Object.assign({
            ref: Number(el.getAttribute(ATTR)),
            tag: el.tagName.toLowerCase(),
            text: (el.textContent || '').trim(),
            aria_label: attr('aria-label'),
            value: attr('value'),
            placeholder: attr('placeholder'),
            name: attr('name'),
            type: attr('type'),
            role: attr('role'),
            class_name: typeof el.className === 'string' ? el.className : '',
            content_editable: el.isContentEditable || attr('contenteditable') === 'true',
            aria_hidden: attr('aria-hidden') === 'true',
            rendered: el.offsetParent !== null,
        }, extra || {});
    };

    const result = { selector_match: null, candidates: [], text_matches: [], editors: [] };

    try {
        const el = document.querySelector(args.descriptor);
        if (el) {
            result.selector_match = facts(el);
            return result;
        }
    } catch (e) {
        // not a valid selector
    }

    if (args.kind === 'clickable') {
        document.querySelectorAll(
            'a, button, [role="button"], input[type="submit"], input[type="button"]'
        ).forEach(el => result.candidates.push(facts(el)));

        const search = args.descriptor.toLowerCase().trim();
        for (const el of document.querySelectorAll('*')) {
            if (result.text_matches.length >= args.maxTextMatches) break;
            if ((el.textContent || '').toLowerCase().trim() === search) {
                result.text_matches.push(facts(el));
            }
        }
    } else {
        document.querySelectorAll(
            'input, textarea, select, [contenteditable="true"], [role="textbox"]'
        ).forEach(el => result.candidates.push(facts(el)));

        for (const cls of args.editorClasses) {
            document.querySelectorAll('.' + cls).forEach(
                el => result.editors.push(facts(el, { editor_class: cls }))
            );
        }
    }
    return result;
}
"""

SCROLL_INTO_VIEW_SCRIPT = """
(selector) => {
    const el = document.querySelector(selector);
    if (el) el.scrollIntoView({ behavior: 'instant', block: 'center' });
    return el !== null;
}
"""
