from __future__ import annotations

from dataclasses import dataclass, field
import re
from urllib.parse import urljoin, urldefrag

from bs4 import BeautifulSoup, Tag

CARD_TEXT_LIMIT = 500
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
SKIPPED_URL_MARKERS = ("linkedin.com", "facebook.com", "twitter.com", "instagram.com", "youtube.com")
SKIPPED_URL_PREFIXES = ("mailto:", "tel:")
SKIPPED_URL_SUFFIXES = (".pdf", ".doc", ".docx")
NOISE_TAGS = ["script", "style", "noscript", "svg", "iframe", "nav", "header", "footer", "form"]
NOISE_SELECTORS = [
    "[class*='cookie']",
    "[id*='cookie']",
    "[class*='consent']",
    "[class*='modal']",
    "[class*='popup']",
    "[class*='banner']",
    "[role='dialog']",
]
CONTENT_ROOT_SELECTORS = [
    "main",
    "article",
    "[role='main']",
    ".job-details",
    ".job-description",
    ".job-content",
    ".posting-content",
    ".position-details",
    "#job-details",
    "#job-description",
]
_WHITESPACE_RE = re.compile(r"\s+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_HORIZONTAL_SPACE_RE = re.compile(r"[ \t]+")


@dataclass(slots=True)
class LinkContext:
    url: str
    text: str
    aria_label: str | None = None
    headings: list[str] = field(default_factory=list)
    card_text: str = ""

    def as_prompt_item(self, index: int) -> dict[str, object]:
        return {
            "index": index,
            "url": self.url,
            "linkText": self.text,
            "ariaLabel": self.aria_label,
            "headings": self.headings,
            "cardText": self.card_text,
        }


def extract_link_contexts(html: str, base_url: str) -> list[LinkContext]:
    soup = BeautifulSoup(html, "html.parser")
    seen: set[str] = set()
    contexts: list[LinkContext] = []

    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href or href.lower().startswith(SKIPPED_URL_PREFIXES):
            continue
        absolute, _ = urldefrag(urljoin(base_url, href))
        if not absolute.startswith("http") or absolute in seen:
            continue
        seen.add(absolute)
        if _is_skipped_url(absolute):
            continue

        text = _collapse(anchor.get_text(" ", strip=True))
        aria_label = _collapse(str(anchor.get("aria-label") or "")) or None
        if not text and not aria_label:
            continue

        card = _find_card(anchor)
        headings = [
            heading_text
            for heading in card.find_all(HEADING_TAGS)
            if (heading_text := _collapse(heading.get_text(" ", strip=True)))
        ]
        card_text = _collapse(card.get_text(" ", strip=True))
        if len(card_text) > CARD_TEXT_LIMIT:
            card_text = card_text[:CARD_TEXT_LIMIT] + "..."

        contexts.append(
            LinkContext(url=absolute, text=text, aria_label=aria_label, headings=headings, card_text=card_text)
        )
    return contexts


def html_to_markdown(html: str) -> str:
    """Flatten a job page into markdown-ish text for the extraction prompt."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(NOISE_TAGS):
        tag.decompose()
    for selector in NOISE_SELECTORS:
        for tag in soup.select(selector):
            if not tag.decomposed:
                tag.decompose()

    root: Tag | None = None
    for selector in CONTENT_ROOT_SELECTORS:
        root = soup.select_one(selector)
        if root is not None and root.get_text(strip=True):
            break
        root = None
    if root is None:
        root = soup.body or soup

    for anchor in root.find_all("a", href=True):
        label = _collapse(anchor.get_text(" ", strip=True))
        if label:
            anchor.replace_with(f"[{label}]({anchor['href']})")
    for heading in reversed(root.find_all(HEADING_TAGS)):
        level = int(heading.name[1])
        heading.replace_with(f"\n\n{'#' * level} {_collapse(heading.get_text(' ', strip=True))}\n\n")
    for item in reversed(root.find_all("li")):
        item.replace_with(f"\n- {_collapse(item.get_text(' ', strip=True))}\n")
    for br in root.find_all("br"):
        br.replace_with("\n")
    for block in root.find_all(["p", "div", "section", "tr"]):
        block.insert_after("\n")

    text = root.get_text()
    lines = [_HORIZONTAL_SPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def _find_card(anchor: Tag) -> Tag:
    semantic = anchor.find_parent(["article", "li"])
    if semantic is not None:
        return semantic

    current: Tag = anchor
    for _ in range(4):
        parent = current.parent
        if not isinstance(parent, Tag) or parent.name in {"body", "html", "[document]"}:
            break
        if parent.find(HEADING_TAGS) is not None:
            return parent
        current = parent

    fallback: Tag = anchor
    for _ in range(3):
        parent = fallback.parent
        if not isinstance(parent, Tag) or parent.name in {"html", "[document]"}:
            break
        fallback = parent
    return fallback


def _is_skipped_url(url: str) -> bool:
    lowered = url.lower()
    if any(marker in lowered for marker in SKIPPED_URL_MARKERS):
        return True
    path = lowered.split("?", 1)[0]
    return path.endswith(SKIPPED_URL_SUFFIXES)


def _collapse(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()
