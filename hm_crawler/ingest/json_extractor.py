"""Locate and parse JSON payloads embedded in HTML pages.

Three kinds of payload are handled:

* typed script tags (``__NEXT_DATA__`` and JSON-LD), which are plain JSON;
* ``window.*`` global assignments, which are often near-JSON and go through
  a best-effort repair pipeline;
* the legacy ``productArticleDetails`` object on product pages, a
  single-quoted JavaScript literal with ternary expressions that needs a
  fixed sequence of text rewrites before it parses.
"""

import json
import logging
import re
from typing import Any, Callable, Iterable, Optional

from selectolax.parser import HTMLParser

from hm_crawler.errors import ParsingError

logger = logging.getLogger(__name__)

WINDOW_STATE_NAMES = ("productList", "__INITIAL_STATE__", "HM_DATA", "pageData")

_WINDOW_ASSIGNMENT = re.compile(
    r"window\.(" + "|".join(re.escape(n) for n in WINDOW_STATE_NAMES) + r")\s*=\s*"
)

PRODUCT_DETAILS_MARKER = "var productArticleDetails = "
SENTINEL = "replaced"


def extract_next_data(tree: HTMLParser) -> Optional[dict[str, Any]]:
    """
    Extract __NEXT_DATA__ script tag content.

    Common in Next.js applications.
    """
    node = tree.css_first("script#__NEXT_DATA__")
    if node is None:
        return None
    try:
        data = json.loads(node.text())
    except json.JSONDecodeError as e:
        logger.debug(f"Failed to parse __NEXT_DATA__: {e}")
        return None
    return data if isinstance(data, dict) else None


def extract_json_ld(tree: HTMLParser) -> list[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD objects found in the page.
    """
    results = []
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            results.append(json.loads(script.text()))
        except json.JSONDecodeError:
            continue
    return results


def walk_path(data: Any, path: Iterable[str]) -> Any:
    """Follow ``path`` through nested dicts, returning None on the first miss."""
    current = data
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def balanced_literal(text: str, start: int) -> Optional[str]:
    """Return the ``{...}`` / ``[...]`` literal opening at ``start``, honoring string quoting."""
    if start >= len(text) or text[start] not in "{[":
        return None
    depth = 0
    quote = None
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in "\"'":
            quote = char
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


# ---------------------------------------------------------------------------
# Near-JSON repair
# ---------------------------------------------------------------------------

def _split_strings(text: str) -> list[tuple[bool, str]]:
    """Split text into (is_string_literal, segment) pieces for double-quoted JSON strings."""
    pieces: list[tuple[bool, str]] = []
    buffer: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            buffer.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                pieces.append((True, "".join(buffer)))
                buffer = []
                in_string = False
        elif char == '"':
            if buffer:
                pieces.append((False, "".join(buffer)))
            buffer = [char]
            in_string = True
        else:
            buffer.append(char)
    if buffer:
        pieces.append((in_string, "".join(buffer)))
    return pieces


def _outside_strings(transform: Callable[[str], str]) -> Callable[[str], str]:
    def stage(text: str) -> str:
        return "".join(
            segment if is_string else transform(segment)
            for is_string, segment in _split_strings(text)
        )
    return stage


def normalize_quotes(text: str) -> str:
    """Rewrite single-quoted string literals as double-quoted JSON strings."""
    out: list[str] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char == '"':
            literal = re.match(r'"(?:[^"\\]|\\.)*"', text[index:], re.DOTALL)
            if literal is None:
                out.append(text[index:])
                break
            out.append(literal.group())
            index += literal.end()
        elif char == "'":
            literal = re.match(r"'((?:[^'\\]|\\.)*)'", text[index:], re.DOTALL)
            if literal is None:
                out.append(text[index:])
                break
            inner = literal.group(1).replace("\\'", "'")
            out.append(json.dumps(inner, ensure_ascii=False))
            index += literal.end()
        else:
            out.append(char)
            index += 1
    return "".join(out)


quote_bare_keys = _outside_strings(
    lambda s: re.sub(r"([{,]\s*)([A-Za-z_$][\w$]*)(\s*:)", r'\1"\2"\3', s)
)
undefined_to_null = _outside_strings(lambda s: re.sub(r"\bundefined\b", "null", s))
strip_trailing_commas = _outside_strings(lambda s: re.sub(r",(\s*[}\]])", r"\1", s))

# Applied in this order; each stage assumes the previous ones have run
REPAIR_STAGES: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("normalize_quotes", normalize_quotes),
    ("quote_bare_keys", quote_bare_keys),
    ("undefined_to_null", undefined_to_null),
    ("strip_trailing_commas", strip_trailing_commas),
)


def repair_near_json(text: str) -> Optional[Any]:
    """
    Parse JSON-like text, repairing it if needed.

    Returns:
        The parsed value, or None if the text can't be repaired. Never raises.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    repaired = text
    for name, stage in REPAIR_STAGES:
        try:
            repaired = stage(repaired)
        except re.error as e:
            logger.debug(f"Repair stage {name} failed: {e}")
            return None

    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        logger.debug(f"Near-JSON payload still invalid after repair: {e}")
        return None


def extract_window_state(html: str) -> list[tuple[str, Any]]:
    """Parse every ``window.<name> = {...}`` assignment we know about, in document order."""
    found = []
    for match in _WINDOW_ASSIGNMENT.finditer(html):
        literal = balanced_literal(html, match.end())
        if literal is None:
            continue
        value = repair_near_json(literal)
        if value is not None:
            found.append((match.group(1), value))
    return found


# ---------------------------------------------------------------------------
# Product detail object
# ---------------------------------------------------------------------------

# The order matters: quotes must be normalized only after strings containing
# a double quote are gone, and the ternary patterns rely on normalized quotes.
DETAIL_REWRITE_STAGES: tuple[tuple[str, re.Pattern, str], ...] = (
    ("drop_strings_with_embedded_quotes", re.compile(r": '(.*)\"(.*)'"), f': "{SENTINEL}"'),
    ("single_to_double_quotes", re.compile(r"'"), '"'),
    ("collapse_ternaries_with_comma", re.compile(r':(.*)isDesktop(.*)",'), f': "{SENTINEL}",'),
    ("collapse_ternaries", re.compile(r':(.*)isDesktop(.*)"'), f': "{SENTINEL}"'),
    ("strip_trailing_commas", re.compile(r",(?!\s*?[{\[\"'\w])"), ""),
)


def rewrite_product_details(object_text: str) -> str:
    """Apply the detail rewrite stages, then turn the closing ``};`` into ``}``."""
    rewritten = object_text
    for _name, pattern, replacement in DETAIL_REWRITE_STAGES:
        rewritten = pattern.sub(replacement, rewritten)
    return rewritten.replace("};", "}", 1)


def extract_product_article_details(body: str) -> Optional[dict[str, Any]]:
    """
    Parse the ``productArticleDetails`` object of a product page.

    Returns:
        The parsed object, or None if the page doesn't carry one.

    Raises:
        ParsingError: If the object is present but can't be parsed.
    """
    parts = body.split(PRODUCT_DETAILS_MARKER)
    if len(parts) < 2:
        return None
    if len(parts) > 2:
        raise ParsingError("Found more than one productArticleDetails object")

    if "</script>" not in parts[1]:
        raise ParsingError("productArticleDetails object is not terminated")

    object_text = parts[1].split("</script>")[0]
    try:
        data = json.loads(rewrite_product_details(object_text))
    except json.JSONDecodeError as e:
        raise ParsingError(f"Product object could not be parsed: {e}") from e

    if not isinstance(data, dict):
        raise ParsingError("Product object is not a JSON object")
    return data
