"""Conversion of legacy post bodies to markdown and sanitized HTML.

Vanilla stores each post body in whichever format the editor of the day used:

- ``Markdown``: markdown, sometimes with stray HTML left by a WYSIWYG editor
- ``Wysiwyg`` / ``Html``: HTML
- ``Text`` / ``TextEx``: plain text
- ``BBCode``: bracket tags
- ``Rich``: Quill delta JSON (``[{"insert": "text", "attributes": {...}}, ...]``)

Every body is normalized to markdown, then rendered to HTML and sanitized so it
can be served as-is by the forum.

Conversion never raises. Legacy corpora are full of near-miss encodings, so a
converter that cannot make sense of its input hands the content back unchanged
and the result is flagged as a fallback instead.
"""

from __future__ import annotations

import html
import json
import logging
import re
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Final, NamedTuple

import bleach
from bs4 import Tag
from markdown_it import MarkdownIt
from markdownify import ATX, MarkdownConverter, chomp

logger: logging.Logger = logging.getLogger(__name__)


class ContentFormat(StrEnum):
    """Format tags used by the legacy forum (compared case-insensitively)."""

    MARKDOWN = "markdown"
    WYSIWYG = "wysiwyg"
    TEXT = "text"
    TEXTEX = "textex"
    BBCODE = "bbcode"
    RICH = "rich"
    HTML = "html"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, tag: str | None) -> ContentFormat:
        try:
            return cls((tag or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ConvertedContent(NamedTuple):
    """Result of converting one post body."""

    markdown: str
    """Normalized markdown stored as the post content."""
    html: str
    """Sanitized HTML rendered from the markdown."""
    fallback: bool = False
    """True if some step could not convert its input and passed it through."""


# ---------------------------------------------------------------------------
# HTML -> markdown
# ---------------------------------------------------------------------------

_BLANK_LINES = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)*")


def _classes(el: Tag) -> list[str]:
    value = el.get("class") or []
    return value.split() if isinstance(value, str) else list(value)


class _VanillaMarkdownConverter(MarkdownConverter):
    """markdownify converter with rules for the Vanilla specific constructs.

    ``blockquote.Quote`` / ``blockquote.UserQuote`` become quote blocks,
    ``div.Spoiler`` becomes a labelled ``||spoiler||`` block and code blocks
    keep the ``language-*`` class of their inner ``<code>`` as the fence info.
    """

    class Options(MarkdownConverter.DefaultOptions):
        heading_style = ATX
        bullets = "-"
        autolinks = False
        escape_asterisks = False
        escape_underscores = False

    def convert_blockquote(self, el: Tag, text: str, parent_tags: set[str]) -> str:
        inner = text.strip()
        if not inner:
            return ""
        if "_inline" in parent_tags:
            return f" {inner} "
        quoted = "\n".join(f"> {line}" if line.strip() else ">" for line in inner.split("\n"))
        return f"\n\n{quoted}\n\n"

    def convert_div(self, el: Tag, text: str, parent_tags: set[str]) -> str:
        inner = text.strip()
        if "_inline" in parent_tags:
            return f" {inner} " if inner else ""
        if "Spoiler" in _classes(el):
            return f"\n\n**Spoiler:**\n||{inner}||\n\n"
        return f"\n\n{inner}\n\n" if inner else ""

    def convert_pre(self, el: Tag, text: str, parent_tags: set[str]) -> str:  # noqa: ARG002
        for br in el.find_all("br"):
            br.replace_with("\n")
        language = ""
        code = el.find("code")
        if isinstance(code, Tag):
            language = next(
                (c.removeprefix("language-") for c in _classes(code) if c.startswith("language-")),
                "",
            )
        body = el.get_text().strip("\n")
        if not body:
            return ""
        return f"\n\n```{language}\n{body}\n```\n\n"

    def convert_code(self, el: Tag, text: str, parent_tags: set[str]) -> str:
        if "_noformat" in parent_tags:
            return text
        body = el.get_text()
        if not body:
            return ""
        fence = "``" if "`" in body else "`"
        return f"{fence}{body}{fence}"

    def convert_em(self, el: Tag, text: str, parent_tags: set[str]) -> str:  # noqa: ARG002
        prefix, suffix, inner = chomp(text)
        if not inner:
            return text
        return f"{prefix}_{inner}_{suffix}"

    convert_i = convert_em

    def convert_s(self, el: Tag, text: str, parent_tags: set[str]) -> str:  # noqa: ARG002
        prefix, suffix, inner = chomp(text)
        if not inner:
            return text
        return f"{prefix}~~{inner}~~{suffix}"

    convert_del = convert_s
    convert_strike = convert_s

    def convert_script(self, el: Tag, text: str, parent_tags: set[str]) -> str:  # noqa: ARG002
        return ""

    convert_style = convert_script
    convert_noscript = convert_script
    convert_template = convert_script
    convert_title = convert_script


def html_to_markdown(source: str) -> str:
    """Down-convert HTML to markdown."""
    markdown = _VanillaMarkdownConverter().convert(source)
    return _BLANK_LINES.sub("\n\n", markdown).strip()


# ---------------------------------------------------------------------------
# BBCode -> HTML
# ---------------------------------------------------------------------------

_BBCODE_FLAGS = re.IGNORECASE | re.DOTALL
_BBCODE_CODE_BLOCK = re.compile(r"(\[code\].*?\[/code\])", _BBCODE_FLAGS)
_BBCODE_CODE_INNER = re.compile(r"\[code\](.*?)\[/code\]", _BBCODE_FLAGS)
_BBCODE_QUOTE_AUTHOR = re.compile(r"\[quote=(?:&quot;)?(.+?)(?:&quot;)?\](.*?)\[/quote\]", _BBCODE_FLAGS)

_BBCODE_SUBSTITUTIONS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (re.compile(r"\[b\](.*?)\[/b\]", _BBCODE_FLAGS), r"<strong>\1</strong>"),
    (re.compile(r"\[i\](.*?)\[/i\]", _BBCODE_FLAGS), r"<em>\1</em>"),
    (re.compile(r"\[u\](.*?)\[/u\]", _BBCODE_FLAGS), r"<u>\1</u>"),
    (re.compile(r"\[s\](.*?)\[/s\]", _BBCODE_FLAGS), r"<del>\1</del>"),
    (re.compile(r"\[url=([^\]]+)\](.*?)\[/url\]", _BBCODE_FLAGS), r'<a href="\1">\2</a>'),
    (re.compile(r"\[url\](.*?)\[/url\]", _BBCODE_FLAGS), r'<a href="\1">\1</a>'),
    (re.compile(r"\[img\](.*?)\[/img\]", _BBCODE_FLAGS), r'<img src="\1" />'),
    (re.compile(r"\[quote\](.*?)\[/quote\]", _BBCODE_FLAGS), r"<blockquote>\1</blockquote>"),
    (re.compile(r"\[\*\](.*?)(?=\[\*\]|\[/list\])", _BBCODE_FLAGS), r"<li>\1</li>"),
    (re.compile(r"\[list=1\](.*?)\[/list\]", _BBCODE_FLAGS), r"<ol>\1</ol>"),
    (re.compile(r"\[list\](.*?)\[/list\]", _BBCODE_FLAGS), r"<ul>\1</ul>"),
    (re.compile(r"\[color=[^\]]*\](.*?)\[/color\]", _BBCODE_FLAGS), r"\1"),
    (re.compile(r"\[size=[^\]]*\](.*?)\[/size\]", _BBCODE_FLAGS), r"\1"),
)


def _quote_with_author(match: re.Match[str]) -> str:
    # Vanilla writes attributed quotes as [quote="Name;1234"]
    author = match.group(1).split(";", 1)[0].strip()
    return f"<blockquote><strong>{author}:</strong><br />{match.group(2)}</blockquote>"


def bbcode_to_html(text: str) -> str:
    """Convert the known BBCode tags to HTML. Unknown tags are left as they are."""
    parts: list[str] = []
    for segment in _BBCODE_CODE_BLOCK.split(html.escape(text)):
        code = _BBCODE_CODE_INNER.fullmatch(segment)
        if code:
            parts.append(f"<pre><code>{code.group(1)}</code></pre>")
            continue
        converted = _BBCODE_QUOTE_AUTHOR.sub(_quote_with_author, segment)
        for pattern, replacement in _BBCODE_SUBSTITUTIONS:
            converted = pattern.sub(replacement, converted)
        parts.append(converted.replace("\n", "<br />\n"))
    return "".join(parts)


# ---------------------------------------------------------------------------
# Quill delta -> markdown
# ---------------------------------------------------------------------------


def _wrap_last_line(markdown: str, prefix: str, suffix: str = "") -> str:
    lines = markdown.split("\n")
    last_line = lines.pop()
    head = "\n".join(lines) + ("\n" if lines else "")
    return f"{head}{prefix}{last_line}{suffix}\n"


def _extend_code_block(markdown: str) -> str:
    """Move the line after a closing fence inside that fence."""
    lines = markdown.split("\n")
    last_line = lines.pop()
    if lines and lines[-1] == "```":
        lines.pop()
        return "\n".join(lines) + f"\n{last_line}\n```\n"
    return _wrap_last_line("\n".join([*lines, last_line]), "```\n", "\n```")


def _list_prefix(kind: object) -> str:
    if kind == "ordered":
        return "1. "
    if kind == "checked":
        return "- [x] "
    if kind == "unchecked":
        return "- [ ] "
    return "- "


def _embed_to_markdown(embed: dict[str, Any]) -> str:
    if "image" in embed:
        return f"![image]({embed['image']})\n"
    mention = embed.get("mention")
    if isinstance(mention, dict) and mention.get("name"):
        return f"@{mention['name']}"
    external = embed.get("embed-external")
    if isinstance(external, dict):
        data = external.get("data") or {}
        url = data.get("url")
        if url:
            name = data.get("name") or url
            if data.get("embedType") == "image":
                return f"![{name}]({url})\n"
            return f"[{name}]({url})\n"
    return ""


def _apply_inline_formatting(text: str, attributes: dict[str, Any]) -> str:
    if attributes.get("bold"):
        text = f"**{text}**"
    if attributes.get("italic"):
        text = f"*{text}*"
    if attributes.get("strike"):
        text = f"~~{text}~~"
    if attributes.get("code"):
        text = f"`{text}`"
    if attributes.get("link"):
        text = f"[{text}]({attributes['link']})"
    return text


def delta_to_markdown(content: str) -> str | None:
    """Convert Quill delta JSON to markdown.

    Returns:
        The markdown, or None if content is not JSON or not delta shaped.
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None

    ops = data.get("ops") if isinstance(data, dict) else data
    if not isinstance(ops, list) or not all(isinstance(op, dict) and "insert" in op for op in ops):
        return None

    markdown = ""
    in_code_block = False
    try:
        for op in ops:
            insert = op["insert"]
            attributes = op.get("attributes") or {}

            if not isinstance(insert, str):
                if isinstance(insert, dict):
                    markdown += _embed_to_markdown(insert)
                in_code_block = False
                continue

            # A newline carrying a block attribute formats the line before it
            if insert == "\n" and attributes.get("header"):
                level = max(1, min(int(attributes["header"]), 6))
                markdown = _wrap_last_line(markdown, "#" * level + " ")
                in_code_block = False
                continue
            if insert == "\n" and attributes.get("list"):
                markdown = _wrap_last_line(markdown, _list_prefix(attributes["list"]))
                in_code_block = False
                continue
            if insert == "\n" and attributes.get("blockquote"):
                markdown = _wrap_last_line(markdown, "> ")
                in_code_block = False
                continue
            if insert == "\n" and attributes.get("code-block"):
                markdown = _extend_code_block(markdown) if in_code_block else _wrap_last_line(markdown, "```\n", "\n```")
                in_code_block = True
                continue

            markdown += _apply_inline_formatting(insert, attributes)
            if "\n" in insert:
                in_code_block = False
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        logger.debug(f"Delta content could not be converted: {e}")
        return None

    return markdown.strip()


# ---------------------------------------------------------------------------
# Per-format dispatch
# ---------------------------------------------------------------------------


def _down_convert(content: str) -> str | None:
    try:
        return html_to_markdown(content)
    except Exception as e:  # noqa: BLE001 - malformed legacy HTML must not abort the run
        logger.debug(f"HTML content could not be converted: {e}")
        return None


def _from_markdown(content: str) -> str | None:
    # Markdown saved by a WYSIWYG editor may still carry HTML
    if "<" in content:
        return _down_convert(content)
    return content


def _from_text(content: str) -> str | None:
    return content


def _from_bbcode(content: str) -> str | None:
    try:
        converted = bbcode_to_html(content)
    except re.error as e:
        logger.debug(f"BBCode content could not be converted: {e}")
        return None
    return _down_convert(converted)


def _from_rich(content: str) -> str | None:
    if content.lstrip().startswith(("[", "{")):
        return delta_to_markdown(content)
    return _down_convert(content)


def _from_unknown(content: str) -> str | None:
    stripped = content.lstrip()
    if stripped.startswith("[") and '"insert"' in content:
        return delta_to_markdown(content)
    if "<" in content:
        return _down_convert(content)
    return content


_CONVERTERS: Final[dict[ContentFormat, Callable[[str], str | None]]] = {
    ContentFormat.MARKDOWN: _from_markdown,
    ContentFormat.WYSIWYG: _down_convert,
    ContentFormat.TEXT: _from_text,
    ContentFormat.TEXTEX: _from_text,
    ContentFormat.BBCODE: _from_bbcode,
    ContentFormat.RICH: _from_rich,
    ContentFormat.HTML: _down_convert,
    ContentFormat.UNKNOWN: _from_unknown,
}


def _to_markdown(content: str, format_tag: str | None) -> tuple[str, bool]:
    if not content:
        return "", False
    converted = _CONVERTERS[ContentFormat.parse(format_tag)](content)
    if converted is None:
        return content, True
    return converted, False


def convert_to_markdown(content: str, format_tag: str | None) -> str:
    """Convert legacy content in the given format to markdown.

    Content that cannot be converted is returned unchanged.
    """
    return _to_markdown(content, format_tag)[0]


# ---------------------------------------------------------------------------
# Markdown -> sanitized HTML
# ---------------------------------------------------------------------------

_ALLOWED_TAGS: Final[frozenset[str]] = frozenset(
    {
        "p",
        "br",
        "hr",
        "strong",
        "b",
        "em",
        "i",
        "u",
        "s",
        "del",
        "sub",
        "sup",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "ul",
        "ol",
        "li",
        "code",
        "pre",
        "blockquote",
        "a",
        "img",
        "span",
        "div",
        "table",
        "thead",
        "tbody",
        "tr",
        "th",
        "td",
    }
)

# width/height keep resized images, class keeps mention styling
_ALLOWED_ATTRIBUTES: Final[dict[str, list[str]]] = {
    "*": ["class"],
    "a": ["href", "title", "class"],
    "img": ["src", "alt", "title", "width", "height", "class"],
    "ol": ["start", "class"],
}

_ALLOWED_PROTOCOLS: Final[frozenset[str]] = frozenset({"http", "https", "mailto"})

# html=True: sized images and mentions are stored as inline HTML and survive
# through the sanitizer below.
_MD = MarkdownIt(
    "commonmark",
    {
        "html": True,
        "linkify": False,
        "typographer": False,
        "breaks": False,
    },
).enable(["table", "strikethrough"])


def render_markdown(markdown: str) -> str:
    """Render markdown to HTML and strip anything executable."""
    if not markdown:
        return ""
    rendered = _MD.render(markdown)
    cleaned = bleach.clean(
        rendered,
        tags=_ALLOWED_TAGS,
        attributes=_ALLOWED_ATTRIBUTES,
        protocols=_ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True,
    )
    return cleaned.strip()


def _escaped_paragraph(markdown: str) -> str:
    return f"<p>{html.escape(markdown)}</p>"


def convert_content(content: str | None, format_tag: str | None) -> ConvertedContent:
    """Full conversion pipeline: any legacy format -> markdown -> sanitized HTML."""
    markdown, fallback = _to_markdown(content or "", format_tag)
    try:
        rendered = render_markdown(markdown)
    except Exception as e:  # noqa: BLE001 - a single unrenderable post must not abort the run
        logger.debug(f"Markdown could not be rendered: {e}")
        return ConvertedContent(markdown=markdown, html=_escaped_paragraph(markdown), fallback=True)
    return ConvertedContent(markdown=markdown, html=rendered, fallback=fallback)
