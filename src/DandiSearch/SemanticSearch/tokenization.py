"""Tokenization and text cleanup shared by ingestion and the hashing embedder."""
from __future__ import annotations

import re
from typing import List, Tuple

from bs4 import BeautifulSoup

__all__ = (
    "collapse_whitespace",
    "strip_markdown",
    "strip_markup",
    "tokenize",
    "tokenize_with_spans",
)

_TOKEN_PATTERN = re.compile(r"[\w']+")
_WHITESPACE = re.compile(r"\s+")
_HTML_HINT = re.compile(r"<[a-zA-Z/!][^>]*>|&[a-zA-Z#0-9]+;")
_MD_IMAGE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_MD_LINK = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_MD_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_MD_EMPHASIS = re.compile(r"(\*\*|\*|~~|`)(?=\S)(.+?)(?<=\S)\1")
# Underscore emphasis only at word edges so snake_case identifiers survive
_MD_UNDERSCORE = re.compile(r"(?<!\w)(__|_)(?=\S)(.+?)(?<=\S)\1(?!\w)")
_MD_BULLET = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)


def tokenize(text: str) -> List[str]:
    """Tokenize text into lowercase alphanumeric tokens."""

    return [token.lower() for token in _TOKEN_PATTERN.findall(text)]


def tokenize_with_spans(text: str) -> Tuple[List[str], List[Tuple[int, int]]]:
    """Return tokens alongside their character spans."""

    tokens: List[str] = []
    spans: List[Tuple[int, int]] = []
    for match in _TOKEN_PATTERN.finditer(text):
        tokens.append(match.group(0).lower())
        spans.append((match.start(), match.end()))
    return tokens, spans


def strip_markup(text: str) -> str:
    """Remove HTML tags and decode entities, keeping visible text.

    Plain strings without anything tag- or entity-like are returned untouched
    so ordinary prose never pays the parser cost.

    Examples:
        >>> strip_markup("<p>Rat <b>olfactory</b> bulb</p>")
        'Rat olfactory bulb'
    """

    if not _HTML_HINT.search(text):
        return text
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


def strip_markdown(text: str) -> str:
    """Drop light Markdown syntax (links, images, headings, emphasis, bullets).

    Examples:
        >>> strip_markdown("## Methods\\nSee [the paper](https://x.org) for **details**")
        'Methods\\nSee the paper for details'
    """

    text = _MD_IMAGE.sub(r"\1", text)
    text = _MD_LINK.sub(r"\1", text)
    text = _MD_HEADING.sub("", text)
    text = _MD_BULLET.sub("", text)
    # Repeat once for nested emphasis such as ***bold italic***
    for _ in range(2):
        text = _MD_EMPHASIS.sub(r"\2", text)
        text = _MD_UNDERSCORE.sub(r"\2", text)
    return text


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace to single spaces and trim the ends."""

    return _WHITESPACE.sub(" ", text).strip()
