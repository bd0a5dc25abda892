from __future__ import annotations

"""
Text normalisation helpers shared by the review extractor and the scorer.

Public helpers:

* basic_clean(text) -> str
    Light-weight clean used on every extracted review field.

* normalize_for_sentiment(text) -> str
    Lower-cased, punctuation-trimmed view fed to the sentiment model.
"""

import re
import unicodedata

from bs4 import BeautifulSoup

from . import config

MAX_INPUT_CHARS: int = config.MAX_INPUT_CHARS

# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _strip_html(text: str) -> str:
    if not text:
        return ""
    if "<" not in text:
        return text
    soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ", strip=True)


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("–", "-").replace("—", "-")
    return text


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def strip_html(text: str | None) -> str:
    return re.sub(r"\s+", " ", _strip_html(text or "")).strip()


def clamp_text_length(text: str, limit: int = MAX_INPUT_CHARS) -> str:
    return text[:limit] if len(text) > limit else text


def basic_clean(text: str | None) -> str:
    """Light-weight clean for review fields.

    * strips HTML
    * normalises unicode and whitespace
    * truncates excessively long inputs
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    text = clamp_text_length(text)
    text = _strip_html(text)
    text = _normalise_unicode(text)

    text = text.replace("\r", " ").replace("\n", " ").replace("\t", " ")
    text = re.sub(r"\s+", " ", text).strip()
    return text


def normalize_for_sentiment(text: str | None) -> str:
    """Lower-case and drop sentence punctuation (.,!) before scoring."""
    norm = basic_clean(text).lower()
    norm = re.sub(r"[.,!]", "", norm)
    return re.sub(r"\s+", " ", norm).strip()
