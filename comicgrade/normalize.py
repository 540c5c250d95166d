from __future__ import annotations

"""
Text normalisation helpers shared by the parser, the orchestrator and the
collection importer.

Public helpers:

* basic_clean(text) -> str
    Light-weight clean for free text coming back from remote services.

* normalize_defect_tag(tag) -> str
    Canonical snake_case defect tag ("Spine Roll" -> "spine_roll"), with the
    alias table applied so different models' wording collapses together.

* normalize_defects(tags) -> List[str]
    Tag list (or comma-separated string) -> de-duplicated canonical tags,
    first-seen order. Anything else yields an empty list.
"""

import re
import unicodedata
from collections.abc import Iterable, Mapping
from typing import Any, List

from .constants import DEFECT_ALIASES

_TAG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def _strip_markup(text: str) -> str:
    text = re.sub(r"```[a-zA-Z]*", " ", text)
    text = re.sub(r"<[^>]+>", " ", text)
    return text.replace("**", "").replace("__", "")


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2013", "-").replace("\u2014", "-")
    return text


def basic_clean(text: str | None, max_chars: int | None = None) -> str:
    """Strip markup, normalise unicode and whitespace, optionally truncate."""
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    text = _strip_markup(text)
    text = _normalise_unicode(text)
    text = re.sub(r"\s+", " ", text).strip()
    if max_chars is not None and len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return text


def normalize_defect_tag(tag: object) -> str:
    if tag is None:
        return ""
    raw = _normalise_unicode(str(tag)).strip().lower()
    if not raw:
        return ""
    spaced = re.sub(r"[\s_\-]+", " ", raw).strip(" .,;:")
    if spaced in DEFECT_ALIASES:
        return DEFECT_ALIASES[spaced]
    return _TAG_STRIP_RE.sub("_", spaced).strip("_")


def normalize_defects(tags: Any) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, str):
        tags = re.split(r"[,;\n]", tags)
    elif isinstance(tags, (bytes, Mapping)) or not isinstance(tags, Iterable):
        return []
    out: List[str] = []
    seen = set()
    for t in tags:
        norm = normalize_defect_tag(t)
        if norm and norm not in seen and norm not in {"none", "n_a", "no_defects"}:
            seen.add(norm)
            out.append(norm)
    return out
