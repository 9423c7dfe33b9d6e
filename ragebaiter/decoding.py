"""
Response Decoding — JSON Extraction and Strict Schema Decoders

Model output arrives as free text that should contain one JSON object.
extract_json() strips code fences and slices the outermost {...} span;
the decoders then check every expected field's type. A single field of
the wrong type invalidates the whole object: decoders return None,
they never raise.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from ragebaiter.models import (
    PHASE2_FIELDS,
    ContentVector,
    Phase1Analysis,
    Phase2Analysis,
)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def extract_json(raw: str) -> Optional[str]:
    """Return the outermost {...} span of raw, or None."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None

    without_fences = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", trimmed))
    start = without_fences.find("{")
    end = without_fences.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None

    return without_fences[start:end + 1]


def parse_json_object(raw: str) -> Optional[Any]:
    extracted = extract_json(raw)
    if extracted is None:
        return None
    try:
        return json.loads(extracted)
    except json.JSONDecodeError:
        return None


def _is_number(value: Any) -> bool:
    # bool is an int subclass; a JSON true is not a score
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ============================================================
# PHASE 1
# ============================================================

def decode_phase1(value: Any) -> Optional[Phase1Analysis]:
    """
    Decode the primary analyzer payload:

        {"tweet_vector": {"social", "economic", "populist"},
         "fallacies": [str], "topic": str, "confidence": number}

    Vector components and confidence are clamped into range, not rejected.
    """
    if not isinstance(value, dict):
        return None

    vector = value.get("tweet_vector")
    if not isinstance(vector, dict):
        return None
    if not all(_is_number(vector.get(axis)) for axis in ("social", "economic", "populist")):
        return None

    fallacies = value.get("fallacies")
    if not isinstance(fallacies, list) or not all(isinstance(f, str) for f in fallacies):
        return None

    topic = value.get("topic")
    if not isinstance(topic, str):
        return None

    confidence = value.get("confidence")
    if not _is_number(confidence):
        return None

    return Phase1Analysis(
        vector=ContentVector(
            social=vector["social"],
            economic=vector["economic"],
            populist=vector["populist"],
        ),
        fallacies=tuple(fallacies),
        topic=topic.strip(),
        confidence=confidence,
    )


def decode_phase1_text(raw: str) -> Optional[Phase1Analysis]:
    return decode_phase1(parse_json_object(raw))


# ============================================================
# PHASE 2
# ============================================================

def decode_phase2(value: Any) -> Optional[Phase2Analysis]:
    """
    Decode the secondary analyzer payload (camelCase keys). Every field must
    be a string and non-empty after trimming.
    """
    if not isinstance(value, dict):
        return None

    fields: dict[str, str] = {}
    for attr, wire in PHASE2_FIELDS.items():
        raw = value.get(wire)
        if not isinstance(raw, str):
            return None
        cleaned = raw.strip()
        if not cleaned:
            return None
        fields[attr] = cleaned

    return Phase2Analysis(**fields)


def decode_phase2_text(raw: str) -> Optional[Phase2Analysis]:
    return decode_phase2(parse_json_object(raw))
