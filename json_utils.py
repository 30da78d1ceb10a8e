"""Shared helpers for parsing loosely formatted JSON from LLM responses.

The agent consumes JSON emitted by large language models for signal research,
position reviews and batch analyst decisions.  In practice those responses may
include Markdown code fences, smart quotes, trailing commas or surrounding
prose.  This module consolidates the recovery logic so every caller applies
the same sanitisation steps and the same conservative fallbacks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple
import json
import logging
import math
import re

VERDICTS = ("BUY", "SKIP", "WAIT")
ENTRY_QUALITIES = ("excellent", "good", "fair", "poor")
RECOVERED_FLAG = "Recovered from malformed LLM JSON response"
PARSE_FAILURE_FLAG = "LLM response parse failure"
MAX_LIST_ITEMS = 12
PREVIEW_CHARS = 320

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_NEWLINES = re.compile(r"\r?\n")


def strip_markdown_json(text: str) -> str:
    """Remove Markdown fences and leading ``json`` labels from *text*."""

    cleaned = str(text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"\s*```$", "", cleaned)
    if cleaned.lower().startswith("json"):
        cleaned = cleaned[4:].strip()
        cleaned = cleaned.lstrip(":").strip()
    return cleaned


def _normalise_candidate(data: Any) -> dict[str, Any] | None:
    """Return a dict when ``data`` is a mapping or list of mappings."""

    if isinstance(data, Mapping):
        return dict(data)
    if isinstance(data, list):
        for item in data:
            if isinstance(item, Mapping):
                return dict(item)
    return None


def parse_llm_json_response(
    raw_text: str,
    *,
    defaults: Mapping[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> Tuple[dict[str, Any], bool]:
    """Parse ``raw_text`` into a dictionary while tolerating noisy formats.

    Parameters
    ----------
    raw_text:
        Raw response returned by the language model.
    defaults:
        Optional key/value pairs that will be used to populate missing fields
        in the parsed output.
    logger:
        Optional logger used for debug messages when JSON parsing fails.

    Returns
    -------
    tuple(dict, bool)
        A tuple containing the parsed dictionary (with ``defaults`` applied)
        and a boolean indicating whether valid JSON content was extracted.
    """

    text = str(raw_text or "").strip()
    base: dict[str, Any] = dict(defaults or {})

    if not text:
        return base, False

    candidates: list[str] = []

    def _add_candidate(value: str) -> None:
        candidate = value.strip()
        if candidate and candidate not in candidates:
            candidates.append(candidate)

    _add_candidate(text)
    stripped = strip_markdown_json(text)
    _add_candidate(stripped)
    _add_candidate(_TRAILING_COMMA.sub(r"\1", stripped))

    parsed: dict[str, Any] | None = None

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            if logger:
                logger.debug("Failed to parse JSON candidate: %s", exc)
            continue
        parsed = _normalise_candidate(data)
        if parsed is not None:
            break

    if parsed is None:
        search_text = stripped or text
        first = search_text.find("{")
        last = search_text.rfind("}")
        if first != -1 and last != -1 and last > first:
            snippet = search_text[first : last + 1]
            for attempt in (snippet, _TRAILING_COMMA.sub(r"\1", snippet)):
                try:
                    parsed = _normalise_candidate(json.loads(attempt))
                except json.JSONDecodeError as exc:
                    if logger:
                        logger.debug("Bracket slicing JSON parsing failed: %s", exc)
                    continue
                if parsed is not None:
                    break

    success = parsed is not None
    if parsed:
        base.update(parsed)
    return base, success


# ---------------------------------------------------------------------------
# Research analysis
# ---------------------------------------------------------------------------


@dataclass
class ResearchAnalysis:
    verdict: str
    confidence: float
    entry_quality: str
    reasoning: str
    red_flags: List[str] = field(default_factory=list)
    catalysts: List[str] = field(default_factory=list)


@dataclass
class ParsedResearch:
    """Result of :func:`parse_research_analysis`.

    ``repaired`` is set whenever any recovery step was needed, including the
    WAIT fallback used when no candidate parsed at all.
    """

    analysis: ResearchAnalysis
    repaired: bool
    response_preview: str
    parse_error: Optional[str] = None
    fallback: bool = False


def normalize_verdict(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalised = value.strip().upper()
    return normalised if normalised in VERDICTS else None


def normalize_entry_quality(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalised = value.strip().lower()
    return normalised if normalised in ENTRY_QUALITIES else None


def normalize_string_list(value: Any) -> List[str]:
    """Accept a list of strings or a ``;``/``,`` separated string."""

    if isinstance(value, list):
        items = [item.strip() for item in value if isinstance(item, str)]
    elif isinstance(value, str):
        items = [item.strip() for item in re.split(r"[;,]", value)]
    else:
        return []
    return [item for item in items if item][:MAX_LIST_ITEMS]


def _sanitize(raw: str) -> str:
    text = re.sub(r"```json\s*", "", str(raw or ""), flags=re.IGNORECASE)
    text = text.replace("```", "")
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("‘", "'").replace("’", "'")
    return text.strip()


def _verdict_from_text(text: str) -> str:
    upper = text.upper()
    for verdict in VERDICTS:
        if re.search(rf"\b{verdict}\b", upper):
            return verdict
    return "WAIT"


def parse_research_analysis(raw_content: str, symbol: str) -> ParsedResearch:
    """Parse a research response, recovering from malformed JSON.

    Six candidates are tried in order: the brace-sliced object, the same
    without trailing commas, with newlines flattened, both, then the whole
    sanitised text and its flattened form.  When none parses the result is a
    conservative WAIT at 0.35 confidence carrying a parse-failure red flag.
    """

    sanitized = _sanitize(raw_content)
    first = sanitized.find("{")
    last = sanitized.rfind("}")
    sliced = sanitized[first : last + 1].strip() if first >= 0 and last > first else sanitized
    preview = sliced[:PREVIEW_CHARS]

    candidates = [
        sliced,
        _TRAILING_COMMA.sub(r"\1", sliced),
        _NEWLINES.sub(" ", sliced),
        _TRAILING_COMMA.sub(r"\1", _NEWLINES.sub(" ", sliced)),
        sanitized,
        _NEWLINES.sub(" ", sanitized),
    ]

    parsed: Optional[dict] = None
    parse_error: Optional[str] = None
    used_index = -1
    seen: set[str] = set()
    for index, candidate in enumerate(candidates):
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as exc:
            parse_error = str(exc)
            continue
        if isinstance(value, dict):
            parsed = value
            used_index = index
            break

    if parsed is None:
        analysis = ResearchAnalysis(
            verdict="WAIT",
            confidence=0.35,
            entry_quality="fair",
            reasoning=f"LLM response for {symbol} was not valid JSON. Applied conservative WAIT fallback.",
            red_flags=[PARSE_FAILURE_FLAG],
            catalysts=[],
        )
        return ParsedResearch(analysis, True, preview, parse_error, fallback=True)

    inferred = normalize_verdict(parsed.get("verdict"))
    verdict = inferred or _verdict_from_text(sliced)

    raw_confidence = parsed.get("confidence")
    try:
        confidence = float(raw_confidence) if not isinstance(raw_confidence, bool) else math.nan
    except (TypeError, ValueError):
        confidence = math.nan
    confidence = max(0.0, min(1.0, confidence)) if math.isfinite(confidence) else 0.35

    quality = normalize_entry_quality(parsed.get("entry_quality"))
    reasoning_raw = parsed.get("reasoning")
    has_reasoning = isinstance(reasoning_raw, str) and bool(reasoning_raw.strip())
    reasoning = (
        reasoning_raw.strip()
        if has_reasoning
        else f"LLM response for {symbol} did not include valid structured reasoning."
    )

    red_flags = normalize_string_list(parsed.get("red_flags"))
    catalysts = normalize_string_list(parsed.get("catalysts"))
    repaired = used_index > 0 or inferred is None or quality is None or not has_reasoning
    if repaired and RECOVERED_FLAG not in red_flags:
        red_flags.append(RECOVERED_FLAG)

    analysis = ResearchAnalysis(
        verdict=verdict,
        confidence=confidence,
        entry_quality=quality or "fair",
        reasoning=reasoning,
        red_flags=red_flags,
        catalysts=catalysts,
    )
    return ParsedResearch(analysis, repaired, preview, parse_error)


__all__ = [
    "ENTRY_QUALITIES",
    "ParsedResearch",
    "ResearchAnalysis",
    "VERDICTS",
    "normalize_entry_quality",
    "normalize_string_list",
    "normalize_verdict",
    "parse_llm_json_response",
    "parse_research_analysis",
    "strip_markdown_json",
]
