from json_utils import (
    PARSE_FAILURE_FLAG,
    RECOVERED_FLAG,
    normalize_string_list,
    parse_llm_json_response,
    parse_research_analysis,
    strip_markdown_json,
)


def test_strip_markdown_json_removes_fences():
    assert strip_markdown_json('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_markdown_json('json: {"a": 1}') == '{"a": 1}'


def test_parse_llm_json_response_recovers_trailing_commas_and_prose():
    parsed, ok = parse_llm_json_response(
        'Sure! Here you go: {"decision": "BUY", "confidence": 0.8,} Thanks', defaults={"symbol": "AAPL"}
    )
    assert ok
    assert parsed == {"symbol": "AAPL", "decision": "BUY", "confidence": 0.8}


def test_parse_llm_json_response_returns_defaults_on_garbage():
    parsed, ok = parse_llm_json_response("no json here", defaults={"decision": "HOLD"})
    assert not ok
    assert parsed == {"decision": "HOLD"}


def test_research_analysis_clean_response_is_not_repaired():
    raw = (
        '{"verdict": "BUY", "confidence": 0.82, "entry_quality": "good", '
        '"reasoning": "Earnings beat", "red_flags": [], "catalysts": ["earnings"]}'
    )
    parsed = parse_research_analysis(raw, "AAPL")
    assert not parsed.repaired
    assert parsed.analysis.verdict == "BUY"
    assert parsed.analysis.catalysts == ["earnings"]


def test_research_analysis_repairs_fenced_smart_quoted_json():
    raw = "```json\n{“verdict”: “buy”, “confidence”: 1.7, “reasoning”: “ok”,}\n```"
    parsed = parse_research_analysis(raw, "AAPL")
    assert parsed.repaired
    assert parsed.analysis.verdict == "BUY"
    assert parsed.analysis.confidence == 1.0
    assert parsed.analysis.entry_quality == "fair"
    assert RECOVERED_FLAG in parsed.analysis.red_flags


def test_research_analysis_falls_back_to_wait():
    parsed = parse_research_analysis("I think you should BUY it", "TSLA")
    assert parsed.fallback
    assert parsed.analysis.verdict == "WAIT"
    assert parsed.analysis.confidence == 0.35
    assert parsed.analysis.red_flags == [PARSE_FAILURE_FLAG]


def test_normalize_string_list_accepts_delimited_strings():
    assert normalize_string_list("dilution; lawsuit, ") == ["dilution", "lawsuit"]
    assert normalize_string_list(42) == []
