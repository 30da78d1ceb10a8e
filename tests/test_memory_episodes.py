from memory_episodes import (
    DAY_MS,
    MEMORY_MAX_EPISODES,
    MemoryEpisode,
    format_lessons,
    prune_memory_episodes,
    relevant_episodes,
    remember_episode,
)

NOW = 100 * DAY_MS


def _episode(age_days, importance, tags=("aapl",), outcome="neutral"):
    ts = NOW - int(age_days * DAY_MS)
    return MemoryEpisode(id=f"mem:{ts}", timestamp=ts, importance=importance, context=f"{age_days}d", outcome=outcome, tags=list(tags))


def test_prune_drops_expired_and_faded_episodes():
    episodes = [
        _episode(31, 1.0),
        _episode(20, 1.0),
        _episode(10, 1.0),
        _episode(2, 0.0),
    ]
    prune_memory_episodes(episodes, NOW)
    assert [episode.context for episode in episodes] == ["2d", "10d"]


def test_prune_caps_episode_count_newest_first():
    episodes = [_episode(i / 1000, 0.5) for i in range(MEMORY_MAX_EPISODES + 20)]
    prune_memory_episodes(episodes, NOW)
    assert len(episodes) == MEMORY_MAX_EPISODES
    assert episodes[0].timestamp == NOW


def test_remember_scores_importance_and_normalises_tags():
    episodes = []
    episode = remember_episode(
        episodes,
        "Bought AAPL on strong chatter",
        "success",
        ["AAPL", "aapl", "Buy"],
        impact=1.0,
        confidence=1.0,
        novelty=1.0,
        now=NOW,
    )
    assert episode.importance == 1.0
    assert episode.tags == ["aapl", "buy"]
    assert episodes == [episode]

    odd = remember_episode(episodes, "x", "exploded", [], impact=0, confidence=0, novelty=0, now=NOW)
    assert odd.outcome == "neutral"
    assert odd.importance == 0.0


def test_relevant_episodes_rank_by_decayed_importance():
    episodes = [
        _episode(1, 0.9, tags=("aapl",), outcome="failure"),
        _episode(0.5, 0.4, tags=("AAPL", "buy")),
        _episode(0.1, 1.0, tags=("tsla",)),
    ]
    found = relevant_episodes(episodes, ["aapl"], limit=5, now=NOW)
    assert [episode.importance for episode in found] == [0.9, 0.4]
    assert format_lessons(found[:1]) == "- [failure] 1d"


def test_episode_from_dict_rejects_missing_timestamp():
    assert MemoryEpisode.from_dict({"context": "x"}) is None
    restored = MemoryEpisode.from_dict({"timestamp": 5, "importance": 3, "tags": ["a"]})
    assert restored.importance == 1.0
    assert "metadata" not in restored.to_dict()
