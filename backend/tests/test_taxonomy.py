"""Tests for tag normalization, filtering and taxonomy bucketing."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from chatppc.errors import TaggingPayloadError
from chatppc.services.taxonomy import (
    IMAGE_CATEGORIES,
    MAX_MESSAGE_TAGS,
    MESSAGE_CATEGORIES,
    MESSAGE_CATEGORY_LIMITS,
    MIN_CATEGORY_SCORE,
    MIN_MESSAGE_SCORE,
    ScoredTag,
    canonicalize_tag,
    canonicalize_topic_tag,
    classify_message_tags,
    detect_complexity,
    detect_language,
    enforce_exclusive_message,
    filter_tags,
    normalize_tag_label,
    normalize_tag_score,
    normalize_tagging_payload,
    parse_tagging_json,
    payload_tags,
)

_GENERATED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _raw(**record) -> str:
    return json.dumps(record)


def _labels(entries: list[dict]) -> list[str]:
    return [entry["tag"] for entry in entries]


def _normalize(raw: str, images: list[str] | None = None, message: str = "Ist das nicht die beste Pizza der Stadt?"):
    return normalize_tagging_payload(raw, images or [], "grok-test", message, generated_at=_GENERATED_AT)


# ── labels and scores ────────────────────────────────────────────────


class TestLabels:
    def test_unicode_stability(self) -> None:
        assert normalize_tag_label("Frühstück ÄÖÜß") == normalize_tag_label(" frühstück äöüß ")

    def test_decomposed_and_composed_forms_match(self) -> None:
        assert normalize_tag_label("Fru\u0308hstu\u0308ck") == normalize_tag_label("Fr\u00fchst\u00fcck")

    def test_whitespace_collapsed_and_capped(self) -> None:
        assert normalize_tag_label("  Big \t  Brain  ") == "big brain"
        assert len(normalize_tag_label("x" * 100)) == 48

    def test_non_string(self) -> None:
        assert normalize_tag_label(None) == ""
        assert normalize_tag_label(42) == ""

    def test_scores(self) -> None:
        assert normalize_tag_score(1.5) == 1.0
        assert normalize_tag_score(-0.2) == 0.0
        assert normalize_tag_score(0.12345) == 0.123
        assert normalize_tag_score("0.9") == 0.5
        assert normalize_tag_score(True) == 0.5
        assert normalize_tag_score(float("nan")) == 0.5

    def test_synonyms(self) -> None:
        assert canonicalize_tag("Umfrage") == "theme:poll"
        assert canonicalize_tag("dark_humor") == "humor:dark-humor"
        assert canonicalize_tag("pizza") == "pizza"

    def test_topic_mapping(self) -> None:
        assert canonicalize_topic_tag("Schweine") == "topic:animals"
        assert canonicalize_topic_tag("topic:travel") == "topic:travel"
        assert canonicalize_topic_tag("quantum") == ""


# ── filtering ────────────────────────────────────────────────────────


class TestFilterTags:
    def test_denylist_and_floor(self) -> None:
        tags = [
            ScoredTag("request", 0.9),
            ScoredTag("Command", 0.9),
            ScoredTag("username", 0.95),
            ScoredTag("funny", 0.9),
            ScoredTag("no image", 0.9),
            ScoredTag("pizza", 0.9),
            ScoredTag("cats", 0.4),
        ]
        assert filter_tags(tags, MAX_MESSAGE_TAGS, MIN_MESSAGE_SCORE) == [ScoredTag("pizza", 0.9)]

    def test_best_score_wins_and_sorted(self) -> None:
        tags = [ScoredTag("b", 0.6), ScoredTag("a", 0.6), ScoredTag("B", 0.8), ScoredTag("c", 0.7)]
        assert filter_tags(tags, 2, 0.55) == [ScoredTag("b", 0.8), ScoredTag("c", 0.7)]

    def test_generic_category_placeholder_dropped(self) -> None:
        assert filter_tags([ScoredTag("topic:general", 0.9)], 4, 0.55, "topics") == []


# ── buckets ──────────────────────────────────────────────────────────


class TestBuckets:
    def test_exclusivity(self) -> None:
        buckets = {
            "themes": [ScoredTag("shared", 0.9)],
            "humor": [ScoredTag("shared", 0.95), ScoredTag("humor:irony", 0.7)],
            "tone": [ScoredTag("shared", 0.6)],
        }
        result = enforce_exclusive_message(buckets)
        assert result["themes"] == [ScoredTag("shared", 0.9)]
        assert result["humor"] == [ScoredTag("humor:irony", 0.7)]
        assert result["tone"] == []
        assert result["topics"] == []

    def test_synthesis_scales_scores(self) -> None:
        buckets = classify_message_tags([ScoredTag("pizza", 0.9), ScoredTag("humor:sarcasm", 0.8)])
        assert buckets["topics"] == [ScoredTag("topic:food", 0.828)]
        assert buckets["humor"] == [ScoredTag("humor:sarcasm", 0.736)]

    def test_synthesis_respects_floor(self) -> None:
        """0.58 * 0.92 drops below the category floor."""
        buckets = classify_message_tags([ScoredTag("pizza", 0.58)])
        assert buckets["topics"] == []

    def test_language_detection(self) -> None:
        assert detect_language("Ist das nicht die beste Pizza der Stadt?") == "language:german"
        assert detect_language("this is the best and that is it") == "language:english"
        assert detect_language("Grüße") == "language:german"
        assert detect_language("lol") == "language:german"

    def test_complexity(self) -> None:
        assert detect_complexity("@grok https://x.test extraordinary sophisticated") == "complexity:complex"
        assert detect_complexity("ok wow lol") == "complexity:simple"
        assert detect_complexity("@grok") == "complexity:simple"


# ── payload ──────────────────────────────────────────────────────────


class TestNormalizePayload:
    def test_message_payload(self) -> None:
        raw = _raw(
            messageTags=[
                {"tag": "Pizza", "score": 0.9},
                {"tag": "sarcastic", "score": 0.8},
                {"tag": "request", "score": 0.95},
                {"tag": "username", "score": 0.9},
                {"tag": "low", "score": 0.2},
            ],
            categories={"themes": [{"tag": "question", "score": 0.9}], "humor": [], "tone": []},
            images=[],
        )
        payload = _normalize(raw)

        assert payload["provider"] == "grok"
        assert payload["model"] == "grok-test"
        assert payload["generatedAt"] == _GENERATED_AT.isoformat()

        tags = _labels(payload["messageTags"])
        assert "pizza" in tags
        assert "humor:sarcasm" in tags
        assert "request" not in tags
        assert "username" not in tags
        assert "low" not in tags
        assert all(entry["score"] >= MIN_MESSAGE_SCORE for entry in payload["messageTags"])
        assert len(tags) <= MAX_MESSAGE_TAGS

        categories = payload["categories"]
        assert set(categories) == set(MESSAGE_CATEGORIES)
        assert _labels(categories["themes"]) == ["theme:question"]
        assert "humor:sarcasm" in _labels(categories["humor"])
        assert categories["topics"] == [{"tag": "topic:food", "score": 0.828}]
        assert payload["images"] == []

    def test_tone_always_has_language_and_complexity(self) -> None:
        payload = _normalize(_raw(messageTags=[], categories={}))
        tone = _labels(payload["categories"]["tone"])
        assert "language:german" in tone
        assert "complexity:simple" in tone

    @pytest.mark.parametrize("message", ["Hallo", "ok", "\U0001f602\U0001f602", "https://x.test/cat.png", ""])
    def test_tone_markers_without_decisive_words(self, message) -> None:
        tone = _labels(_normalize(_raw(categories={}), message=message)["categories"]["tone"])
        assert any(tag.startswith("language:") for tag in tone)
        assert any(tag.startswith("complexity:") for tag in tone)

    def test_model_tone_marker_kept(self) -> None:
        raw = _raw(categories={"tone": [{"tag": "english", "score": 0.9}]})
        tone = _labels(_normalize(raw)["categories"]["tone"])
        assert "language:english" in tone
        assert "language:german" not in tone

    def test_category_floor_and_caps(self) -> None:
        raw = _raw(
            categories={
                "humor": [
                    {"tag": "humor:irony", "score": 0.9},
                    {"tag": "humor:satire", "score": 0.8},
                    {"tag": "humor:wordplay", "score": 0.7},
                    {"tag": "humor:absurdism", "score": 0.6},
                    {"tag": "humor:dark-humor", "score": 0.5},
                ]
            }
        )
        payload = _normalize(raw)
        humor = payload["categories"]["humor"]
        assert len(humor) == MESSAGE_CATEGORY_LIMITS["humor"]
        for entries in payload["categories"].values():
            assert all(entry["score"] >= MIN_CATEGORY_SCORE for entry in entries)

    def test_category_exclusivity(self) -> None:
        raw = _raw(
            messageTags=[
                {"tag": "umfrage", "score": 0.9},
                {"tag": "sarcasm", "score": 0.9},
                {"tag": "dogs", "score": 0.9},
                {"tag": "anime", "score": 0.9},
                {"tag": "friendly", "score": 0.9},
            ],
            categories={
                "themes": [{"tag": "theme:poll", "score": 0.9}],
                "topics": [{"tag": "topic:animals", "score": 0.9}, {"tag": "theme:poll", "score": 0.9}],
                "tone": [{"tag": "theme:poll", "score": 0.9}],
            },
        )
        payload = _normalize(raw)
        all_labels = [tag for key in MESSAGE_CATEGORIES for tag in _labels(payload["categories"][key])]
        assert len(all_labels) == len(set(all_labels))

    def test_image_backfill(self) -> None:
        raw = _raw(
            messageTags=[],
            images=[
                {
                    "imageUrl": "https://x.test/cat.png.",
                    "tags": [{"tag": "cat", "score": 0.9}, {"tag": "sofa", "score": 0.7}],
                }
            ],
        )
        payload = _normalize(raw, images=["https://x.test/cat.png"])
        [image] = payload["images"]
        assert image["imageUrl"] == "https://x.test/cat.png"
        categories = image["categories"]
        assert set(categories) == set(IMAGE_CATEGORIES)
        assert all(categories[key] for key in IMAGE_CATEGORIES)
        assert _labels(categories["objects"]) == ["cat"]
        assert _labels(categories["themes"]) == ["sofa"]
        labels = [tag for key in IMAGE_CATEGORIES for tag in _labels(categories[key])]
        assert len(labels) == len(set(labels))

    def test_missing_image_entry(self) -> None:
        payload = _normalize(_raw(images=[]), images=["https://x.test/a.png", "https://x.test/b.gif"])
        assert [image["imageUrl"] for image in payload["images"]] == [
            "https://x.test/a.png",
            "https://x.test/b.gif",
        ]
        assert payload["images"][0]["tags"] == []

    def test_code_fence_tolerated(self) -> None:
        parsed = parse_tagging_json('```json\n{"messageTags": []}\n```')
        assert parsed == {"messageTags": []}

    def test_invalid_json(self) -> None:
        with pytest.raises(TaggingPayloadError):
            _normalize("Sorry, I cannot tag this.")

    def test_json_array(self) -> None:
        with pytest.raises(TaggingPayloadError):
            _normalize("[]")

    def test_payload_tags_cover_every_level(self) -> None:
        raw = _raw(
            messageTags=[{"tag": "pizza", "score": 0.9}],
            images=[{"imageUrl": "https://x.test/cat.png", "tags": [{"tag": "cat", "score": 0.9}]}],
        )
        payload = _normalize(raw, images=["https://x.test/cat.png"])
        tags = {entry.tag for entry in payload_tags(payload)}
        assert {"pizza", "topic:food", "cat", "language:german"} <= tags
        assert payload_tags(None) == []
