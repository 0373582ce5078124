"""Tests for the predicted-like score."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatppc.models.message import MessageRead, ReactionCount
from chatppc.services.like_score import (
    LikeScoreState,
    apply_baseline,
    build_message_like_score_map,
    compute_freshness,
    compute_message_like_score,
    cosine_similarity,
    message_tag_vector,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _message(
    tagging_status: str | None = "completed",
    tagging: dict | None = None,
    reactions: dict[str, int] | None = None,
    age: timedelta = timedelta(0),
    message_id: str = "m1",
) -> MessageRead:
    return MessageRead(
        id=message_id,
        type="message",
        content="Pizza?",
        author_id=None,
        author_name="bob",
        question_message_id=None,
        created_at=NOW - age,
        tagging_status=tagging_status,
        tagging=tagging,
        reactions=[ReactionCount(reaction=name, count=count) for name, count in (reactions or {}).items()],
    )


PIZZA_TAGGING = {"messageTags": [{"tag": "pizza", "score": 0.8}], "categories": {}, "images": []}
PIZZA_PROFILE = {
    "topTags": [{"tag": "  Pizza ", "score": 2.0}],
    "reactionDistribution": [{"reaction": "LOL", "count": 5}, {"reaction": "LIKE", "count": 0}],
}


class TestStates:
    def test_pending_uses_fallback_weights(self) -> None:
        score = compute_message_like_score(_message("pending", PIZZA_TAGGING), PIZZA_PROFILE, NOW)
        assert score.state is LikeScoreState.PENDING
        # 0.35 + 0.65 * (0.45 * freshness 1.0)
        assert score.percent == 64

    def test_processing_is_pending(self) -> None:
        assert compute_message_like_score(_message("processing"), None, NOW).state is LikeScoreState.PENDING

    @pytest.mark.parametrize("status", ["failed", None])
    def test_fallback_without_tags(self, status) -> None:
        score = compute_message_like_score(_message(status), PIZZA_PROFILE, NOW)
        assert score.state is LikeScoreState.FALLBACK
        assert score.percent == 64

    def test_completed_without_payload_falls_back(self) -> None:
        assert compute_message_like_score(_message("completed", None), PIZZA_PROFILE, NOW).state is (
            LikeScoreState.FALLBACK
        )


class TestReadyScore:
    def test_perfect_match(self) -> None:
        message = _message(tagging=PIZZA_TAGGING, reactions={"LOL": 2})
        score = compute_message_like_score(message, PIZZA_PROFILE, NOW)
        assert score.state is LikeScoreState.READY
        assert score.percent == 100

    def test_no_overlap_after_one_half_life(self) -> None:
        message = _message(tagging={"messageTags": [{"tag": "cats", "score": 0.9}]}, age=timedelta(hours=72))
        score = compute_message_like_score(message, PIZZA_PROFILE, NOW)
        # 0.35 + 0.65 * (0.15 * 0.5)
        assert score.percent == 40

    def test_baseline_floor(self) -> None:
        message = _message(tagging={"messageTags": [{"tag": "cats", "score": 0.9}]}, age=timedelta(days=400))
        assert compute_message_like_score(message, None, NOW).percent == 35

    def test_debug_details(self) -> None:
        message = _message(tagging=PIZZA_TAGGING, reactions={"LOL": 2})
        score = compute_message_like_score(message, PIZZA_PROFILE, NOW, debug=True)
        assert score.debug == pytest.approx(
            {"tagMatch": 1.0, "reactionStyleMatch": 1.0, "freshness": 1.0, "final": 1.0}
        )
        assert score.as_dict()["debug"]["final"] == pytest.approx(1.0)
        assert "debug" not in compute_message_like_score(message, PIZZA_PROFILE, NOW).as_dict()

    def test_deterministic(self) -> None:
        message = _message(tagging=PIZZA_TAGGING, reactions={"WTF": 1, "LOL": 3}, age=timedelta(hours=5))
        first = compute_message_like_score(message, PIZZA_PROFILE, NOW, debug=True)
        second = compute_message_like_score(message, PIZZA_PROFILE, NOW, debug=True)
        assert first == second

    def test_score_map(self) -> None:
        messages = [_message(message_id="a"), _message("pending", message_id="b")]
        scores = build_message_like_score_map(messages, PIZZA_PROFILE, NOW)
        assert set(scores) == {"a", "b"}
        assert scores["b"].state is LikeScoreState.PENDING


class TestHelpers:
    def test_cosine(self) -> None:
        assert cosine_similarity({}, {"a": 1.0}) == 0.0
        assert cosine_similarity({"a": 1.0}, {"b": 1.0}) == 0.0
        assert cosine_similarity({"a": 2.0, "b": 0.0}, {"a": 0.5}) == pytest.approx(1.0)

    def test_freshness_half_life(self) -> None:
        assert compute_freshness(NOW, NOW) == 1.0
        assert compute_freshness(NOW - timedelta(hours=72), NOW) == pytest.approx(0.5)
        assert compute_freshness(NOW + timedelta(hours=1), NOW) == 1.0

    def test_baseline(self) -> None:
        assert apply_baseline(0.0) == pytest.approx(0.35)
        assert apply_baseline(2.0) == pytest.approx(1.0)

    def test_message_vector_covers_images(self) -> None:
        tagging = {
            "messageTags": [{"tag": "pizza", "score": 0.5}],
            "categories": {"topics": [{"tag": "topic:food", "score": 0.8}]},
            "images": [
                {
                    "tags": [{"tag": "Pizza", "score": 0.25}],
                    "categories": {"objects": [{"tag": "plate", "score": 0.6}]},
                }
            ],
        }
        assert message_tag_vector(tagging) == {"pizza": 0.75, "topic:food": 0.8, "plate": 0.6}
