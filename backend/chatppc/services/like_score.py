"""Predicted-like score between a taste profile and a message.

Pure functions: the same message, profile and ``now`` always give the same
result, so callers can recompute per message as tagging completes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chatppc.models.message import MessageRead, TaggingStatus
from chatppc.services.taxonomy import normalize_tag_score

MATCH_SCORE_BASELINE = 0.35
FRESHNESS_HALF_LIFE_HOURS = 72

READY_WEIGHTS = (0.65, 0.20, 0.15)  # tag match, reaction style, freshness
FALLBACK_WEIGHTS = (0.55, 0.45)  # reaction style, freshness

_MESSAGE_CATEGORY_KEYS = ("themes", "humor", "art", "tone", "topics")
_IMAGE_CATEGORY_KEYS = ("themes", "humor", "art", "tone", "objects")


class LikeScoreState(str, Enum):
    READY = "ready"
    PENDING = "pending"
    FALLBACK = "fallback"


@dataclass(frozen=True, slots=True)
class LikeScore:
    percent: int
    state: LikeScoreState
    debug: dict[str, float] | None = None

    def as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"percent": self.percent, "state": self.state.value}
        if self.debug is not None:
            result["debug"] = self.debug
        return result


def clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def apply_baseline(quality: float) -> float:
    return clamp01(MATCH_SCORE_BASELINE + (1 - MATCH_SCORE_BASELINE) * clamp01(quality))


def cosine_similarity(a: dict[str, float], b: dict[str, float]) -> float:
    if not a or not b:
        return 0.0
    norm_a = math.sqrt(sum(value * value for value in a.values()))
    norm_b = math.sqrt(sum(value * value for value in b.values()))
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    small, large = (a, b) if len(a) <= len(b) else (b, a)
    dot = sum(value * large[key] for key, value in small.items() if key in large)
    return clamp01(dot / (norm_a * norm_b))


def _add_tags(vector: dict[str, float], tags: Any) -> None:
    if not isinstance(tags, list):
        return
    for entry in tags:
        if not isinstance(entry, dict) or not isinstance(entry.get("tag"), str):
            continue
        key = " ".join(entry["tag"].strip().lower().split())
        if key:
            vector[key] = vector.get(key, 0.0) + clamp01(normalize_tag_score(entry.get("score")))


def _distribution_vector(entries: Any) -> dict[str, float]:
    if not isinstance(entries, list):
        return {}
    counts: dict[str, float] = {}
    for entry in entries:
        if isinstance(entry, dict) and isinstance(entry.get("reaction"), str):
            count = entry.get("count")
            if isinstance(count, (int, float)) and count > 0:
                counts[entry["reaction"]] = counts.get(entry["reaction"], 0.0) + float(count)
    total = sum(counts.values())
    if total <= 0:
        return {}
    return {reaction: count / total for reaction, count in counts.items()}


def message_tag_vector(tagging: dict[str, Any] | None) -> dict[str, float]:
    """Message, category, image and image-category tags summed per label."""
    vector: dict[str, float] = {}
    if not tagging:
        return vector
    _add_tags(vector, tagging.get("messageTags"))
    categories = tagging.get("categories") or {}
    for key in _MESSAGE_CATEGORY_KEYS:
        _add_tags(vector, categories.get(key))
    for image in tagging.get("images") or []:
        if not isinstance(image, dict):
            continue
        _add_tags(vector, image.get("tags"))
        image_categories = image.get("categories") or {}
        for key in _IMAGE_CATEGORY_KEYS:
            _add_tags(vector, image_categories.get(key))
    return vector


def profile_tag_vector(profile: dict[str, Any] | None) -> dict[str, float]:
    vector: dict[str, float] = {}
    if profile:
        _add_tags(vector, profile.get("topTags"))
    return vector


def compute_freshness(created_at: datetime, now: datetime) -> float:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    age_hours = max(0.0, (now - created_at).total_seconds() / 3600)
    return clamp01(math.exp(-math.log(2) * age_hours / FRESHNESS_HALF_LIFE_HOURS))


def _percent(value: float) -> int:
    return int(math.floor(clamp01(value) * 100 + 0.5))


def compute_message_like_score(
    message: MessageRead,
    profile: dict[str, Any] | None,
    now: datetime | None = None,
    debug: bool = False,
) -> LikeScore:
    """Calibrated 35-100 affinity between ``profile`` and ``message``.

    ``profile`` is one taste window: ``topTags`` and ``reactionDistribution``.
    """
    now = now or datetime.now(timezone.utc)
    reaction_match = cosine_similarity(
        _distribution_vector((profile or {}).get("reactionDistribution")),
        _distribution_vector([reaction.model_dump() for reaction in message.reactions]),
    )
    freshness = compute_freshness(message.created_at, now)
    status = message.tagging_status

    if status in (TaggingStatus.PENDING.value, TaggingStatus.PROCESSING.value):
        state, tag_match = LikeScoreState.PENDING, 0.0
    elif status != TaggingStatus.COMPLETED.value or not message.tagging:
        state, tag_match = LikeScoreState.FALLBACK, 0.0
    else:
        state = LikeScoreState.READY
        tag_match = cosine_similarity(profile_tag_vector(profile), message_tag_vector(message.tagging))

    if state is LikeScoreState.READY:
        tag_weight, reaction_weight, freshness_weight = READY_WEIGHTS
        quality = tag_weight * tag_match + reaction_weight * reaction_match + freshness_weight * freshness
    else:
        reaction_weight, freshness_weight = FALLBACK_WEIGHTS
        quality = reaction_weight * reaction_match + freshness_weight * freshness

    final = apply_baseline(quality)
    details = None
    if debug:
        details = {
            "tagMatch": tag_match,
            "reactionStyleMatch": reaction_match,
            "freshness": freshness,
            "final": final,
        }
    return LikeScore(percent=_percent(final), state=state, debug=details)


def build_message_like_score_map(
    messages: list[MessageRead],
    profile: dict[str, Any] | None,
    now: datetime | None = None,
    debug: bool = False,
) -> dict[str, LikeScore]:
    now = now or datetime.now(timezone.utc)
    return {
        message.id: compute_message_like_score(message, profile, now=now, debug=debug)
        for message in messages
    }
