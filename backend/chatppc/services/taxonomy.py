"""Tag normalization and taxonomy bucketing for the tagging worker.

The classifier returns free-form tags. Everything here turns that output
into a stable payload: labels are normalized, noise is filtered, scores
are clamped, and every tag lands in at most one category bucket.

Message buckets are ``themes, humor, art, tone, topics``; image buckets
swap ``topics`` for ``objects``. Earlier buckets win when a tag could go
into several.
"""

from __future__ import annotations

import json
import math
import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chatppc.errors import TaggingPayloadError
from chatppc.services.media import collect_image_sources, normalize_image_url

MAX_TAG_LENGTH = 48
MAX_MESSAGE_TAGS = 16
MAX_IMAGE_TAGS = 20
MESSAGE_TAG_TARGET_MIN = 10
IMAGE_TAG_TARGET_MIN = 12
MIN_MESSAGE_SCORE = 0.55
MIN_CATEGORY_SCORE = 0.55
SYNTHETIC_SCORE_FACTOR = 0.92
DEFAULT_SCORE = 0.5
DEFAULT_LANGUAGE_TAG = "language:german"
TAGGING_PROVIDER = "grok"
TAGGING_LANGUAGE = "en"

MESSAGE_CATEGORIES = ("themes", "humor", "art", "tone", "topics")
IMAGE_CATEGORIES = ("themes", "humor", "art", "tone", "objects")
_PRIMARY_CATEGORIES = ("themes", "humor", "art", "tone")

MESSAGE_CATEGORY_LIMITS = {"themes": 4, "humor": 3, "art": 3, "tone": 5, "topics": 4}

TAGGING_PROMPT = "\n".join([
    "You are a strict tagging engine for chat messages and images.",
    "Return JSON only. No markdown. No prose.",
    "All tags must be english, lowercase, concise, and normalized.",
    "Always include confidence scores between 0 and 1.",
    "Do not invent tags. If a category has no evidence, leave it empty.",
    "Use machine-readable category tags.",
    'Humor tags must use only these values: "humor:sarcasm", "humor:irony", "humor:absurdism", '
    '"humor:wordplay", "humor:dark-humor", "humor:satire", "humor:self-deprecating", "humor:playful-banter".',
    'Theme tags must describe format/intent only: e.g. "theme:poll", "theme:question", "theme:request", '
    '"theme:opinion", "theme:comparison".',
    'Topic tags must be broad domains only: e.g. "topic:animals", "topic:food", "topic:relationships", '
    '"topic:technology", "topic:school", "topic:entertainment".',
    'Tone tags must include at least one "language:<...>" and one "complexity:<...>" marker when inferable.',
    "Avoid generic/meta noise tags such as funny, humor, theme, topic, casual, neutral, request, create, "
    "command, no image, username.",
    "Target density:",
    f"- messageTags: {MESSAGE_TAG_TARGET_MIN}-{MAX_MESSAGE_TAGS} (target 12)",
    "- image tags per image: 12-20 (target 16)",
    "Schema:",
    "{",
    '  "messageTags":[{"tag":"...", "score":0.0}],',
    '  "categories":{"themes":[],"humor":[],"art":[],"tone":[],"topics":[]},',
    '  "images":[{"imageUrl":"<exact sourceImageUrl>", "tags":[], '
    '"categories":{"themes":[],"humor":[],"art":[],"tone":[],"objects":[]}}]',
    "}",
])


@dataclass(frozen=True, slots=True)
class ScoredTag:
    tag: str
    score: float

    def as_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "score": self.score}


Buckets = dict[str, list[ScoredTag]]

# ── vocabularies ─────────────────────────────────────────────────

HUMOR_TAGS = frozenset({
    "humor:sarcasm", "humor:irony", "humor:absurdism", "humor:wordplay",
    "humor:dark-humor", "humor:satire", "humor:self-deprecating", "humor:playful-banter",
})
THEME_TAGS = frozenset({
    "theme:poll", "theme:question", "theme:request", "theme:opinion",
    "theme:comparison", "theme:instruction", "theme:announcement", "theme:story",
})
ART_TAGS = frozenset({
    "art:illustration", "art:photo", "art:cinematic", "art:anime",
    "art:pixel-art", "art:graphic-design", "art:visual-style",
})
TONE_PREFIXES = ("language:", "complexity:", "register:", "directness:", "affect:")

GENERIC_LOW_INFO_TAGS = frozenset({
    "funny", "humor", "theme", "topic", "casual", "neutral",
    "request", "short", "simple", "message", "text", "content",
})
_GENERIC_PER_CATEGORY = {
    "themes": "theme:general",
    "humor": "humor",
    "tone": "tone",
    "topics": "topic:general",
}
_INSTRUCTIONAL_NOISE = (
    re.compile(r"^(request|create|command|username|at mention|user instruction|ai prompt|topic [\w-]+)$"),
    re.compile(r"^(no image|single select|multiple choice|poll option)$"),
)

TAG_SYNONYMS = {
    "umfrage": "theme:poll",
    "survey": "theme:poll",
    "single select": "theme:poll",
    "multiple choice": "theme:poll",
    "quiz": "theme:poll",
    "frage": "theme:question",
    "sarkasmus": "humor:sarcasm",
    "sarcastic": "humor:sarcasm",
    "ironisch": "humor:irony",
    "ironic": "humor:irony",
    "absurd": "humor:absurdism",
    "witz": "humor:wordplay",
    "pun": "humor:wordplay",
    "dark humor": "humor:dark-humor",
    "dunkler humor": "humor:dark-humor",
    "satire": "humor:satire",
    "banter": "humor:playful-banter",
    "deutsch": "language:german",
    "german": "language:german",
    "englisch": "language:english",
    "english": "language:english",
    "einfach": "complexity:simple",
    "simple": "complexity:simple",
    "komplex": "complexity:complex",
    "complex": "complexity:complex",
    "intellektuell": "complexity:complex",
    "informal": "register:informal",
    "locker": "register:informal",
    "formal": "register:formal",
    "direct": "directness:direct",
    "direkt": "directness:direct",
    "indirect": "directness:indirect",
    "serious": "affect:serious",
    "freundlich": "affect:friendly",
    "friendly": "affect:friendly",
    "aggressiv": "affect:aggressive",
    "aggressive": "affect:aggressive",
    "playful": "affect:playful",
}


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


_TOPIC_MAPPINGS = (
    ("topic:animals", _rx(r"\b(animal|animals|pet|pets|pig|pigs|schwein|schweine|dog|dogs|cat|cats)\b")),
    ("topic:food", _rx(
        r"\b(food|meal|eat|eating|cooking|recipe|dish|tasty|burger|pizza|drink|breakfast|frühstück|fruehstueck)\b"
    )),
    ("topic:relationships", _rx(r"\b(friend|friends|best friend|relationship|dating|love|partner)\b")),
    ("topic:technology", _rx(
        r"\b(technology|tech|software|hardware|ai|chatgpt|grok|model|coding|programming)\b"
    )),
    ("topic:school", _rx(r"\b(school|class|classes|homework|exam|teacher|student|university)\b")),
    ("topic:entertainment", _rx(
        r"\b(entertainment|movie|film|music|song|game|gaming|meme|show|series)\b"
    )),
)

# Ordered (pattern, canonical) rules per bucket; first hit wins
_THEME_RULES = (
    (_rx(r"\b(poll|survey|umfrage|quiz|vote)\b"), "theme:poll"),
    (_rx(r"\b(question|frage)\b"), "theme:question"),
    (_rx(r"\b(request|ask|bitte)\b"), "theme:request"),
    (_rx(r"\b(opinion|stance|meinung)\b"), "theme:opinion"),
    (_rx(r"\b(compare|comparison|vergleich|versus|vs)\b"), "theme:comparison"),
    (_rx(r"\b(instruction|anweisung|how to)\b"), "theme:instruction"),
    (_rx(r"\b(announcement|ankuendigung|ankündigung)\b"), "theme:announcement"),
    (_rx(r"\b(story|geschichte|anecdote)\b"), "theme:story"),
)
_HUMOR_RULES = (
    (_rx(r"\b(sarcasm|sarkasmus)\b"), "humor:sarcasm"),
    (_rx(r"\b(irony|ironisch|ironic)\b"), "humor:irony"),
    (_rx(r"\b(absurd|absurdism|wtf|chaos)\b"), "humor:absurdism"),
    (_rx(r"\b(wordplay|pun|witz)\b"), "humor:wordplay"),
    (_rx(r"\b(dark humor|dark-humor)\b"), "humor:dark-humor"),
    (_rx(r"\b(satire)\b"), "humor:satire"),
    (_rx(r"\b(self[- ]deprecating|self[- ]deprecation)\b"), "humor:self-deprecating"),
    (_rx(r"\b(banter|playful banter)\b"), "humor:playful-banter"),
)
_ART_RULES = (
    (_rx(r"\b(illustration|drawing)\b"), "art:illustration"),
    (_rx(r"\b(photo|photography)\b"), "art:photo"),
    (_rx(r"\b(cinematic)\b"), "art:cinematic"),
    (_rx(r"\b(anime)\b"), "art:anime"),
    (_rx(r"\b(pixelart|pixel art)\b"), "art:pixel-art"),
    (_rx(r"\b(graphic design|design)\b"), "art:graphic-design"),
    (_rx(r"\b(visual style|aesthetic|style)\b"), "art:visual-style"),
)
_TONE_RULES = (
    (_rx(r"\b(german|deutsch)\b"), "language:german"),
    (_rx(r"\b(english|englisch)\b"), "language:english"),
    (_rx(r"\b(simple|einfach|leicht)\b"), "complexity:simple"),
    (_rx(r"\b(complex|komplex|intellektuell|technical)\b"), "complexity:complex"),
    (_rx(r"\b(informal|locker|casual)\b"), "register:informal"),
    (_rx(r"\b(formal)\b"), "register:formal"),
    (_rx(r"\b(direct|direkt)\b"), "directness:direct"),
    (_rx(r"\b(indirect)\b"), "directness:indirect"),
    (_rx(r"\b(friendly|freundlich)\b"), "affect:friendly"),
    (_rx(r"\b(playful)\b"), "affect:playful"),
    (_rx(r"\b(serious|ernst)\b"), "affect:serious"),
    (_rx(r"\b(aggressive|aggressiv)\b"), "affect:aggressive"),
)

MESSAGE_PATTERNS = {
    "themes": (_rx(
        r"\b(theme:(poll|question|request|opinion|comparison|instruction|announcement|story)|poll|survey|"
        r"umfrage|question|frage|opinion|meinung|comparison|vergleich|instruction|anweisung|announcement|"
        r"story|geschichte)\b"
    ),),
    "humor": (_rx(
        r"\b(humor:(sarcasm|irony|absurdism|wordplay|dark-humor|satire|self-deprecating|playful-banter)|"
        r"sarcasm|sarkasmus|irony|ironisch|absurd|wordplay|pun|witz|satire|dark humor|banter)\b"
    ),),
    "art": (_rx(
        r"\b(art:(illustration|photo|cinematic|anime|pixel-art|graphic-design|visual-style)|drawing|"
        r"illustration|photo|cinematic|anime|pixelart|design|visual style)\b"
    ),),
    "tone": (_rx(
        r"\b(language:|complexity:|register:|directness:|affect:|german|english|deutsch|englisch|simple|"
        r"einfach|complex|intellektuell|formal|informal|direct|indirect|friendly|aggressive|serious|playful)\b"
    ),),
}
IMAGE_PATTERNS = {
    "themes": (_rx(
        r"\b(game|spiel|movie|film|food|essen|travel|reise|sport|nature|natur|portrait|porträt|portraet|"
        r"meme|animation|scene|szene|landscape|landschaft)\b"
    ),),
    "humor": (_rx(
        r"\b(meme|funny|lustig|joke|witz|absurd|sarcasm|sarkasmus|wtf|chaos|comedic|humor|lol)\b"
    ),),
    "art": (_rx(
        r"\b(drawing|zeichnung|design|style|stil|aesthetic|ästhetik|aesthetik|color|farbe|composition|"
        r"komposition|cinematic|anime|pixelart|illustration|photo|foto|render|graphic|grafik)\b"
    ),),
    "tone": (_rx(
        r"\b(happy|glücklich|gluecklich|sad|traurig|angry|wütend|wuetend|chill|chillig|aggressive|aggressiv|"
        r"neutral|wholesome|toxic|toxisch|dramatic|dramatisch|dark|dunkel|bright|hell)\b"
    ),),
    "objects": (_rx(
        r"\b(person|people|mensch|man|woman|face|gesicht|head|kopf|hand|dog|hund|cat|katze|animal|tier|car|"
        r"auto|truck|lkw|bike|fahrrad|bus|train|zug|plane|flugzeug|tree|baum|flower|blume|house|haus|"
        r"building|gebäude|gebaeude|road|straße|strasse|phone|handy|computer|screen|bildschirm|table|tisch|"
        r"chair|stuhl|door|tür|tuer|window|fenster|shirt|hemd|hat|mütze|muetze|food|essen|burger|pizza|drink|"
        r"getränk|getraenk|ball|book|buch|bag|tasche|glasses|brille|logo)\b"
    ),),
}

# (fallback label, score) used when an image bucket has nothing to offer
_IMAGE_FALLBACKS = {
    "themes": ("szene", 0.36),
    "humor": ("leichter humor", 0.32),
    "art": ("visueller stil", 0.32),
    "tone": ("neutraler ton", 0.32),
    "objects": ("objekt", 0.38),
}

_GERMAN_STOPWORDS_RE = re.compile(r"\b(der|die|das|und|nicht|ist|ein|eine)\b")
_ENGLISH_STOPWORDS_RE = re.compile(r"\b(the|and|is|are|this|that|with)\b")
_UMLAUT_RE = re.compile(r"[äöüß]", re.IGNORECASE)
_MENTION_TOKEN_RE = re.compile(r"@\w+")
_URL_RE = re.compile(r"https?://\S+")
_NON_WORD_RE = re.compile(r"[^\w\s-]+")
_CODE_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_CLOSE_RE = re.compile(r"\s*```$")


# ── labels and scores ────────────────────────────────────────────


def normalize_tag_label(raw: object) -> str:
    """NFC-normalize, trim, lowercase and collapse whitespace; max 48 chars."""
    if not isinstance(raw, str):
        return ""
    normalized = " ".join(unicodedata.normalize("NFC", raw).lower().split())
    return normalized[:MAX_TAG_LENGTH]


def normalize_tag_score(raw: object) -> float:
    """Clamp to [0, 1] and round to three decimals; non-numbers score 0.5."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
        return DEFAULT_SCORE
    return round(min(1.0, max(0.0, float(raw))), 3)


def canonicalize_tag(raw: object) -> str:
    label = normalize_tag_label(raw)
    if not label:
        return ""
    label = " ".join(label.replace("_", " ").split())
    return TAG_SYNONYMS.get(label, label)


def _canonical_by_rules(tag: str, exact: frozenset[str], rules) -> str:
    canonical = canonicalize_tag(tag)
    if not canonical:
        return ""
    if canonical in exact:
        return canonical
    for pattern, value in rules:
        if pattern.search(canonical):
            return value
    return ""


def canonicalize_theme_tag(tag: str) -> str:
    return _canonical_by_rules(tag, THEME_TAGS, _THEME_RULES)


def canonicalize_humor_tag(tag: str) -> str:
    return _canonical_by_rules(tag, HUMOR_TAGS, _HUMOR_RULES)


def canonicalize_art_tag(tag: str) -> str:
    return _canonical_by_rules(tag, ART_TAGS, _ART_RULES)


def canonicalize_tone_tag(tag: str) -> str:
    canonical = canonicalize_tag(tag)
    if canonical.startswith(TONE_PREFIXES):
        return canonical
    return _canonical_by_rules(canonical, frozenset(), _TONE_RULES)


def canonicalize_topic_tag(tag: str) -> str:
    canonical = canonicalize_tag(tag)
    if not canonical:
        return ""
    if canonical.startswith("topic:"):
        return canonical
    for topic, pattern in _TOPIC_MAPPINGS:
        if pattern.search(canonical):
            return topic
    return ""


_CATEGORY_CANONICALIZERS = {
    "themes": canonicalize_theme_tag,
    "humor": canonicalize_humor_tag,
    "art": canonicalize_art_tag,
    "tone": canonicalize_tone_tag,
    "topics": canonicalize_topic_tag,
}


def canonicalize_for_category(tag: str, category: str) -> str:
    return _CATEGORY_CANONICALIZERS[category](tag)


def is_instructional_noise(tag: str) -> bool:
    if not tag:
        return True
    return any(pattern.match(tag) for pattern in _INSTRUCTIONAL_NOISE)


def is_low_information(tag: str, category: str | None = None) -> bool:
    if not tag or tag in GENERIC_LOW_INFO_TAGS:
        return True
    return category is not None and _GENERIC_PER_CATEGORY.get(category) == tag


# ── tag set operations ───────────────────────────────────────────


def _ranked(best: dict[str, float], max_count: int) -> list[ScoredTag]:
    ordered = sorted(best.items(), key=lambda item: (-item[1], item[0]))
    return [ScoredTag(tag, score) for tag, score in ordered[:max_count]]


def dedupe_tags(tags: Iterable[ScoredTag], max_count: int) -> list[ScoredTag]:
    """Keep the best score per label, highest first, ties alphabetical."""
    best: dict[str, float] = {}
    for entry in tags:
        tag = normalize_tag_label(entry.tag)
        if not tag:
            continue
        score = normalize_tag_score(entry.score)
        if score > best.get(tag, -1.0):
            best[tag] = score
    return _ranked(best, max_count)


def filter_tags(
    tags: Iterable[ScoredTag],
    max_count: int,
    min_score: float,
    category: str | None = None,
) -> list[ScoredTag]:
    """Canonicalize, drop noise and low scores, dedupe and cap."""
    best: dict[str, float] = {}
    for entry in tags:
        score = normalize_tag_score(entry.score)
        if score < min_score:
            continue
        canonical = (
            canonicalize_for_category(entry.tag, category)
            if category
            else canonicalize_tag(entry.tag)
        )
        if not canonical or is_instructional_noise(canonical):
            continue
        if is_low_information(canonical, category):
            continue
        if score > best.get(canonical, -1.0):
            best[canonical] = score
    return _ranked(best, max_count)


def append_unique(
    current: Sequence[ScoredTag], incoming: Iterable[ScoredTag], max_count: int
) -> list[ScoredTag]:
    result = list(current)
    seen = {entry.tag for entry in result}
    for entry in incoming:
        if len(result) >= max_count:
            break
        if entry.tag in seen:
            continue
        seen.add(entry.tag)
        result.append(entry)
    return result[:max_count]


def _parse_scored_tags(raw: object, max_count: int) -> list[ScoredTag]:
    if not isinstance(raw, list):
        return []
    seen: set[str] = set()
    tags: list[ScoredTag] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        tag = normalize_tag_label(entry.get("tag"))
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(ScoredTag(tag, normalize_tag_score(entry.get("score"))))
        if len(tags) >= max_count:
            break
    return tags


def _parse_buckets(raw: object, categories: Sequence[str], max_count: int) -> Buckets:
    record = raw if isinstance(raw, dict) else {}
    return {key: _parse_scored_tags(record.get(key), max_count) for key in categories}


def _synthetic(tag: ScoredTag) -> ScoredTag:
    score = min(1.0, max(0.0, tag.score * SYNTHETIC_SCORE_FACTOR))
    return ScoredTag(canonicalize_tag(tag.tag), round(score, 3))


def _best_category(tag: str, patterns: dict[str, tuple[re.Pattern[str], ...]]) -> str | None:
    """Category with the most pattern hits; earlier categories win ties."""
    best, best_hits = None, 0
    for category in _PRIMARY_CATEGORIES:
        hits = sum(1 for pattern in patterns[category] if pattern.search(tag))
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def _matches(tag: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    return any(pattern.search(tag) for pattern in patterns)


def all_tags(buckets: Buckets, categories: Sequence[str]) -> list[ScoredTag]:
    return [entry for key in categories for entry in buckets.get(key, [])]


# ── message categories ───────────────────────────────────────────


def filter_message_buckets(buckets: Buckets) -> Buckets:
    return {
        key: filter_tags(
            buckets.get(key, []), MESSAGE_CATEGORY_LIMITS[key], MIN_CATEGORY_SCORE, key
        )
        for key in MESSAGE_CATEGORIES
    }


def enforce_exclusive_message(buckets: Buckets) -> Buckets:
    """Each tag stays only in the first bucket (by category order) that has it."""
    seen: set[str] = set()
    result: Buckets = {}
    for key in MESSAGE_CATEGORIES:
        limit = MESSAGE_CATEGORY_LIMITS[key]
        kept: list[ScoredTag] = []
        for entry in dedupe_tags(buckets.get(key, []), limit):
            if entry.tag in seen:
                continue
            seen.add(entry.tag)
            kept.append(entry)
        result[key] = kept
    return result


def classify_message_tags(tags: Iterable[ScoredTag]) -> Buckets:
    """Synthesize message buckets from flat tags by keyword patterns."""
    buckets: Buckets = {key: [] for key in MESSAGE_CATEGORIES}
    for original in tags:
        tag = _synthetic(original)
        if not tag.tag:
            continue
        category = _best_category(tag.tag, MESSAGE_PATTERNS)
        if category:
            canonical = canonicalize_for_category(tag.tag, category)
            if canonical:
                buckets[category].append(ScoredTag(canonical, tag.score))
            continue
        topic = canonicalize_topic_tag(tag.tag)
        if topic:
            buckets["topics"].append(ScoredTag(topic, tag.score))
    return enforce_exclusive_message(filter_message_buckets(buckets))


def detect_language(text: str) -> str:
    """Language marker for the tone bucket; German when nothing decides."""
    lowered = text.lower()
    german = len(_GERMAN_STOPWORDS_RE.findall(lowered)) + (1 if _UMLAUT_RE.search(text) else 0)
    english = len(_ENGLISH_STOPWORDS_RE.findall(lowered))
    if german > english and german > 0:
        return "language:german"
    if english > 0:
        return "language:english"
    return DEFAULT_LANGUAGE_TAG


def detect_complexity(text: str) -> str:
    cleaned = _MENTION_TOKEN_RE.sub(" ", text)
    cleaned = _URL_RE.sub(" ", cleaned)
    words = _NON_WORD_RE.sub(" ", cleaned).replace("_", " ").split()
    if not words:
        return "complexity:simple"
    average = sum(len(word) for word in words) / len(words)
    return "complexity:complex" if average >= 6 else "complexity:simple"


def ensure_message_categories(buckets: Buckets, source_message: str) -> Buckets:
    """Filter buckets and add language and complexity tone markers when missing."""
    result = filter_message_buckets(buckets)
    tone = list(result["tone"])
    if not any(entry.tag.startswith("language:") for entry in tone):
        tone.append(ScoredTag(detect_language(source_message), MIN_CATEGORY_SCORE))
    if not any(entry.tag.startswith("complexity:") for entry in tone):
        tone.append(ScoredTag(detect_complexity(source_message), MIN_CATEGORY_SCORE))
    result["tone"] = filter_tags(tone, MESSAGE_CATEGORY_LIMITS["tone"], MIN_CATEGORY_SCORE, "tone")
    return enforce_exclusive_message(result)


# ── image categories ─────────────────────────────────────────────


def enforce_exclusive_image(buckets: Buckets) -> Buckets:
    seen: set[str] = set()
    result: Buckets = {}
    for key in IMAGE_CATEGORIES:
        kept: list[ScoredTag] = []
        for entry in dedupe_tags(buckets.get(key, []), MAX_IMAGE_TAGS):
            if entry.tag in seen:
                continue
            seen.add(entry.tag)
            kept.append(entry)
        result[key] = kept
    return result


def classify_image_tags(tags: Iterable[ScoredTag]) -> Buckets:
    buckets: Buckets = {key: [] for key in IMAGE_CATEGORIES}
    unmatched: list[ScoredTag] = []
    objects: list[ScoredTag] = []
    for original in tags:
        tag = _synthetic(original)
        if not tag.tag:
            continue
        category = _best_category(tag.tag, IMAGE_PATTERNS)
        if category:
            buckets[category].append(tag)
            continue
        unmatched.append(tag)
        if _matches(tag.tag, IMAGE_PATTERNS["objects"]):
            objects.append(tag)
    buckets["objects"] = objects or unmatched
    return enforce_exclusive_image(buckets)


def _fallback_tag(label: str, used: set[str], score: float) -> ScoredTag:
    base = normalize_tag_label(label) or "general"
    candidate, index = base, 2
    while candidate in used:
        candidate = normalize_tag_label(f"{base} {index}")
        index += 1
    return ScoredTag(candidate, normalize_tag_score(score))


def ensure_image_categories(buckets: Buckets, image_tags: Iterable[ScoredTag]) -> Buckets:
    """Backfill empty image buckets from the image's own tags.

    Preference order: an unused tag matching the bucket's patterns, any
    unused tag, then a fixed fallback label.
    """
    result: Buckets = {key: list(buckets.get(key, []))[:MAX_IMAGE_TAGS] for key in IMAGE_CATEGORIES}
    used = {entry.tag for entry in all_tags(result, IMAGE_CATEGORIES)}
    candidates = dedupe_tags(image_tags, MAX_IMAGE_TAGS)

    for key in IMAGE_CATEGORIES:
        if result[key]:
            continue
        unused = [entry for entry in candidates if entry.tag not in used]
        picked = next(
            (entry for entry in unused if _matches(entry.tag, IMAGE_PATTERNS[key])),
            unused[0] if unused else None,
        )
        if picked is None:
            label, score = _IMAGE_FALLBACKS[key]
            picked = _fallback_tag(label, used, score)
        used.add(picked.tag)
        result[key] = [picked]
    return enforce_exclusive_image(result)


# ── payload ──────────────────────────────────────────────────────


def _merge_buckets(
    model: Buckets, synthesized: Buckets, categories: Sequence[str], limits: dict[str, int]
) -> Buckets:
    return {
        key: dedupe_tags([*model.get(key, []), *synthesized.get(key, [])], limits[key])
        for key in categories
    }


def _serialize(buckets: Buckets, categories: Sequence[str]) -> dict[str, list[dict[str, Any]]]:
    return {key: [entry.as_dict() for entry in buckets.get(key, [])] for key in categories}


def parse_tagging_json(raw_text: str) -> dict[str, Any]:
    """Parse classifier output, tolerating a surrounding markdown code fence."""
    text = _CODE_FENCE_OPEN_RE.sub("", raw_text.strip())
    text = _CODE_FENCE_CLOSE_RE.sub("", text).strip()
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise TaggingPayloadError("Tagging response is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise TaggingPayloadError("Tagging response JSON must be an object")
    return parsed


def _normalize_image(entry: dict[str, Any] | None, source_url: str) -> dict[str, Any]:
    if entry is None:
        return {
            "imageUrl": source_url,
            "tags": [],
            "categories": {key: [] for key in IMAGE_CATEGORIES},
        }
    image_limits = {key: MAX_IMAGE_TAGS for key in IMAGE_CATEGORIES}
    model_buckets = _parse_buckets(entry.get("categories"), IMAGE_CATEGORIES, MAX_IMAGE_TAGS)
    tags = _parse_scored_tags(entry.get("tags"), MAX_IMAGE_TAGS)
    if len(tags) < IMAGE_TAG_TARGET_MIN:
        tags = append_unique(tags, all_tags(model_buckets, IMAGE_CATEGORIES), MAX_IMAGE_TAGS)

    merged = enforce_exclusive_image(
        _merge_buckets(model_buckets, classify_image_tags(tags), IMAGE_CATEGORIES, image_limits)
    )
    buckets = ensure_image_categories(merged, tags)
    if len(tags) < IMAGE_TAG_TARGET_MIN:
        tags = append_unique(tags, all_tags(buckets, IMAGE_CATEGORIES), MAX_IMAGE_TAGS)

    return {
        "imageUrl": source_url,
        "tags": [entry.as_dict() for entry in tags[:MAX_IMAGE_TAGS]],
        "categories": _serialize(buckets, IMAGE_CATEGORIES),
    }


def normalize_tagging_payload(
    raw_text: str,
    source_image_urls: list[str],
    model: str,
    message: str,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """Build the stored tagging payload from raw classifier output.

    Raises:
        TaggingPayloadError: If the output is not a JSON object.
    """
    record = parse_tagging_json(raw_text)

    model_buckets = filter_message_buckets(
        _parse_buckets(record.get("categories"), MESSAGE_CATEGORIES, MAX_MESSAGE_TAGS)
    )
    message_tags = filter_tags(
        _parse_scored_tags(record.get("messageTags"), MAX_MESSAGE_TAGS),
        MAX_MESSAGE_TAGS,
        MIN_MESSAGE_SCORE,
    )
    if len(message_tags) < MESSAGE_TAG_TARGET_MIN:
        message_tags = append_unique(
            message_tags, all_tags(model_buckets, MESSAGE_CATEGORIES), MAX_MESSAGE_TAGS
        )

    merged = enforce_exclusive_message(
        _merge_buckets(
            model_buckets,
            classify_message_tags(message_tags),
            MESSAGE_CATEGORIES,
            MESSAGE_CATEGORY_LIMITS,
        )
    )
    categories = ensure_message_categories(merged, message)
    message_tags = filter_tags(
        append_unique(message_tags, all_tags(categories, MESSAGE_CATEGORIES), MAX_MESSAGE_TAGS),
        MAX_MESSAGE_TAGS,
        MIN_MESSAGE_SCORE,
    )

    returned: dict[str, dict[str, Any]] = {}
    for entry in record.get("images") or []:
        if isinstance(entry, dict) and isinstance(entry.get("imageUrl"), str):
            url = normalize_image_url(entry["imageUrl"])
            if url:
                returned.setdefault(url, entry)

    images = [
        _normalize_image(returned.get(url), url)
        for url in collect_image_sources(source_image_urls)
    ]

    return {
        "provider": TAGGING_PROVIDER,
        "model": model,
        "language": TAGGING_LANGUAGE,
        "generatedAt": (generated_at or datetime.now(timezone.utc)).isoformat(),
        "messageTags": [entry.as_dict() for entry in message_tags],
        "categories": _serialize(categories, MESSAGE_CATEGORIES),
        "images": images,
    }


def payload_tags(payload: dict[str, Any] | None) -> list[ScoredTag]:
    """Every scored tag in a stored payload: message, category and image level."""
    if not payload:
        return []
    tags = _parse_scored_tags(payload.get("messageTags"), 10_000)
    categories = payload.get("categories")
    if isinstance(categories, dict):
        for key in MESSAGE_CATEGORIES:
            tags.extend(_parse_scored_tags(categories.get(key), 10_000))
    for image in payload.get("images") or []:
        if not isinstance(image, dict):
            continue
        tags.extend(_parse_scored_tags(image.get("tags"), 10_000))
        image_categories = image.get("categories")
        if isinstance(image_categories, dict):
            for key in IMAGE_CATEGORIES:
                tags.extend(_parse_scored_tags(image_categories.get(key), 10_000))
    return tags
