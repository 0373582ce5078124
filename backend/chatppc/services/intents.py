"""Intent routing for AI mentions.

Every mention is classified into exactly one :data:`Intent` before any
provider is called. The GIF heuristics are best-effort phrase matching in
German and English; anything they miss simply goes to the text model.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_AI_MENTION_RE = re.compile(r"(^|\s)@(chatgpt|grok)\b", re.IGNORECASE)
_LEADING_AI_MENTIONS_RE = re.compile(r"^\s*(?:@(chatgpt|grok)\b[\s,;:.-]*)+", re.IGNORECASE)

# ── GIF requests ─────────────────────────────────────────────────

_GIF_PATTERNS = (
    re.compile(r"^\s*gifs?\b", re.IGNORECASE),
    re.compile(
        r"\b(such|suche|such mal|find|finde|zeig|zeige|schick|schicke|hol|gib|send|show|give|post|get|find me)\b"
        r".{0,60}\bgifs?\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(a|an|ein|eine|einen)\s+gif\s+(for|of|about|zu|für|von|über|mit)\b", re.IGNORECASE),
    re.compile(r"\bgifs?\s+(raus|dazu|bitte|please|pls)\b", re.IGNORECASE),
    re.compile(r"\b(reaction|reaktions?)[\s-]?gifs?\b", re.IGNORECASE),
)

_GIF_FILLER_RE = re.compile(
    r"\b(gifs?|such|suche|mal|find|finde|zeig|zeige|schick|schicke|hol|gib|send|show|give|post|get|"
    r"me|mir|us|uns|bitte|please|pls|a|an|ein|eine|einen|for|of|about|zu|für|von|über|mit|raus|"
    r"dazu|passendes?|reaction|reaktions?)\b",
    re.IGNORECASE,
)
_GIF_DEFAULT_QUERY = "reaction"

# ── image generation / editing ───────────────────────────────────

_IMAGE_ACTION_RE = re.compile(
    r"\b(remix|remixe|bearbeite|edit|editiere|modify|modified|change|alter|transform|convert|replace|"
    r"remove|add|zeichne|draw|render|erstelle|generiere|generate|create|male|paint|illustrate|design|"
    r"upscale|enhance|improve|verbessere|optimiere|stylize|style|apply|make|set|turn)\b",
    re.IGNORECASE,
)
_IMAGE_NOUN_RE = re.compile(
    r"\b(image|images|bild|bilder|grafik|illustration|photo|foto|picture|pictures|pic|drawing|drawings|"
    r"art|artwork|poster|logo|wallpaper|meme|avatar|thumbnail)\b",
    re.IGNORECASE,
)
_IMAGE_CONTEXT_RE = re.compile(
    r"\b(scene|character|monster|animal|portrait|landscape|banner|cover|icon)\b", re.IGNORECASE
)

_POLL_INTENT_RE = re.compile(r"\b(poll|umfrage|abstimmung|vote|voting)\b", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class GifRequest:
    query: str


@dataclass(frozen=True, slots=True)
class ImageEdit:
    pass


@dataclass(frozen=True, slots=True)
class Generate:
    poll_intent: bool = False


Intent = GifRequest | ImageEdit | Generate


def strip_ai_mentions(message: str) -> str:
    """Remove every ``@chatgpt``/``@grok`` token and collapse whitespace."""
    return " ".join(_AI_MENTION_RE.sub(" ", message).split())


def strip_leading_ai_mentions(message: str) -> str:
    """Remove bot mentions (and trailing separators) at the start of a text."""
    return _LEADING_AI_MENTIONS_RE.sub("", message, count=1).lstrip()


def is_gif_request(message: str) -> bool:
    return any(pattern.search(message) for pattern in _GIF_PATTERNS)


def extract_gif_query(message: str) -> str:
    words = _GIF_FILLER_RE.sub(" ", message)
    query = " ".join(re.sub(r"[^\w\s'-]", " ", words).split())
    return query or _GIF_DEFAULT_QUERY


def is_image_generation_request(message: str, image_input_count: int) -> bool:
    has_action = bool(_IMAGE_ACTION_RE.search(message))
    if image_input_count > 0:
        # With attached images only an explicit action means editing
        return has_action
    has_noun = bool(_IMAGE_NOUN_RE.search(message))
    has_context = bool(_IMAGE_CONTEXT_RE.search(message))
    if has_action and (has_noun or has_context):
        return True
    return has_noun and has_context


def is_poll_intent(message: str) -> bool:
    return bool(_POLL_INTENT_RE.search(message))


def classify_intent(message: str, image_input_count: int = 0) -> Intent:
    """Classify a mention text (bot mentions may still be present)."""
    cleaned = strip_ai_mentions(message)
    if is_gif_request(cleaned):
        return GifRequest(query=extract_gif_query(cleaned))
    if is_poll_intent(cleaned):
        return Generate(poll_intent=True)
    if is_image_generation_request(cleaned, image_input_count):
        return ImageEdit()
    return Generate()
