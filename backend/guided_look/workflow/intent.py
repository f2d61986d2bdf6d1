"""Intent detection and slot extraction for guided look creation.

Everything here is a pure function over ordered rule tables, so new
vocabulary can be added without touching the state machine.  Slots are
only filled from explicit matches; nothing is guessed.
"""

from __future__ import annotations

import re
from typing import Iterable, Literal, Pattern


Category = Literal["top", "bottom", "shoes"]
Slot = Literal["occasion", "style", "category"]
Strategy = Literal["direct", "guided"]
Intent = Literal["affirmative", "negative", "edit", "tryon", "create", "chat"]

SLOT_ORDER: tuple[str, ...] = ("occasion", "style", "category")

_GARMENT_WORDS = (
    r"remera|camisa|blusa|camiseta|top|pantal[oó]n|jean|falda|pollera|short"
    r"|zapatillas|zapas|zapatos|botas|calzado"
)

LOOK_CREATION_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"crea(?:me|r)?\s+.*(?:look|prenda)", re.IGNORECASE),
    re.compile(r"genera(?:me|r)?\s+.*(?:look|prenda)", re.IGNORECASE),
    re.compile(r"dise(?:ñ|n)a(?:me|r)?\s+.*(?:look|prenda)", re.IGNORECASE),
    re.compile(
        r"(?:hacer|hace|haceme|crear|crea|creame|generar|genera|generame"
        r"|dise(?:ñ|n)ar|dise(?:ñ|n)a|dise(?:ñ|n)ame).*(?:" + _GARMENT_WORDS + ")",
        re.IGNORECASE,
    ),
    re.compile(r"(?:look|prenda)\s+(?:nuevo|nueva)", re.IGNORECASE),
    re.compile(r"(?:" + _GARMENT_WORDS + r")\s+(?:nuevo|nueva)", re.IGNORECASE),
    re.compile(r"(?:look|prenda).*(?:con ia|con ai)", re.IGNORECASE),
    re.compile(r"(?:con ia|con ai).*(?:look|prenda)", re.IGNORECASE),
    re.compile(r"\b(?:create|make|design|generate)\b.*\b(?:look|garment|outfit|shirt|pants|shoes)\b", re.IGNORECASE),
)

GARMENT_EDIT_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(
        r"(?:modific[aá]|modificar|editar|edit[aá]|cambi[aá]|cambiar)"
        r".*(?:prenda|look|remera|camisa|pantal[oó]n|zapatillas|calzado)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:agreg[aá]|agregar|pon[eé]|poner|sum[aá]|sumar).*(?:estampa|estampado|print|logo)", re.IGNORECASE),
    re.compile(r"(?:cambi[aá]|cambiar).*(?:color|tono|paleta)", re.IGNORECASE),
    re.compile(r"(?:quiero|pod[eé]s).*(?:estampa|estampado|color)", re.IGNORECASE),
    re.compile(r"\b(?:edit|change|modify)\b.*\b(?:garment|look|color|print)\b", re.IGNORECASE),
)

TRYON_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"probador", re.IGNORECASE),
    re.compile(r"prob[aá]r(?:me|mel[oa])", re.IGNORECASE),
    re.compile(r"c[oó]mo me queda", re.IGNORECASE),
    re.compile(r"\btry[\s-]?on\b", re.IGNORECASE),
)

CATEGORY_PATTERNS: tuple[tuple[str, Pattern[str]], ...] = (
    ("top", re.compile(r"\b(top|remera|camisa|blusa|camiseta|shirt)\b", re.IGNORECASE)),
    ("bottom", re.compile(r"\b(bottom|pantal[oó]n|jean|jeans|falda|short|pollera|pants)\b", re.IGNORECASE)),
    ("shoes", re.compile(r"\b(shoes|calzado|zapatillas|zapas|zapatos|botas)\b", re.IGNORECASE)),
)

STYLE_KEYWORDS: tuple[str, ...] = (
    "casual",
    "formal",
    "elegante",
    "minimalista",
    "urbano",
    "streetwear",
    "deportivo",
    "boho",
    "romantico",
    "romántico",
    "clasico",
    "clásico",
)

OCCASION_KEYWORDS: tuple[str, ...] = (
    "oficina",
    "trabajo",
    "cita",
    "fiesta",
    "evento",
    "casamiento",
    "boda",
    "viaje",
    "salida",
    "universidad",
    "facultad",
    "gimnasio",
    "noche",
    "fin de semana",
)

STRATEGY_PATTERNS: tuple[tuple[str, Pattern[str]], ...] = (
    ("guided", re.compile(r"guiad", re.IGNORECASE)),
    ("direct", re.compile(r"direct", re.IGNORECASE)),
    ("direct", re.compile(r"r[aá]pido|sin vueltas|ya mismo|ahora", re.IGNORECASE)),
)

AFFIRMATIVE_PATTERN = re.compile(
    r"^(si|sí|dale|ok|okay|de una|confirmo|confirmar|genera|generar|hag[aá]moslo|listo|claro|vamos|yes)$"
)
NEGATIVE_PATTERN = re.compile(
    r"^(no|nop|no gracias|cancelar|cancela|cancel|fren[aá]|mejor no|despu[eé]s|ahora no)$"
)

_EDGE_PUNCTUATION = " \t\n.,;:!¡?¿\"'"


def _normalize(text: str | None) -> str:
    return " ".join(str(text or "").split())


def _normalize_reply(text: str | None) -> str:
    return _normalize(text).lower().strip(_EDGE_PUNCTUATION)


def _any_match(patterns: Iterable[Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _keyword_pattern(keyword: str) -> Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)


_STYLE_RULES = tuple((keyword, _keyword_pattern(keyword)) for keyword in STYLE_KEYWORDS)
_OCCASION_RULES = tuple((keyword, _keyword_pattern(keyword)) for keyword in OCCASION_KEYWORDS)


def detect_look_creation_intent(text: str | None) -> bool:
    normalized = _normalize(text)
    return bool(normalized) and _any_match(LOOK_CREATION_PATTERNS, normalized)


def detect_garment_edit_intent(text: str | None) -> bool:
    normalized = _normalize(text)
    return bool(normalized) and _any_match(GARMENT_EDIT_PATTERNS, normalized)


def detect_tryon_intent(text: str | None) -> bool:
    normalized = _normalize(text)
    return bool(normalized) and _any_match(TRYON_PATTERNS, normalized)


def is_affirmative(text: str | None) -> bool:
    return bool(AFFIRMATIVE_PATTERN.match(_normalize_reply(text)))


def is_negative(text: str | None) -> bool:
    return bool(NEGATIVE_PATTERN.match(_normalize_reply(text)))


def parse_look_creation_category(text: str | None) -> str | None:
    """Map free text to one category, or None when absent or ambiguous."""
    normalized = _normalize(text)
    if not normalized:
        return None
    matches = {category for category, pattern in CATEGORY_PATTERNS if pattern.search(normalized)}
    if len(matches) != 1:
        return None
    return matches.pop()


def parse_look_strategy(text: str | None) -> str | None:
    normalized = _normalize(text)
    if not normalized:
        return None
    for strategy, pattern in STRATEGY_PATTERNS:
        if pattern.search(normalized):
            return strategy
    return None


def parse_look_creation_fields(text: str | None) -> dict[str, str]:
    """Extract the slots explicitly named in ``text``; unmatched slots are omitted."""
    normalized = _normalize(text)
    if not normalized:
        return {}
    fields: dict[str, str] = {}
    occasion = next((keyword for keyword, pattern in _OCCASION_RULES if pattern.search(normalized)), None)
    if occasion:
        fields["occasion"] = occasion
    style = next((keyword for keyword, pattern in _STYLE_RULES if pattern.search(normalized)), None)
    if style:
        fields["style"] = style
    category = parse_look_creation_category(normalized)
    if category:
        fields["category"] = category
    return fields


def get_missing_look_fields(draft: object) -> list[str]:
    """Slots still needed, always in ``occasion, style, category`` order."""
    return [slot for slot in SLOT_ORDER if not _slot_value(draft, slot)]


def get_direct_missing_fields(draft: object) -> list[str]:
    return [] if _slot_value(draft, "category") else ["category"]


def missing_fields_for(strategy: str | None, draft: object) -> list[str]:
    if strategy == "direct":
        return get_direct_missing_fields(draft)
    return get_missing_look_fields(draft)


def classify_intent(text: str | None, *, awaiting_confirmation: bool = False, has_generated_item: bool = False) -> str:
    """Classify one user turn, first match wins.

    Yes/no answers only count while a confirmation is pending; edit and
    try-on requests only count once there is a generated garment.
    """
    rules: list[tuple[str, bool]] = [
        ("affirmative", awaiting_confirmation and is_affirmative(text)),
        ("negative", awaiting_confirmation and is_negative(text)),
        ("edit", has_generated_item and detect_garment_edit_intent(text)),
        ("tryon", has_generated_item and detect_tryon_intent(text)),
        ("create", detect_look_creation_intent(text)),
    ]
    for intent, matched in rules:
        if matched:
            return intent
    return "chat"


def _slot_value(draft: object, slot: str) -> object:
    if isinstance(draft, dict):
        return draft.get(slot)
    return getattr(draft, slot, None)
