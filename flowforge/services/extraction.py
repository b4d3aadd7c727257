from __future__ import annotations

from dataclasses import dataclass
import re

from flowforge.domain.scope import ScopeDraft
from flowforge.services.catalog import FIELD_KINDS, CapabilityCatalog


# Earlier kinds claim overlapping phrases first: "new email" is a trigger, not an output.
_EXTRACTION_ORDER = ("trigger", "data_sources", "conditions", "actions", "outputs")

_WORD_RE = re.compile(r"[a-z0-9]+")
_FIELD_LABEL = r"(?:trigger|actions?|outputs?|data[ _-]?sources?|conditions?)"
# A value runs until a semicolon, a newline or the next field label.
_EXPLICIT_RE = re.compile(
    rf"\b({_FIELD_LABEL})\s*[:=]\s*((?:(?!\b{_FIELD_LABEL}\s*[:=])[^;\n])+)",
    re.IGNORECASE,
)
_LIST_SPLIT_RE = re.compile(r"\s*,\s*|\s+and\s+", re.IGNORECASE)

_GREETINGS = frozenset({"hi", "hello", "hey", "hiya", "howdy", "greetings", "yo"})
_GREETING_PHRASES = ("good morning", "good afternoon", "good evening")
_AFFIRMATIVE = frozenset({"yes", "yep", "yeah", "yup", "sure", "ok", "okay", "confirm", "confirmed", "correct", "proceed", "approve", "approved"})
_AFFIRMATIVE_PHRASES = ("go ahead", "looks good", "sounds good", "do it", "create it", "deploy it", "ship it", "lets go")
_NEGATIVE = frozenset({"no", "nope", "nah", "wrong", "change", "modify", "edit", "instead"})
_NEGATIVE_PHRASES = ("not quite", "not right", "hold on", "start over")
_INTENT = frozenset(
    {
        "automate", "automation", "automatically", "workflow", "whenever", "notify", "notification",
        "sync", "integrate", "alert", "remind", "forward", "monitor", "trigger", "send", "post",
    }
)
_INTENT_PHRASES = ("i want", "i need", "i would like", "can you", "help me", "set up", "every time")


@dataclass(frozen=True)
class MessageSignals:
    intent: bool
    greeting: bool
    affirmative: bool
    negative: bool
    malformed: bool


def _normalize(message: str) -> str:
    return " " + " ".join(_WORD_RE.findall(message.lower())) + " "


def _has_phrase(text: str, phrase: str) -> bool:
    return f" {phrase} " in text


def _explicit_fields(message: str) -> dict[str, list[str]]:
    # "trigger: webhook; actions: send-email, slack message" style statements.
    fields: dict[str, list[str]] = {}
    for label, raw_values in _EXPLICIT_RE.findall(message):
        key = re.sub(r"[ _-]", "", label.lower())
        if key.startswith("datasource"):
            name = "data_sources"
        elif key.startswith("action"):
            name = "actions"
        elif key.startswith("output"):
            name = "outputs"
        elif key.startswith("condition"):
            name = "conditions"
        else:
            name = "trigger"
        values = [value.strip(" .,") for value in _LIST_SPLIT_RE.split(raw_values) if value.strip(" .,")]
        if values:
            fields.setdefault(name, []).extend(values)
    return fields


def extract_scope(catalog: CapabilityCatalog, message: str) -> ScopeDraft:
    """Slot-fill scope fields from one message using the catalog vocabulary.

    Explicit ``field: value`` statements are taken verbatim so terms the catalog
    does not know still reach the validator. Everything else is matched as
    keyword phrases; each phrase is consumed by the first field that claims it.
    """
    explicit = _explicit_fields(message)
    text = _normalize(message)
    found: dict[str, list[tuple[int, str]]] = {name: [] for name in _EXTRACTION_ORDER}

    for field_name in _EXTRACTION_ORDER:
        if field_name in explicit:
            continue
        for entry in catalog.by_kind(FIELD_KINDS[field_name]):
            phrases = sorted({_normalize(p).strip() for p in entry.keywords if p.strip()}, key=len, reverse=True)
            first_position: int | None = None
            for phrase in phrases:
                needle = f" {phrase} "
                position = text.find(needle)
                while position != -1:
                    if first_position is None or position < first_position:
                        first_position = position
                    # Mask the phrase so later fields cannot reuse it.
                    masked = " " + "#" * (len(needle) - 2) + " "
                    text = text[:position] + masked + text[position + len(needle):]
                    position = text.find(needle)
            if first_position is not None:
                found[field_name].append((first_position, entry.id))

    draft = ScopeDraft()
    if "trigger" in explicit:
        draft.trigger = explicit["trigger"][0]
    elif found["trigger"]:
        draft.trigger = min(found["trigger"])[1]
    for field_name in ("actions", "data_sources", "conditions", "outputs"):
        if field_name in explicit:
            values = explicit[field_name]
        else:
            values = [capability_id for _, capability_id in sorted(found[field_name])]
        setattr(draft, field_name, list(dict.fromkeys(values)))

    if not draft.outputs and "outputs" not in explicit:
        # Delivery actions imply their destination when none was named.
        implied = []
        for action_id in draft.actions:
            entry = catalog.get(action_id)
            if entry is not None and entry.delivers:
                implied.append(entry.delivers)
        draft.outputs = list(dict.fromkeys(implied))
    return draft


def detect_signals(message: str, extracted: ScopeDraft) -> MessageSignals:
    text = _normalize(message)
    words = set(text.split())
    malformed = not words or not any(any(ch.isalpha() for ch in word) for word in words)
    greeting = bool(words & _GREETINGS) or any(_has_phrase(text, phrase) for phrase in _GREETING_PHRASES)
    negative = bool(words & _NEGATIVE) or any(_has_phrase(text, phrase) for phrase in _NEGATIVE_PHRASES)
    affirmative = not negative and (
        bool(words & _AFFIRMATIVE) or any(_has_phrase(text, phrase) for phrase in _AFFIRMATIVE_PHRASES)
    )
    intent = not extracted.is_empty or bool(words & _INTENT) or any(
        _has_phrase(text, phrase) for phrase in _INTENT_PHRASES
    )
    return MessageSignals(
        intent=intent,
        greeting=greeting,
        affirmative=affirmative,
        negative=negative,
        malformed=malformed,
    )
