from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import re
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from flowforge.core.errors import ProviderConfigError


logger = logging.getLogger(__name__)

KINDS = ("trigger", "action", "output", "data_source", "condition")

# Scope fields map onto catalog kinds.
FIELD_KINDS = {
    "trigger": "trigger",
    "actions": "action",
    "outputs": "output",
    "data_sources": "data_source",
    "conditions": "condition",
}

# Generic words that carry no capability signal and would make every term overlap.
_STOPWORDS = frozenset(
    {
        "a", "an", "and", "the", "to", "of", "on", "in", "for", "with", "from", "my", "me",
        "it", "is", "be", "by", "at", "or", "new", "type", "trigger", "action", "output",
        "data", "source", "node", "some", "any", "when", "then",
    }
)
_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(value: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall(value.lower()) if token not in _STOPWORDS}


def normalize_identifier(value: str) -> str:
    return "-".join(_TOKEN_RE.findall(value.lower()))


@dataclass(frozen=True)
class Capability:
    id: str
    kind: str
    node_type: str
    keywords: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    description: str = ""
    # Output capability an action implicitly produces, e.g. send-email -> email.
    delivers: str | None = None
    # Derived once so fuzzy lookups never re-tokenize the catalog.
    tokens: frozenset[str] = field(default=frozenset(), compare=False)

    @classmethod
    def build(
        cls,
        *,
        id: str,
        kind: str,
        node_type: str,
        keywords: Iterable[str] = (),
        aliases: Iterable[str] = (),
        description: str = "",
        delivers: str | None = None,
    ) -> "Capability":
        if kind not in KINDS:
            raise ProviderConfigError(f"Unknown capability kind {kind!r} for {id}")
        keywords = tuple(keywords)
        aliases = tuple(aliases)
        tokens: set[str] = tokenize(id)
        for phrase in keywords + aliases:
            tokens |= tokenize(phrase)
        return cls(
            id=id,
            kind=kind,
            node_type=node_type,
            keywords=keywords,
            aliases=aliases,
            description=description,
            delivers=delivers,
            tokens=frozenset(tokens),
        )


class CapabilityCatalog:
    """Read-only view over the engine's capability catalog."""

    def __init__(self, entries: Iterable[Capability]) -> None:
        self._entries: tuple[Capability, ...] = tuple(entries)
        self._by_identifier: dict[tuple[str, str], Capability] = {}
        for entry in self._entries:
            for name in (entry.id, *entry.aliases):
                self._by_identifier.setdefault((entry.kind, normalize_identifier(name)), entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    @property
    def entries(self) -> tuple[Capability, ...]:
        return self._entries

    def by_kind(self, kind: str) -> list[Capability]:
        return [entry for entry in self._entries if entry.kind == kind]

    def get(self, capability_id: str) -> Capability | None:
        for entry in self._entries:
            if entry.id == capability_id:
                return entry
        return None

    def find_exact(self, term: str, kind: str) -> Capability | None:
        return self._by_identifier.get((kind, normalize_identifier(term)))


def _entry(
    id: str,
    kind: str,
    node_type: str,
    keywords: list[str],
    aliases: list[str] | None = None,
    description: str = "",
    delivers: str | None = None,
) -> Capability:
    return Capability.build(
        id=id,
        kind=kind,
        node_type=node_type,
        keywords=keywords,
        aliases=aliases or [],
        description=description,
        delivers=delivers,
    )


DEFAULT_CAPABILITIES: tuple[Capability, ...] = (
    # Triggers
    _entry("webhook", "trigger", "engine.webhook", ["webhook", "http callback", "api call", "incoming request"], ["webhook-trigger"], "Start on an inbound HTTP request"),
    _entry("schedule", "trigger", "engine.scheduleTrigger", ["every day", "every morning", "every evening", "every hour", "every week", "every monday", "daily", "hourly", "weekly", "cron", "schedule", "scheduled", "interval"], ["cron", "scheduled-trigger"], "Start on a timetable"),
    _entry("form-submission", "trigger", "engine.formTrigger", ["form submitted", "form submission", "submits a form", "form is submitted", "new form"], ["form"], "Start when a hosted form is submitted"),
    _entry("manual", "trigger", "engine.manualTrigger", ["manually", "on demand", "button click", "click a button"], ["manual-trigger"], "Start on demand"),
    _entry("email-received", "trigger", "engine.emailReadImap", ["new email", "email arrives", "incoming email", "receive an email", "receive email", "email received"], ["imap"], "Start when a mailbox receives mail"),
    _entry("rss-item", "trigger", "engine.rssFeedReadTrigger", ["new rss item", "new post", "feed updates", "new article"], ["rss-trigger"], "Start when a feed publishes"),
    # Actions
    _entry("send-email", "action", "engine.emailSend", ["send email", "send an email", "send me an email", "email me", "send mail", "send a summary email", "email summary"], ["email-send"], "Send an email", "email"),
    _entry("send-slack-message", "action", "engine.slack", ["slack message", "post to slack", "send slack", "notify slack", "slack notification", "slack alert"], ["slack-message"], "Post a Slack message", "slack"),
    _entry("http-request", "action", "engine.httpRequest", ["http request", "call an api", "call the api", "rest api", "fetch from api", "post to api"], ["api-call", "rest"], "Call an HTTP API"),
    _entry("write-sheet", "action", "engine.googleSheets", ["write to sheet", "append row", "add a row", "update sheet", "update spreadsheet", "log to sheet", "save to sheet"], ["update-sheet"], "Write spreadsheet rows", "google-sheets"),
    _entry("read-sheet", "action", "engine.googleSheets", ["read sheet", "read spreadsheet", "read rows", "lookup sheet"], [], "Read spreadsheet rows"),
    _entry("insert-database", "action", "engine.postgres", ["insert into database", "save to database", "store in database", "insert row", "write to database"], ["insert-data"], "Insert database rows", "database"),
    _entry("query-database", "action", "engine.postgres", ["query database", "query the database", "run sql", "select from database"], ["query-data"], "Query a database"),
    _entry("transform-data", "action", "engine.code", ["transform", "calculate", "format the data", "process the data", "clean the data"], ["code", "process"], "Transform records with code"),
    _entry("summarize-text", "action", "engine.openAi", ["summarize", "summary", "summarise", "digest"], ["ai-summary"], "Summarize text with a language model"),
    _entry("fetch-rss", "action", "engine.rssFeedRead", ["rss feed", "news feed", "latest news", "read the feed", "fetch news"], ["read-rss"], "Read items from a feed"),
    _entry("create-file", "action", "engine.writeBinaryFile", ["create a file", "create file", "save a file", "export csv", "generate a report file"], ["write-file"], "Write a file", "file"),
    # Outputs
    _entry("email", "output", "engine.emailSend", ["email", "inbox", "mail"], ["email-output"], "Deliver results by email"),
    _entry("slack", "output", "engine.slack", ["slack", "slack channel"], ["slack-output"], "Deliver results to Slack"),
    _entry("google-sheets", "output", "engine.googleSheets", ["google sheet", "google sheets", "spreadsheet", "sheet"], ["sheets"], "Deliver results to a spreadsheet"),
    _entry("database", "output", "engine.postgres", ["database", "postgres", "sql table"], ["db"], "Deliver results to a database"),
    _entry("file", "output", "engine.writeBinaryFile", ["file", "csv", "pdf report"], ["file-output"], "Deliver results as a file"),
    _entry("webhook-response", "output", "engine.respondToWebhook", ["respond to webhook", "webhook response", "reply to the caller"], [], "Reply to the triggering request"),
    # Data sources
    _entry("google-sheets-source", "data_source", "engine.googleSheets", ["from google sheets", "from a spreadsheet", "from the sheet", "from my sheet"], ["google-sheets", "spreadsheet"], "Read from a spreadsheet"),
    _entry("database-source", "data_source", "engine.postgres", ["from the database", "from postgres", "from our database", "from a database"], ["database", "postgres", "sql"], "Read from a database"),
    _entry("api-source", "data_source", "engine.httpRequest", ["from an api", "from the api", "from a rest api"], ["api"], "Read from an HTTP API"),
    _entry("rss-source", "data_source", "engine.rssFeedRead", ["from an rss feed", "from the rss feed", "rss"], ["feed"], "Read from a feed"),
    # Conditions
    _entry("if", "condition", "engine.if", ["only if", "if the", "only when", "unless"], ["if-then", "conditional"], "Branch on a condition"),
    _entry("filter", "condition", "engine.filter", ["filter", "only for", "only the ones", "where the"], [], "Drop items that do not match"),
)


class CatalogEntryFile(BaseModel):
    # One entry of an operator-supplied catalog override file.
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    kind: str
    node_type: str | None = None
    keywords: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    description: str = ""
    delivers: str | None = None


_CATALOG_FILE = TypeAdapter(list[CatalogEntryFile])


def default_catalog() -> CapabilityCatalog:
    return CapabilityCatalog(DEFAULT_CAPABILITIES)


def load_catalog(path: str | None) -> CapabilityCatalog:
    # Without an override file the built-in catalog mirrors common engine nodes.
    if not path:
        return default_catalog()
    catalog_path = Path(path)
    try:
        raw: Any = json.loads(catalog_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ProviderConfigError(f"Capability catalog unreadable: {catalog_path}") from exc
    if not isinstance(raw, list):
        raise ProviderConfigError("Capability catalog must be a JSON list of entries")
    try:
        items = _CATALOG_FILE.validate_python(raw)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ProviderConfigError(f"Capability catalog has invalid entries: {problems}") from exc
    entries = [
        Capability.build(
            id=item.id,
            kind=item.kind,
            node_type=item.node_type or item.id,
            keywords=item.keywords,
            aliases=item.aliases,
            description=item.description,
            delivers=item.delivers,
        )
        for item in items
    ]
    logger.info("capability_catalog_loaded path=%s entries=%s", catalog_path, len(entries))
    return CapabilityCatalog(entries)
