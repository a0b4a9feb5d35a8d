"""System-prompt template library.

Read-only system templates grouped by category, plus user-defined templates
persisted in the key-value store with an optional expiry. Any template's
``prompt`` can be sent as the system prompt of a chat turn.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..core.errors import PromptNotFoundError, PromptTemplateError
from ..domain.chat_models import (
    PromptCategory,
    PromptImportResult,
    PromptTemplate,
    PromptTemplateCreate,
    PromptTemplateUpdate,
)
from ..infrastructure.kv_store import KeyValueStore, get_kv_store


logger = logging.getLogger(__name__)

PROMPTS_KEY = "chatbox:prompts"
PROMPTS_VERSION = 1
MAX_USER_PROMPTS = 50
DEFAULT_ICON = "icon-user"


PROMPT_CATEGORIES: List[PromptCategory] = [
    PromptCategory(id="development", name="Development", description="Programming, code review, technical advice", icon="icon-code", color="blue"),
    PromptCategory(id="writing", name="Writing", description="Copywriting, editing, creative ideas", icon="icon-edit", color="purple"),
    PromptCategory(id="analysis", name="Analysis", description="Data analysis, reasoning, problem solving", icon="icon-chart", color="green"),
    PromptCategory(id="education", name="Education", description="Explanations, study guidance, Q&A", icon="icon-book", color="orange"),
    PromptCategory(id="business", name="Business", description="Strategy, market analysis, management", icon="icon-business", color="red"),
    PromptCategory(id="life", name="Everyday", description="Daily questions, advice, practical tools", icon="icon-life", color="cyan"),
]

_CATEGORY_IDS = {c.id for c in PROMPT_CATEGORIES}


def _system(template_id: str, name: str, description: str, category: str, tags: List[str], icon: str, prompt: str) -> PromptTemplate:
    return PromptTemplate(
        id=template_id,
        name=name,
        description=description,
        prompt=prompt,
        icon=icon,
        category=category,
        tags=tags,
        is_system=True,
    )


SYSTEM_PROMPT_TEMPLATES: List[PromptTemplate] = [
    _system(
        "sys_code_optimizer",
        "Code optimizer",
        "Performance tuning and refactoring to raise code quality and speed",
        "development",
        ["performance", "refactoring", "algorithms"],
        "icon-ico_efficient",
        "You are a senior code optimization expert.\n\n"
        "## Focus\n"
        "* Time and space complexity of algorithms and data structures\n"
        "* Readability, maintainability and low coupling\n"
        "* Security: input validation and error handling\n\n"
        "## Workflow\n"
        "1. Find the bottlenecks and problem spots in the code\n"
        "2. Propose concrete optimizations\n"
        "3. Provide the optimized implementation\n"
        "4. Explain the expected improvement",
    ),
    _system(
        "sys_code_generator",
        "Code generator",
        "Turns requirements into complete, ready-to-run code",
        "development",
        ["code generation", "architecture", "best practices"],
        "icon-daimashengcheng",
        "You are a top-tier code generation expert fluent in Java, Python, JavaScript, Go and C++.\n\n"
        "## Standards\n"
        "* Complete: imports, error handling and comments included\n"
        "* Usable: runs without further debugging\n"
        "* Idiomatic: follows the language's conventions\n\n"
        "## Output\n"
        "Give the file layout, the commented code, and a usage example, and explain the technical choices.",
    ),
    _system(
        "sys_code_explainer",
        "Code explainer",
        "Explains how a piece of code works, step by step",
        "education",
        ["code reading", "teaching", "walkthrough"],
        "icon-book",
        "You are a patient programming tutor.\n\n"
        "Explain the given code top-down: its purpose, its structure, then each important part line by line. "
        "Point out the language features and patterns it relies on, and finish with possible pitfalls.",
    ),
    _system(
        "sys_sql_optimizer",
        "SQL optimizer",
        "Query tuning, indexing strategy and schema review",
        "development",
        ["SQL", "database", "indexes"],
        "icon-database",
        "You are a database performance expert for MySQL, PostgreSQL and Oracle.\n\n"
        "For each query: read the execution plan, find full scans and bad joins, propose indexes, "
        "and rewrite the query. State the expected gain and any trade-offs for writes.",
    ),
    _system(
        "sys_bug_analyzer",
        "Bug analyzer",
        "Root-cause analysis of errors, stack traces and misbehaviour",
        "development",
        ["debugging", "troubleshooting", "root cause"],
        "icon-bug",
        "You are an experienced debugging specialist.\n\n"
        "## Workflow\n"
        "1. Restate the symptom and the error output\n"
        "2. List the likely causes, most probable first\n"
        "3. Give the checks that confirm or rule out each cause\n"
        "4. Provide the fix and a test that prevents regression",
    ),
    _system(
        "sys_role_player",
        "Role player",
        "Plays a character or persona the user describes",
        "life",
        ["role play", "conversation", "persona"],
        "icon-life",
        "You are an expressive role-play partner. Adopt the persona the user describes, stay in character, "
        "keep a consistent voice and background, and step out of character only when the user asks.",
    ),
    _system(
        "sys_translator",
        "Translator",
        "Faithful, fluent translation between languages",
        "writing",
        ["translation", "localisation", "language"],
        "icon-translate",
        "You are a professional translator.\n\n"
        "Translate faithfully and fluently, keep terminology consistent, preserve formatting and code blocks, "
        "and note idioms that have no direct equivalent.",
    ),
    _system(
        "sys_writer",
        "Writer",
        "Articles, copy and creative writing with a clear structure",
        "writing",
        ["writing", "copy", "creative"],
        "icon-edit",
        "You are a skilled writer and editor.\n\n"
        "Clarify audience and goal first, then produce a well-structured draft with a strong opening, "
        "clear sections and a concise conclusion. Offer alternative titles when useful.",
    ),
    _system(
        "sys_prompt_generator",
        "Prompt engineer",
        "Designs effective prompts for language models",
        "development",
        ["prompt engineering", "LLM", "templates"],
        "icon-magic",
        "You are a prompt engineering expert.\n\n"
        "Turn the user's goal into a structured prompt with a role, context, task, constraints and output format. "
        "Explain each part briefly and suggest variations for different models.",
    ),
]

_SYSTEM_BY_ID: Dict[str, PromptTemplate] = {t.id: t for t in SYSTEM_PROMPT_TEMPLATES}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def search_templates(templates: Iterable[PromptTemplate], query: Optional[str]) -> List[PromptTemplate]:
    """Case-insensitive match on name, description or any tag."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(templates)
    return [
        t
        for t in templates
        if needle in t.name.lower()
        or needle in t.description.lower()
        or any(needle in tag.lower() for tag in t.tags)
    ]


class PromptLibrary:
    def __init__(self, kv: Optional[KeyValueStore] = None, max_user_prompts: int = MAX_USER_PROMPTS) -> None:
        self._kv = kv if kv is not None else get_kv_store()
        self._max_user_prompts = max_user_prompts

    def categories(self) -> List[PromptCategory]:
        return list(PROMPT_CATEGORIES)

    def user_templates(self, now: Optional[datetime] = None) -> List[PromptTemplate]:
        now = now or _utcnow()
        return [t for t in self._load() if t.expires_at is None or t.expires_at > now]

    def list_templates(
        self,
        category: Optional[str] = None,
        query: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[PromptTemplate]:
        templates = [*SYSTEM_PROMPT_TEMPLATES, *self.user_templates(now)]
        if category:
            templates = [t for t in templates if t.category == category]
        return search_templates(templates, query)

    def get(self, template_id: str, now: Optional[datetime] = None) -> PromptTemplate:
        if template_id in _SYSTEM_BY_ID:
            return _SYSTEM_BY_ID[template_id]
        return self._require_user(template_id, self.user_templates(now))

    def add(self, data: PromptTemplateCreate, now: Optional[datetime] = None) -> PromptTemplate:
        now = now or _utcnow()
        templates = self.user_templates(now)
        if len(templates) >= self._max_user_prompts:
            raise PromptTemplateError(f"At most {self._max_user_prompts} custom prompts can be created")
        self._check_category(data.category)
        self._check_unique_name(data.name, templates)
        template = PromptTemplate(
            id=f"user_{uuid.uuid4().hex[:12]}",
            name=data.name,
            description=data.description,
            prompt=data.prompt,
            icon=data.icon or DEFAULT_ICON,
            category=data.category,
            tags=data.tags,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=data.ttl_days) if data.ttl_days else None,
        )
        self._save([*templates, template])
        logger.info("prompt_template_added", extra={"template_id": template.id})
        return template

    def update(self, template_id: str, changes: PromptTemplateUpdate, now: Optional[datetime] = None) -> PromptTemplate:
        now = now or _utcnow()
        templates = self.user_templates(now)
        current = self._require_user(template_id, templates)
        update: Dict[str, Any] = changes.model_dump(exclude_none=True)
        if "category" in update:
            self._check_category(update["category"])
        if "name" in update:
            self._check_unique_name(update["name"], [t for t in templates if t.id != template_id])
        updated = current.model_copy(update={**update, "updated_at": now})
        self._save([updated if t.id == template_id else t for t in templates])
        return updated

    def delete(self, template_id: str) -> None:
        templates = self.user_templates()
        self._require_user(template_id, templates)
        self._save([t for t in templates if t.id != template_id])

    def clear(self) -> None:
        self._kv.remove(PROMPTS_KEY)

    def export_json(self) -> str:
        prompts = [t.model_dump(mode="json") for t in self.user_templates()]
        return json.dumps(
            {"version": PROMPTS_VERSION, "exported_at": _utcnow().isoformat(), "prompts": prompts},
            ensure_ascii=False,
            indent=2,
        )

    def import_json(self, payload: bytes) -> PromptImportResult:
        """Add every template in an exported file; failures are counted, not raised."""
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PromptTemplateError("Invalid import file format") from exc
        items = data.get("prompts") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise PromptTemplateError("Invalid import file format")
        success = 0
        errors: List[str] = []
        for item in items:
            name = item.get("name", "?") if isinstance(item, dict) else "?"
            try:
                self.add(PromptTemplateCreate.model_validate(item))
                success += 1
            except (ValidationError, PromptTemplateError) as exc:
                message = exc.message if isinstance(exc, PromptTemplateError) else "invalid template"
                errors.append(f"{name}: {message}")
        return PromptImportResult(success=success, failed=len(errors), errors=errors)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _load(self) -> List[PromptTemplate]:
        raw = self._kv.get(PROMPTS_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw.decode("utf-8"))
            items = data.get("prompts") if data.get("version") == PROMPTS_VERSION else None
        except (UnicodeDecodeError, ValueError, AttributeError):
            items = None
        if not isinstance(items, list):
            logger.warning("prompt_library_dropped")
            return []
        out: List[PromptTemplate] = []
        for item in items:
            try:
                out.append(PromptTemplate.model_validate(item).model_copy(update={"is_system": False}))
            except ValidationError:
                logger.warning("prompt_template_dropped", extra={"item": str(item)[:200]})
        return out

    def _save(self, templates: List[PromptTemplate]) -> None:
        record = {"version": PROMPTS_VERSION, "prompts": [t.model_dump(mode="json") for t in templates]}
        self._kv.set(PROMPTS_KEY, json.dumps(record, ensure_ascii=False).encode("utf-8"))

    @staticmethod
    def _require_user(template_id: str, templates: List[PromptTemplate]) -> PromptTemplate:
        for template in templates:
            if template.id == template_id:
                return template
        raise PromptNotFoundError("Prompt template not found", details={"template_id": template_id})

    @staticmethod
    def _check_category(category: str) -> None:
        if category not in _CATEGORY_IDS:
            raise PromptTemplateError(f"Unknown prompt category: {category}")

    @staticmethod
    def _check_unique_name(name: str, templates: List[PromptTemplate]) -> None:
        if any(t.name == name for t in templates) or any(t.name == name for t in SYSTEM_PROMPT_TEMPLATES):
            raise PromptTemplateError("A prompt with this name already exists")
