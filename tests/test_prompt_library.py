import json
from datetime import UTC, datetime, timedelta

import pytest

from src.chatbox.core.errors import PromptNotFoundError, PromptTemplateError, StorageError
from src.chatbox.domain.chat_models import PromptTemplateCreate, PromptTemplateUpdate
from src.chatbox.infrastructure.kv_store import InMemoryKeyValueStore
from src.chatbox.services import prompt_library as pl


NOW = datetime(2025, 3, 1, tzinfo=UTC)


def _create(name="Reviewer", **overrides):
    data = {"name": name, "prompt": "Review the code.", "category": "development", **overrides}
    return PromptTemplateCreate(**data)


def test_catalogue_is_consistent():
    category_ids = {c.id for c in pl.PROMPT_CATEGORIES}
    assert category_ids == {"development", "writing", "analysis", "education", "business", "life"}
    assert all(t.category in category_ids for t in pl.SYSTEM_PROMPT_TEMPLATES)
    assert all(t.is_system and t.id.startswith("sys_") for t in pl.SYSTEM_PROMPT_TEMPLATES)
    assert len({t.name for t in pl.SYSTEM_PROMPT_TEMPLATES}) == len(pl.SYSTEM_PROMPT_TEMPLATES)


def test_search_matches_name_description_and_tags_case_insensitively():
    templates = pl.SYSTEM_PROMPT_TEMPLATES
    assert [t.id for t in pl.search_templates(templates, "translator")] == ["sys_translator"]
    assert "sys_bug_analyzer" in [t.id for t in pl.search_templates(templates, "STACK TRACES")]
    assert [t.id for t in pl.search_templates(templates, "Persona")] == ["sys_role_player"]
    assert pl.search_templates(templates, "   ") == list(templates)
    assert pl.search_templates(templates, "zzz-nothing") == []


def test_add_get_and_list_with_filters():
    lib = pl.PromptLibrary(InMemoryKeyValueStore())
    created = lib.add(_create(tags=["review"]), now=NOW)
    assert created.id.startswith("user_")
    assert created.icon == pl.DEFAULT_ICON
    assert created.is_system is False
    assert created.expires_at == NOW + timedelta(days=30)

    assert lib.get(created.id, now=NOW) == created
    assert lib.get("sys_writer").name == "Writer"
    listing = lib.list_templates(category="development", now=NOW)
    assert listing[-1] == created
    assert all(t.category == "development" for t in listing)
    assert [t.id for t in lib.list_templates(query="REVIEWER", now=NOW)] == [created.id]


def test_expired_templates_are_hidden():
    lib = pl.PromptLibrary(InMemoryKeyValueStore())
    short = lib.add(_create("Short", ttl_days=1), now=NOW)
    forever = lib.add(_create("Forever", ttl_days=None), now=NOW)
    assert forever.expires_at is None

    later = NOW + timedelta(days=2)
    assert [t.id for t in lib.user_templates(now=later)] == [forever.id]
    with pytest.raises(PromptNotFoundError):
        lib.get(short.id, now=later)
    # An expired name can be reused
    assert lib.add(_create("Short"), now=later).name == "Short"


def test_add_rejects_duplicates_unknown_category_and_full_library():
    lib = pl.PromptLibrary(InMemoryKeyValueStore(), max_user_prompts=2)
    lib.add(_create("One"))
    with pytest.raises(PromptTemplateError):
        lib.add(_create("One"))
    with pytest.raises(PromptTemplateError):
        lib.add(_create("Translator"))
    with pytest.raises(PromptTemplateError):
        lib.add(_create("Two", category="cooking"))
    lib.add(_create("Two"))
    with pytest.raises(PromptTemplateError) as exc:
        lib.add(_create("Three"))
    assert "At most 2" in exc.value.message


def test_update_checks_names_against_other_templates_only():
    lib = pl.PromptLibrary(InMemoryKeyValueStore())
    first = lib.add(_create("First"), now=NOW)
    lib.add(_create("Second"), now=NOW)

    later = NOW + timedelta(hours=1)
    same = lib.update(first.id, PromptTemplateUpdate(name="First", tags=["x"]), now=later)
    assert same.tags == ["x"]
    assert same.updated_at == later
    assert same.created_at == NOW
    with pytest.raises(PromptTemplateError):
        lib.update(first.id, PromptTemplateUpdate(name="Second"), now=later)
    with pytest.raises(PromptNotFoundError):
        lib.update("sys_writer", PromptTemplateUpdate(description="mine"))


def test_delete_and_clear():
    kv = InMemoryKeyValueStore()
    lib = pl.PromptLibrary(kv)
    created = lib.add(_create())
    lib.delete(created.id)
    assert lib.user_templates() == []
    with pytest.raises(PromptNotFoundError):
        lib.delete(created.id)

    lib.add(_create())
    lib.clear()
    assert kv.get(pl.PROMPTS_KEY) is None


def test_export_then_import_into_another_library():
    source = pl.PromptLibrary(InMemoryKeyValueStore())
    source.add(_create("Alpha", tags=["a"]))
    source.add(_create("Beta"))
    exported = json.loads(source.export_json())
    assert exported["version"] == pl.PROMPTS_VERSION
    assert [p["name"] for p in exported["prompts"]] == ["Alpha", "Beta"]

    target = pl.PromptLibrary(InMemoryKeyValueStore())
    target.add(_create("Beta"))
    exported["prompts"].append({"name": "broken"})
    result = target.import_json(json.dumps(exported).encode("utf-8"))
    assert result.success == 1
    assert result.failed == 2
    assert result.errors[0].startswith("Beta:")
    assert sorted(t.name for t in target.user_templates()) == ["Alpha", "Beta"]

    for bad in (b"not json", b"[]", b'{"prompts": 3}'):
        with pytest.raises(PromptTemplateError):
            target.import_json(bad)


def test_corrupt_records_are_dropped():
    kv = InMemoryKeyValueStore()
    lib = pl.PromptLibrary(kv)
    kv.set(pl.PROMPTS_KEY, b"{oops")
    assert lib.user_templates() == []
    good = lib.add(_create()).model_dump(mode="json")
    kv.set(pl.PROMPTS_KEY, json.dumps({"version": 1, "prompts": [good, {"name": "no id"}]}).encode("utf-8"))
    assert [t.name for t in lib.user_templates()] == ["Reviewer"]
    kv.set(pl.PROMPTS_KEY, json.dumps({"version": 99, "prompts": [good]}).encode("utf-8"))
    assert lib.user_templates() == []


def test_write_failure_raises_storage_error():
    lib = pl.PromptLibrary(InMemoryKeyValueStore(quota_bytes=100))
    with pytest.raises(StorageError):
        lib.add(_create(prompt="p" * 500))
