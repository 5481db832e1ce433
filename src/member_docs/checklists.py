"""member_docs.checklists

Document Requirement Resolver.

Responsibilities:
  - Load and validate the checklist YAML (checklists.yml beside this module)
  - Map a member Category to its full checklist and its mandatory subset
  - Map a Category to its canonical label and backend partition
  - Resolve free-text category labels (canonical, aliases, keywords)

Categories that share a checklist differ only in configuration data; there
is no per-category branching in code.

Usage:
    from member_docs.checklists import Category, core_checklist, full_checklist

    full_checklist(Category.ASSOCIATE)   # 8 DocumentSpec entries
    core_checklist(Category.CURRENT)     # 4 mandatory entries
"""

from __future__ import annotations

import functools
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from member_docs.normalize import normalize_space

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path(__file__).with_name("checklists.yml")

REQUIRED_YAML_KEYS = frozenset({"version", "checklists", "categories"})
REQUIRED_CATEGORY_KEYS = frozenset({"label", "partition", "checklist"})

LOCAL_PARTITION = "Local"


class Category(Enum):
    CURRENT = "Current"
    EXTERNAL = "External"
    RETIRED = "Retired"
    ASSOCIATE = "Associate"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ChecklistConfigError(ValueError):
    """Raised when the checklist YAML fails schema validation."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentSpec:
    name: str
    mandatory: bool


@dataclass(frozen=True)
class CategoryRule:
    category: Category
    label: str
    partition: str
    checklist: str
    aliases: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()


@dataclass
class ChecklistConfig:
    """Parsed, validated checklist configuration."""

    version: str
    yaml_hash: str
    checklists: dict[str, tuple[DocumentSpec, ...]]
    categories: dict[Category, CategoryRule]
    _exact_labels: dict[str, Category] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        for rule in self.categories.values():
            for text in (rule.label, rule.category.value, *rule.aliases):
                self._exact_labels.setdefault(text.casefold(), rule.category)

    def full_checklist(self, category: Category) -> list[DocumentSpec]:
        rule = self.categories[category]
        return list(self.checklists[rule.checklist])

    def core_checklist(self, category: Category) -> list[DocumentSpec]:
        return [doc for doc in self.full_checklist(category) if doc.mandatory]

    def label_for(self, category: Category) -> str:
        return self.categories[category].label

    def partition_for(self, category: Category) -> str:
        return self.categories[category].partition

    @property
    def partitions(self) -> list[str]:
        return [self.categories[c].partition for c in Category]

    def resolve_category(self, raw: Any) -> Category | None:
        """Map a free-text label onto a Category, or None if unrecognized.

        Exact matches (canonical label, enum name, aliases) win over keyword
        matches; keywords are tried in Category declaration order.
        """
        if isinstance(raw, Category):
            return raw
        text = normalize_space(str(raw)) if raw is not None else None
        if not text:
            return None
        exact = self._exact_labels.get(text.casefold())
        if exact is not None:
            return exact
        for category in Category:
            for keyword in self.categories[category].keywords:
                if keyword in text:
                    return category
        return None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_checklist_config(yaml_path: Path = DEFAULT_CONFIG_PATH) -> ChecklistConfig:
    """Load, validate, and return a ChecklistConfig from a YAML file.

    Raises:
        ChecklistConfigError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_checklist_config(data)

    checklists = {
        name: tuple(
            DocumentSpec(name=str(item["name"]), mandatory=bool(item["mandatory"]))
            for item in items
        )
        for name, items in data["checklists"].items()
    }
    categories = {}
    for category in Category:
        block = data["categories"][category.value]
        categories[category] = CategoryRule(
            category=category,
            label=str(block["label"]),
            partition=str(block["partition"]),
            checklist=str(block["checklist"]),
            aliases=tuple(str(a) for a in block.get("aliases") or []),
            keywords=tuple(str(k) for k in block.get("keywords") or []),
        )
    return ChecklistConfig(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        checklists=checklists,
        categories=categories,
    )


def validate_checklist_config(data: Any) -> None:
    """Raise ChecklistConfigError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - Every checklist is a non-empty list of {name, mandatory} entries
        with unique names
      - Every Category has a block naming an existing checklist
      - Partition names are unique across categories
    """
    if not isinstance(data, dict):
        raise ChecklistConfigError("checklist config must be a mapping")

    missing = REQUIRED_YAML_KEYS - data.keys()
    if missing:
        raise ChecklistConfigError(f"missing required keys: {sorted(missing)}")

    checklists = data["checklists"]
    if not isinstance(checklists, dict) or not checklists:
        raise ChecklistConfigError("checklists must be a non-empty mapping")
    for name, items in checklists.items():
        if not isinstance(items, list) or not items:
            raise ChecklistConfigError(f"checklist {name!r} must be a non-empty list")
        seen: set[str] = set()
        for item in items:
            if not isinstance(item, dict) or "name" not in item or "mandatory" not in item:
                raise ChecklistConfigError(
                    f"checklist {name!r} entries need 'name' and 'mandatory'"
                )
            if not isinstance(item["mandatory"], bool):
                raise ChecklistConfigError(
                    f"checklist {name!r}: 'mandatory' must be true/false for {item['name']!r}"
                )
            if item["name"] in seen:
                raise ChecklistConfigError(
                    f"checklist {name!r} lists {item['name']!r} twice"
                )
            seen.add(item["name"])

    categories = data["categories"]
    if not isinstance(categories, dict):
        raise ChecklistConfigError("categories must be a mapping")
    partitions: set[str] = set()
    for category in Category:
        block = categories.get(category.value)
        if not isinstance(block, dict):
            raise ChecklistConfigError(f"missing category block: {category.value}")
        block_missing = REQUIRED_CATEGORY_KEYS - block.keys()
        if block_missing:
            raise ChecklistConfigError(
                f"category {category.value} missing keys: {sorted(block_missing)}"
            )
        if block["checklist"] not in checklists:
            raise ChecklistConfigError(
                f"category {category.value} references unknown checklist {block['checklist']!r}"
            )
        if block["partition"] in partitions:
            raise ChecklistConfigError(
                f"partition {block['partition']!r} is used by more than one category"
            )
        partitions.add(block["partition"])


# ---------------------------------------------------------------------------
# Module-level resolver (lazy; nothing is read at import time)
# ---------------------------------------------------------------------------

@functools.lru_cache(maxsize=1)
def default_config() -> ChecklistConfig:
    return load_checklist_config(DEFAULT_CONFIG_PATH)


def full_checklist(category: Category) -> list[DocumentSpec]:
    return default_config().full_checklist(category)


def core_checklist(category: Category) -> list[DocumentSpec]:
    return default_config().core_checklist(category)


def category_label(category: Category) -> str:
    return default_config().label_for(category)


def partition_for(category: Category) -> str:
    return default_config().partition_for(category)


def resolve_category(raw: Any) -> Category | None:
    return default_config().resolve_category(raw)
