import importlib.metadata
import logging
from typing import Callable

import typer

from tally.categorizer import AutoCategorizer, KeywordRule
from tally.errors import ConfigValidationError
from tally.models import ReaderInfo
from tally.registry import ReaderRegistry, registry
from tally.resolver import FieldResolver
from tally.settings import SUPPORTED_EXTENSIONS
from tally.stores import SqliteCategoryStore

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "tally.plugins"


class PluginHooks:
    def __init__(self):
        self.readers: list[ReaderInfo] = []
        self.field_aliases: list[tuple[str, list[str]]] = []
        self.keyword_rules: list[KeywordRule] = []
        self.categories: list[dict] = []
        self.commands: list[tuple[typer.Typer, Callable]] = []

    def add_reader(self, info: ReaderInfo) -> None:
        """Replace the built-in reader for one of the accepted file types."""
        unsupported = [ext for ext in info.file_extensions if ext.lower().lstrip(".") not in SUPPORTED_EXTENSIONS]
        if unsupported:
            raise ConfigValidationError(
                f"Reader {info.key!r} handles {', '.join(unsupported)}; "
                f"imports accept only {', '.join(SUPPORTED_EXTENSIONS)}"
            )
        self.readers.append(info)

    def add_field_aliases(self, field_name: str, aliases: list[str]) -> None:
        """Extra header names for a canonical field ("detail" adds description parts)."""
        self.field_aliases.append((field_name, list(aliases)))

    def add_keyword_rules(self, rules: list[KeywordRule]) -> None:
        self.keyword_rules.extend(rules)

    def add_categories(self, categories: list[dict]) -> None:
        self.categories.extend(categories)

    def add_command(self, parent: typer.Typer, command: Callable) -> None:
        self.commands.append((parent, command))


def load_plugins(app: typer.Typer, readers: ReaderRegistry = registry) -> PluginHooks:
    """Discover installed plugins and collect their hooks."""
    hooks = PluginHooks()

    for ep in importlib.metadata.entry_points(group=ENTRY_POINT_GROUP):
        plugin_module = ep.load()
        if hasattr(plugin_module, "register"):
            plugin_module.register(hooks, app=app)
            logger.debug("Loaded plugin %s", ep.name)

    for info in hooks.readers:
        readers.register(info)

    for parent, command in hooks.commands:
        parent.command()(command)

    return hooks


def apply_plugin_hooks(hooks: PluginHooks, resolver: FieldResolver, categorizer: AutoCategorizer) -> None:
    """Extend a resolver and a categorizer with what plugins contributed."""
    for field_name, aliases in hooks.field_aliases:
        resolver.add_aliases(field_name, aliases)
    if hooks.keyword_rules:
        categorizer.add_rules(hooks.keyword_rules)


def seed_plugin_categories(categories: SqliteCategoryStore, hooks: PluginHooks) -> None:
    for cat in hooks.categories:
        categories.add(
            cat["name"],
            cat.get("slug") or cat["name"].lower().replace(" ", "-"),
            cat.get("category_type", "expense"),
            cat.get("keywords"),
        )
