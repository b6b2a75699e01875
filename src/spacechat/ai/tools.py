"""Tool specifications sent to the generation endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

from ..context.models import DOCS_APP_TYPE, NOTES_APP_TYPE, PDF_APP_TYPE, SpaceContext, normalize_app_type

LOGGER = logging.getLogger(__name__)

_FAMILY_FOR_APP: Mapping[str, str] = {
    PDF_APP_TYPE: "pdf",
    DOCS_APP_TYPE: "docs",
    NOTES_APP_TYPE: "notes",
}
DEFAULT_FAMILIES: tuple[str, ...] = ("notes", "docs")


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A command exposed to the model as a tool."""

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def as_tool(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
        }


class ToolCatalog:
    """Tool specs grouped by app family (``pdf``, ``docs``, ``notes``)."""

    def __init__(self) -> None:
        self._families: Dict[str, List[ToolSpec]] = {}

    def register(self, family: str, specs: Iterable[ToolSpec]) -> None:
        bucket = self._families.setdefault(family, [])
        known = {spec.name for spec in bucket}
        for spec in specs:
            if spec.name in known:
                raise ValueError(f"Tool {spec.name!r} already registered for {family}")
            bucket.append(spec)
            known.add(spec.name)

    def families(self) -> list[str]:
        return list(self._families)

    def specs(self, family: str) -> list[ToolSpec]:
        return list(self._families.get(family, ()))

    def find(self, name: str) -> ToolSpec | None:
        for bucket in self._families.values():
            for spec in bucket:
                if spec.name == name:
                    return spec
        return None

    def tools_for_context(self, context: SpaceContext) -> list[Dict[str, Any]]:
        """Return tools for every app family present in ``context``.

        An empty context gets the notes and docs tools.
        """

        contents = context.window_contents
        if not contents:
            families = list(DEFAULT_FAMILIES)
        else:
            families = []
            for content in contents.values():
                family = _FAMILY_FOR_APP.get(normalize_app_type(content.app_type))
                if family and family not in families:
                    families.append(family)
        tools = [spec.as_tool() for family in families for spec in self._families.get(family, ())]
        LOGGER.debug("Selected %d tool(s) from families %s", len(tools), families)
        return tools


__all__ = ["DEFAULT_FAMILIES", "ToolCatalog", "ToolSpec"]
