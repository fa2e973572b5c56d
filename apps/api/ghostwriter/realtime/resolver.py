"""Resolving durable identifiers from partially specified tool arguments."""

import math
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import structlog

from ghostwriter.realtime.coercion import coerce_id
from ghostwriter.realtime.errors import MissingProjectId, UnresolvedMessagePointer
from ghostwriter.schemas.projects import ProjectBundle

logger = structlog.get_logger()

PROJECT_ID_KEYS = (
    "projectId",
    "project_id",
    "projectID",
    "id",
    "_id",
    "documentId",
    "docId",
    "valueId",
    "value_id",
)
PROJECT_CONTAINER_KEYS = (
    "project",
    "selection",
    "selected",
    "target",
    "data",
    "payload",
    "item",
    "value",
    "values",
    "option",
    "options",
)
PROJECT_INDEX_KEYS = ("index", "projectIndex", "selectionIndex", "choice", "option")
PROJECT_TITLE_KEYS = ("title", "projectTitle", "name", "projectName")


class MessagePointerTable:
    """Ephemeral transcript pointers -> durable message ids.

    Purely additive while a session runs; cleared on teardown. Lookups never
    guess: an unmapped pointer resolves to None.
    """

    def __init__(self) -> None:
        self._pointers: dict[str, str] = {}
        self._warned: set[str] = set()

    def __len__(self) -> int:
        return len(self._pointers)

    def __contains__(self, pointer: str) -> bool:
        return self.resolve(pointer) is not None

    def register(self, pointer: str | None, message_id: str) -> None:
        if pointer and pointer.strip():
            self._pointers[pointer.strip()] = message_id

    def register_fragment(self, key: str, message_id: str) -> None:
        """Map a fragment key, its suffix after ``speaker-``, and the durable id itself."""
        self.register(key, message_id)
        if "-" in key:
            self.register(key.split("-", 1)[1], message_id)
        self.register(message_id, message_id)

    def resolve(self, pointer: Any) -> str | None:
        if not isinstance(pointer, str) or not pointer.strip():
            return None
        value = pointer.strip()
        candidates = [value]
        if "-" in value:
            candidates.append(value.split("-", 1)[1])
        candidates.extend((f"assistant-{value}", f"user-{value}"))
        for candidate in candidates:
            mapped = self._pointers.get(candidate)
            if mapped:
                return mapped
        return None

    def require(self, pointer: str) -> str:
        mapped = self.resolve(pointer)
        if mapped is None:
            raise UnresolvedMessagePointer(pointer)
        return mapped

    def partition(self, pointers: Sequence[str]) -> tuple[list[str], list[str]]:
        """Split pointers into (resolved durable ids, unresolved raw anchors)."""
        resolved: list[str] = []
        unresolved: list[str] = []
        for pointer in pointers:
            mapped = self.resolve(pointer)
            if mapped is not None:
                if mapped not in resolved:
                    resolved.append(mapped)
                continue
            if pointer not in unresolved:
                unresolved.append(pointer)
            if pointer not in self._warned:
                self._warned.add(pointer)
                logger.warning("message_pointer_unresolved", pointer=pointer)
        return resolved, unresolved

    def clear(self) -> None:
        self._pointers.clear()
        self._warned.clear()


def find_id_in_value(value: Any) -> str | None:
    """Search an argument tree for an id-shaped field.

    Id keys on a record win, then container keys (whose value may itself be the
    id string), then nested records. Bare strings elsewhere in the tree are not
    treated as ids.
    """
    visited: set[int] = set()

    def search(node: Any, in_container: bool) -> str | None:
        if isinstance(node, str):
            return coerce_id(node) if in_container else None
        if not isinstance(node, (Mapping, list)) or id(node) in visited:
            return None
        visited.add(id(node))
        if isinstance(node, list):
            for item in node:
                found = search(item, in_container)
                if found:
                    return found
            return None
        for key in PROJECT_ID_KEYS:
            found = coerce_id(node.get(key))
            if found:
                return found
        for key in PROJECT_CONTAINER_KEYS:
            if key in node:
                found = search(node[key], True)
                if found:
                    return found
        for key, child in node.items():
            if key in PROJECT_CONTAINER_KEYS:
                continue
            found = search(child, False)
            if found:
                return found
        return None

    return search(value, False)


def _index_from(args: Mapping[str, Any]) -> int | None:
    for key in PROJECT_INDEX_KEYS:
        value = args.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                continue
        if isinstance(value, (int, float)) and math.isfinite(value):
            return max(0, math.floor(value))
    return None


def _title_from(args: Mapping[str, Any]) -> str | None:
    for key in PROJECT_TITLE_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


ResolutionStrategy = Callable[[Mapping[str, Any]], str | None]


class ProjectIdResolver:
    """Resolve a durable project id in a fixed order:

    1. an id-shaped field anywhere in the arguments
    2. a numeric index into the cached project listing
    3. a case-insensitive title match against the cached listing
    4. the session's assigned project
    5. the first cached listing entry
    """

    def __init__(
        self,
        listing: Callable[[], Sequence[ProjectBundle]],
        session_project: Callable[[], str | None],
    ) -> None:
        self._listing = listing
        self._session_project = session_project
        self.strategies: tuple[tuple[str, ResolutionStrategy], ...] = (
            ("direct", self.from_direct_id),
            ("listing_index", self.from_listing_index),
            ("listing_title", self.from_listing_title),
            ("session_project", self.from_session_project),
            ("first_listed", self.from_first_listed),
        )

    def from_direct_id(self, args: Mapping[str, Any]) -> str | None:
        return find_id_in_value(args)

    def from_listing_index(self, args: Mapping[str, Any]) -> str | None:
        index = _index_from(args)
        listing = self._listing()
        if index is None or index >= len(listing):
            return None
        return listing[index].project_id

    def from_listing_title(self, args: Mapping[str, Any]) -> str | None:
        title = _title_from(args)
        if title is None:
            return None
        for bundle in self._listing():
            candidate = (bundle.project.title if bundle.project else "").strip().lower()
            if candidate and (candidate == title or title in candidate):
                return bundle.project_id
        return None

    def from_session_project(self, args: Mapping[str, Any]) -> str | None:
        return self._session_project()

    def from_first_listed(self, args: Mapping[str, Any]) -> str | None:
        listing = self._listing()
        return listing[0].project_id if listing else None

    def resolve(self, args: Mapping[str, Any] | None, ignore: tuple[str, ...] = ()) -> str:
        """``ignore`` names argument keys that carry tool payload, not project references."""
        args = {key: value for key, value in (args or {}).items() if key not in ignore}
        for name, strategy in self.strategies:
            project_id = strategy(args)
            if project_id:
                if name not in ("direct", "session_project"):
                    logger.info("project_id_inferred", strategy=name, project_id=project_id)
                return project_id
        raise MissingProjectId()
