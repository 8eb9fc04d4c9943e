"""List projection over a persisted query.

A FetchViewModel runs its query through the store's interactive context on
first access and keeps the result as a single cached snapshot. The snapshot
is never refreshed on data change; call `reset_fetch()` to force the next
accessor to re-query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Any, NamedTuple

from sqlalchemy import Select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from modelkit.stores.sqlite import StoreError, StoreManager, data_store

logger = logging.getLogger("modelkit")


class FetchRequestError(RuntimeError):
    """The view model has no query to run."""


class IndexPath(NamedTuple):
    section: int
    row: int


@dataclass
class SectionInfo:
    """One section of fetched objects."""

    name: str | None
    objects: list[Any] = field(default_factory=list)

    @property
    def number_of_objects(self) -> int:
        return len(self.objects)


class FetchedResults:
    """Snapshot of a query result, grouped into sections."""

    def __init__(self, objects: list[Any] | None, section_key_path: str | None = None):
        self.fetched_objects = objects
        self.section_key_path = section_key_path
        self.sections = _build_sections(objects or [], section_key_path)

    def object_at(self, index_path: IndexPath) -> Any | None:
        section, row = index_path
        if not 0 <= section < len(self.sections):
            return None
        objects = self.sections[section].objects
        if not 0 <= row < len(objects):
            return None
        return objects[row]

    def index_path_for(self, obj: Any) -> IndexPath | None:
        for section_index, section in enumerate(self.sections):
            for row, candidate in enumerate(section.objects):
                if candidate is obj:
                    return IndexPath(section_index, row)
        return None


def _build_sections(objects: list[Any], section_key_path: str | None) -> list[SectionInfo]:
    """Group consecutive objects sharing the same section key.

    The query must be ordered by the section key for each value to map to
    exactly one section.
    """
    if section_key_path is None:
        return [SectionInfo(name=None, objects=list(objects))] if objects else []

    key_of = attrgetter(section_key_path)
    sections: list[SectionInfo] = []
    current_key: Any = object()
    for obj in objects:
        key = key_of(obj)
        if not sections or key != current_key:
            sections.append(SectionInfo(name="" if key is None else str(key)))
            current_key = key
        sections[-1].objects.append(obj)
    return sections


class FetchViewModel:
    """Read accessors over a lazily fetched, explicitly reset query result.

    Subclasses may override `fetch_request`, `section_key_path`,
    `object_title` and `title_for_section`.
    """

    def __init__(
        self,
        store: StoreManager | None = None,
        statement: Select | None = None,
        section_key_path: str | None = None,
    ):
        self.store = store or data_store
        self._statement = statement
        self._section_key_path = section_key_path
        self._results: FetchedResults | None = None

    @property
    def fetch_request(self) -> Select:
        """The query to run. Override in subclasses or pass `statement`."""
        if self._statement is None:
            raise FetchRequestError(f"{type(self).__name__} has no fetch_request")
        return self._statement

    @property
    def section_key_path(self) -> str | None:
        """Attribute path the objects are sectioned by, or None for a flat list."""
        return self._section_key_path

    async def _perform_fetch(self) -> FetchedResults:
        statement = self.fetch_request

        async def block(session: AsyncSession) -> list[Any]:
            result = await session.execute(statement)
            return list(result.scalars().all())

        try:
            objects = await self.store.run(block)
        except (SQLAlchemyError, StoreError) as e:
            logger.error(f"Fetching error: {e}")
            objects = None
        return FetchedResults(objects, self.section_key_path)

    async def fetched_results(self) -> FetchedResults:
        """The cached snapshot, fetched on first access."""
        if self._results is None:
            self._results = await self._perform_fetch()
        return self._results

    def reset_fetch(self) -> None:
        """Drop the cached snapshot; the next accessor re-queries."""
        self._results = None

    async def has_results(self) -> bool:
        results = await self.fetched_results()
        return bool(results.fetched_objects)

    async def count(self) -> int:
        results = await self.fetched_results()
        return len(results.fetched_objects or [])

    async def section_count(self) -> int:
        """Number of sections in the list."""
        results = await self.fetched_results()
        return len(results.sections)

    async def item_count(self, section: int) -> int:
        """Number of rows in `section`, 0 when out of range."""
        results = await self.fetched_results()
        if not 0 <= section < len(results.sections):
            return 0
        return results.sections[section].number_of_objects

    async def object_at(self, index_path: IndexPath | tuple[int, int]) -> Any | None:
        results = await self.fetched_results()
        return results.object_at(IndexPath(*index_path))

    async def index_path_for(self, obj: Any) -> IndexPath | None:
        results = await self.fetched_results()
        return results.index_path_for(obj)

    async def object_title(self, index_path: IndexPath | tuple[int, int]) -> str | None:
        """Short display text for the object at `index_path`.

        Defaults to `str(obj)`; override for something better.
        """
        obj = await self.object_at(index_path)
        return None if obj is None else str(obj)

    async def title_for_section(self, section: int) -> str | None:
        """Displayed title of `section`, None without a section key path."""
        if self.section_key_path is None:
            return None
        results = await self.fetched_results()
        if not 0 <= section < len(results.sections):
            return None
        return results.sections[section].name
