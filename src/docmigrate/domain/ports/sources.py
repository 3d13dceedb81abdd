"""Port for reading raw source records."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from docmigrate.domain.definitions import ImportDef


@runtime_checkable
class SourceLoader(Protocol):
    """Callable port returning the raw records an import definition points at."""

    async def __call__(self, import_def: ImportDef) -> list[dict[str, Any]]: ...


__all__ = ["SourceLoader"]
