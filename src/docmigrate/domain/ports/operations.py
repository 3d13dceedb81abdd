"""Port for durable operation/batch bookkeeping."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from docmigrate.domain.model import Batch, Operation, OperationKind


@runtime_checkable
class OperationStore(Protocol):
    """Persistence contract for operations and their batch payloads."""

    async def find_or_create_operation(
        self, collection_id: str, kind: OperationKind
    ) -> Operation: ...

    async def get_operation(self, operation_id: str) -> Operation | None: ...

    async def update_operation(self, operation_id: str, **fields: Any) -> Operation: ...

    async def list_pending_operations(
        self, collection_id: str, kind: OperationKind
    ) -> list[Operation]: ...

    async def create_batch(self, operation_id: str, data: str) -> Batch: ...

    async def get_batch(self, batch_id: str) -> Batch | None: ...

    async def delete_batch(self, batch_id: str) -> None: ...


__all__ = ["OperationStore"]
