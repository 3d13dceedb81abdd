from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

from docmigrate.adapters.json_source import JsonSourceLoader
from docmigrate.adapters.memory import InMemoryDocumentStore, InMemoryOperationStore
from docmigrate.domain.definitions import normalize_name
from docmigrate.domain.import_pipeline import (
    CollectionState,
    FailureKind,
    ImportController,
)
from docmigrate.domain.model import Identity, Operation, OperationKind, OperationStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from docmigrate.adapters.memory import InMemoryIdentityStore
    from docmigrate.config import MigrationConfig
    from docmigrate.domain.definitions import ProjectDefinition
    from docmigrate.domain.import_pipeline import RunSummary
    from docmigrate.domain.import_pipeline.import_map import IdGenerator

MEMBERS: dict[str, Any] = {
    "name": "Members",
    "attributes": [{"key": "firstName", "type": "string", "required": True}],
    "importDefs": [
        {
            "filePath": "members.json",
            "attributeMappings": [
                {"oldKey": "email", "targetKey": "email"},
                {"oldKey": "phone", "targetKey": "phone"},
                {"oldKey": "name", "targetKey": "firstName"},
            ],
        }
    ],
}

EVENTS: dict[str, Any] = {
    "name": "Events",
    "importDefs": [
        {
            "filePath": "events.json",
            "attributeMappings": [{"oldKey": "title", "targetKey": "title"}],
            "idMappings": [
                {
                    "sourceField": "memberId",
                    "targetField": "id",
                    "targetCollection": "Members",
                    "fieldToSet": "member",
                }
            ],
        },
        {
            "type": "update",
            "filePath": "event_updates.json",
            "attributeMappings": [{"oldKey": "venue", "targetKey": "venue"}],
        },
    ],
}


@pytest.fixture
def source_files(write_json: Callable[[str, Any], Path]) -> None:
    write_json(
        "members.json",
        [
            {"id": "u1", "email": "ada@x.com", "phone": "+1 111", "name": "Ada"},
            {"id": "u2", "email": "ADA@x.com", "phone": "+1 222", "name": "Ada L"},
            {"id": "u3", "email": "bob@x.com", "name": "Bob"},
            {"id": "u4", "email": "broken"},
        ],
    )
    write_json(
        "events.json",
        [
            {"id": "e1", "title": "Opening", "memberId": "u2"},
            {"id": "e2", "title": "Closing", "memberId": "u3"},
            {"id": "e1", "title": "Opening again", "memberId": "u1"},
        ],
    )
    write_json(
        "event_updates.json",
        [{"id": "e1", "venue": "Hall"}, {"id": "e404", "venue": "Nowhere"}],
    )


@pytest.fixture
def controller_factory(
    tmp_path: Path,
    document_store: InMemoryDocumentStore,
    identity_store: InMemoryIdentityStore,
    operation_store: InMemoryOperationStore,
    migration_config: MigrationConfig,
    sequential_ids: IdGenerator,
) -> Callable[..., ImportController]:
    def build(
        project: ProjectDefinition,
        *,
        operations: InMemoryOperationStore | None = None,
        store: InMemoryDocumentStore | None = None,
    ) -> ImportController:
        target = store or document_store
        for database in project.databases:
            target.add_collections(
                database.identifier, (collection.name for collection in project.collections)
            )
        return ImportController(
            project=project,
            store=target,
            identities=identity_store,
            operations=operations or operation_store,
            source_loader=JsonSourceLoader(base_dir=tmp_path),
            config=migration_config,
            id_generator=sequential_ids,
            base_dir=tmp_path,
        )

    return build


def _run(controller: ImportController, project: ProjectDefinition) -> RunSummary:
    return asyncio.run(controller.run_database(project.databases[0]))


@pytest.mark.usefixtures("source_files")
def test_end_to_end_migration(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
    identity_store: InMemoryIdentityStore,
) -> None:
    project = make_project([MEMBERS, EVENTS])
    controller = controller_factory(project)

    summary = _run(controller, project)

    run = controller.last_run
    assert run is not None
    members = summary.collection("Members")
    events = summary.collection("Events")
    assert members.state is CollectionState.DONE
    assert events.state is CollectionState.DONE

    # u1 and u2 share an email and collapse into one identity and one document
    assert members.created == 2
    assert len(identity_store.identities) == 2
    members_stage = run.import_map.get_stage("Members")
    assert members_stage is not None
    canonical = members_stage.ids.target_for("u1")
    assert canonical is not None
    assert members_stage.ids.target_for("u2") == canonical
    assert run.merge_table.sources_for(canonical) == ("u1", "u2")
    ada = document_store.documents[("main", "members")][canonical]
    assert ada.data == {"firstName": "Ada L"}
    assert identity_store.identities[canonical].email == "ada@x.com"

    # u4 fails validation because firstName is required
    [invalid] = summary.failures_of(FailureKind.VALIDATION)
    assert invalid.source_id == "u4"

    # the second "e1" is rejected and the id table keeps the first target
    events_stage = run.import_map.get_stage("Events")
    assert events_stage is not None
    [duplicate] = summary.failures_of(FailureKind.DUPLICATE_KEY)
    assert duplicate.source_id == "e1"
    first_event = events_stage.ids.target_for("e1")
    assert first_event is not None
    assert events_stage.ids.source_ids() == ["e1", "e2"]

    # the update pass patches e1 and reports e404 without aborting
    [missing] = summary.failures_of(FailureKind.UPDATE_TARGET_MISSING)
    assert missing.source_id == "e404"
    assert events.created == 2
    assert events.updated == 1

    stored_event = document_store.documents[("main", "events")][first_event]
    assert stored_event.data["venue"] == "Hall"
    # the reference to merged-away u2 points at the canonical member document
    assert stored_event.data["member"] == canonical
    assert summary.resolved_references == 2
    assert summary.written_back == 2


@pytest.mark.usefixtures("source_files")
def test_import_operations_are_completed(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    operation_store: InMemoryOperationStore,
) -> None:
    project = make_project([MEMBERS, EVENTS])

    _run(controller_factory(project), project)

    imports = [
        operation
        for operation in operation_store.operations.values()
        if operation.kind is OperationKind.IMPORT_DATA
    ]
    assert {operation.collection_id for operation in imports} == {"members", "events"}
    assert all(operation.status is OperationStatus.COMPLETED for operation in imports)
    events = next(operation for operation in imports if operation.collection_id == "events")
    assert events.total == 5


@pytest.mark.usefixtures("source_files")
def test_existing_documents_are_adopted_not_duplicated(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
) -> None:
    project = make_project([EVENTS])
    controller = controller_factory(project)
    existing = asyncio.run(
        document_store.create_document("main", "events", "kept", {"title": "Closing"})
    )

    summary = _run(controller, project)

    assert summary.collection("Events").skipped == 1
    run = controller.last_run
    assert run is not None
    stage = run.import_map.get_stage("Events")
    assert stage is not None
    assert stage.ids.target_for("e2") == existing.id
    assert len(document_store.documents[("main", "events")]) == 2


@pytest.mark.usefixtures("source_files")
def test_existing_identities_are_reused(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    identity_store: InMemoryIdentityStore,
) -> None:
    identity_store.identities["seed"] = Identity(id="seed", email="bob@x.com")
    project = make_project([MEMBERS])
    controller = controller_factory(project)

    _run(controller, project)

    run = controller.last_run
    assert run is not None
    stage = run.import_map.get_stage("Members")
    assert stage is not None
    assert stage.ids.target_for("u3") == "seed"
    assert len(identity_store.identities) == 2


def test_missing_collection_is_a_configuration_failure(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
) -> None:
    project = make_project([EVENTS])
    controller = controller_factory(project)
    document_store.collections["main"].clear()

    summary = _run(controller, project)

    assert summary.collection("Events").state is CollectionState.FAILED
    [failure] = summary.failures_of(FailureKind.CONFIGURATION)
    assert "Events" in failure.reason


def test_unreadable_source_is_reported(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
) -> None:
    project = make_project([EVENTS])

    summary = _run(controller_factory(project), project)

    failures = summary.failures_of(FailureKind.CONFIGURATION)
    assert {failure.collection for failure in failures} == {"Events"}
    assert len(failures) == 2
    assert summary.collection("Events").state is CollectionState.DONE


class _OfflineOperationStore(InMemoryOperationStore):
    async def find_or_create_operation(
        self, collection_id: str, kind: OperationKind
    ) -> Operation:
        raise ConnectionError("journal offline")


def test_operation_store_failure_marks_collection_failed(
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
) -> None:
    project = make_project([EVENTS])
    controller = controller_factory(project, operations=_OfflineOperationStore())

    summary = _run(controller, project)

    [failure] = summary.failures_of(FailureKind.OPERATION_METADATA)
    assert "journal offline" in failure.reason
    assert summary.collection("Events").state is CollectionState.FAILED


GOOD: dict[str, Any] = {
    "name": "Good",
    "importDefs": [
        {"filePath": "good.json", "attributeMappings": [{"oldKey": "title", "targetKey": "title"}]}
    ],
}


def _bad(mapping: dict[str, Any]) -> dict[str, Any]:
    return {"name": "Bad", "importDefs": [{"filePath": "bad.json", "attributeMappings": [mapping]}]}


@pytest.fixture
def good_source(write_json: Callable[[str, Any], Path]) -> None:
    write_json("good.json", [{"id": "g1", "title": "Fine"}])


def _assert_good_collection_done(summary: RunSummary, store: InMemoryDocumentStore) -> None:
    assert summary.collection("Good").state is CollectionState.DONE
    assert summary.collection("Good").created == 1
    [document] = store.documents[("main", "good")].values()
    assert document.data == {"title": "Fine"}


@pytest.mark.usefixtures("good_source")
def test_out_of_range_values_convert_to_none(
    write_json: Callable[[str, Any], Path],
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
) -> None:
    write_json("bad.json", [{"id": "b1", "n": "inf", "d": 1e22}, {"id": "b2", "n": "7"}])
    project = make_project(
        [
            {
                "name": "Bad",
                "importDefs": [
                    {
                        "filePath": "bad.json",
                        "attributeMappings": [
                            {"oldKey": "n", "targetKey": "n", "converters": ["anyToInteger"]},
                            {"oldKey": "d", "targetKey": "d", "converters": ["anyToDate"]},
                        ],
                    }
                ],
            },
            GOOD,
        ]
    )
    controller = controller_factory(project)

    summary = _run(controller, project)

    assert summary.collection("Bad").state is CollectionState.DONE
    assert summary.collection("Bad").created == 2
    run = controller.last_run
    assert run is not None
    stage = run.import_map.get_stage("Bad")
    assert stage is not None
    documents = document_store.documents[("main", "bad")]
    first = documents[stage.ids.target_for("b1") or ""]
    second = documents[stage.ids.target_for("b2") or ""]
    assert first.data.get("n") is None
    assert first.data.get("d") is None
    assert second.data["n"] == 7
    _assert_good_collection_done(summary, document_store)


@pytest.mark.usefixtures("good_source")
def test_record_raising_during_staging_fails_only_that_record(
    write_json: Callable[[str, Any], Path],
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
) -> None:
    write_json("bad.json", [{"id": "b1", "code": "x"}])
    project = make_project(
        [
            _bad(
                {
                    "oldKey": "code",
                    "targetKey": "code",
                    "validationActions": [{"action": "matchesPattern", "params": ["{code}", "("]}],
                }
            ),
            GOOD,
        ]
    )

    summary = _run(controller_factory(project), project)

    [failure] = summary.failures_of(FailureKind.VALIDATION)
    assert (failure.collection, failure.source_id) == ("Bad", "b1")
    assert summary.collection("Bad").state is CollectionState.DONE
    assert document_store.documents[("main", "bad")] == {}
    _assert_good_collection_done(summary, document_store)


class _UnreachableCollectionStore(InMemoryDocumentStore):
    async def find_collection(self, database_id: str, name_or_id: str) -> str | None:
        if normalize_name(name_or_id) == "bad":
            raise ConnectionError("store hiccup")
        return await InMemoryDocumentStore.find_collection(self, database_id, name_or_id)


@pytest.mark.usefixtures("good_source")
def test_store_error_in_one_collection_leaves_others_running(
    write_json: Callable[[str, Any], Path],
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
) -> None:
    write_json("bad.json", [{"id": "b1", "title": "Lost"}])
    project = make_project([_bad({"oldKey": "title", "targetKey": "title"}), GOOD])
    store = _UnreachableCollectionStore()

    summary = _run(controller_factory(project, store=store), project)

    assert summary.collection("Bad").state is CollectionState.FAILED
    [failure] = summary.failures_of(FailureKind.STORE_ERROR)
    assert failure.collection == "Bad"
    assert "store hiccup" in failure.reason
    _assert_good_collection_done(summary, store)


def test_identity_documents_are_not_adopted_by_payload(
    write_json: Callable[[str, Any], Path],
    make_project: Callable[..., ProjectDefinition],
    controller_factory: Callable[..., ImportController],
    document_store: InMemoryDocumentStore,
    identity_store: InMemoryIdentityStore,
) -> None:
    write_json("members.json", [{"id": "u1", "email": "ada@x.com", "name": "Ada"}])
    write_json("events.json", [{"id": "e1", "title": "Opening", "memberId": "u1"}])
    events = {**EVENTS, "importDefs": EVENTS["importDefs"][:1]}
    project = make_project([MEMBERS, events])
    controller = controller_factory(project)
    asyncio.run(document_store.create_document("main", "members", "kept", {"firstName": "Ada"}))

    summary = _run(controller, project)

    run = controller.last_run
    assert run is not None
    stage = run.import_map.get_stage("Members")
    assert stage is not None
    canonical = stage.ids.target_for("u1")
    assert canonical is not None
    assert canonical != "kept"
    assert list(identity_store.identities) == [canonical]
    assert run.merge_table.sources_for(canonical) == ("u1",)
    assert set(document_store.documents[("main", "members")]) == {"kept", canonical}
    assert summary.failures_of(FailureKind.UNRESOLVED_REFERENCE) == []
    [event] = document_store.documents[("main", "events")].values()
    assert event.data["member"] == canonical
