import asyncio
from typing import Any

import pytest

from gitops_sync.exceptions import ApplicationNotFound
from gitops_sync.manifest import NamedResource, Revision
from gitops_sync.store import (
    InMemoryStore,
    Operation,
    ResourceAction,
    ResourceResult,
    StoreEvent,
    SyncPhase,
    SyncResult,
    SyncStatus,
    status_report,
)

from ..helpers import make_app

CFG = NamedResource("ConfigMap", "default", "cfg")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(history_limit=3)


def _result(status: SyncStatus, sha: str = "a" * 40, **kwargs: Any) -> SyncResult:
    return SyncResult(status=status, revision=Revision(sha=sha, ref="main"), **kwargs)


def test_add_and_remove_application(store: InMemoryStore) -> None:
    """Test adding, listing and removing Applications."""
    events: list[tuple[str, str]] = []
    store.add_listener(StoreEvent.APPLICATION_ADDED, lambda name, _: events.append(("add", name)))
    store.add_listener(
        StoreEvent.APPLICATION_REMOVED, lambda name, _: events.append(("remove", name))
    )
    web = make_app("web", "file:///unused")
    store.add_application(make_app("db", "file:///unused"))
    store.add_application(web)
    store.add_application(web)

    assert [app.name for app in store.list_applications()] == ["db", "web"]
    assert store.get_application("web") == web
    status = store.get_status("web")
    assert status is not None
    assert status.status == SyncStatus.UNKNOWN
    assert status.phase == SyncPhase.IDLE

    store.remove_application("web")
    assert store.get_application("web") is None
    assert store.get_status("web") is None
    assert events == [("add", "db"), ("add", "web"), ("remove", "web")]

    with pytest.raises(ApplicationNotFound):
        store.remove_application("web")


def test_record_result(store: InMemoryStore) -> None:
    """Test an Error result keeps the last good result."""
    store.add_application(make_app("web", "file:///unused"))
    good = _result(SyncStatus.SYNCED)
    failed = SyncResult(status=SyncStatus.ERROR, message="RevisionNotFound: nope")

    store.record_result("web", good)
    store.record_result("web", failed)

    status = store.get_status("web")
    assert status is not None
    assert status.current == failed
    assert status.last_good == good
    assert status.status == SyncStatus.ERROR
    assert status.last_synced_revision == good.revision


def test_history_limit(store: InMemoryStore) -> None:
    store.add_application(make_app("web", "file:///unused"))
    for sha in "abcde":
        store.record_result("web", _result(SyncStatus.SYNCED, sha=sha * 40))

    status = store.get_status("web")
    assert status is not None
    assert [r.revision.sha[0] for r in status.history if r.revision] == ["c", "d", "e"]


def test_last_synced_revision_ignores_refresh(store: InMemoryStore) -> None:
    store.add_application(make_app("web", "file:///unused"))
    store.record_result("web", _result(SyncStatus.SYNCED, sha="a" * 40))
    store.record_result(
        "web", _result(SyncStatus.OUT_OF_SYNC, sha="b" * 40, operation=Operation.REFRESH)
    )
    status = store.get_status("web")
    assert status is not None
    assert status.last_synced_revision == Revision(sha="a" * 40, ref="main")


def test_phase_events(store: InMemoryStore) -> None:
    store.add_application(make_app("web", "file:///unused"))
    phases: list[SyncPhase] = []
    remove = store.add_listener(StoreEvent.PHASE_CHANGED, lambda _, phase: phases.append(phase))

    store.set_phase("web", SyncPhase.FETCHING)
    store.set_phase("web", SyncPhase.FETCHING)
    store.set_phase("web", SyncPhase.IDLE)
    remove()
    store.set_phase("web", SyncPhase.SYNCING)

    assert phases == [SyncPhase.FETCHING, SyncPhase.IDLE]


def test_unknown_application(store: InMemoryStore) -> None:
    with pytest.raises(ApplicationNotFound):
        store.set_phase("missing", SyncPhase.FETCHING)
    with pytest.raises(ApplicationNotFound):
        store.record_result("missing", _result(SyncStatus.SYNCED))
    with pytest.raises(ApplicationNotFound):
        store.set_managed("missing", {CFG})
    assert store.get_managed("missing") == set()


def test_managed(store: InMemoryStore) -> None:
    store.add_application(make_app("web", "file:///unused"))
    managed = {CFG}
    store.set_managed("web", managed)
    managed.add(NamedResource("Secret", "default", "s"))
    assert store.get_managed("web") == {CFG}


def test_listener_errors_are_logged(store: InMemoryStore) -> None:
    def fail(*args: Any) -> None:
        raise ValueError("boom")

    store.add_listener(StoreEvent.APPLICATION_ADDED, fail)
    store.add_application(make_app("web", "file:///unused"))
    assert store.get_application("web") is not None


async def test_watch_result(store: InMemoryStore) -> None:
    """Test waiting for the next result of one Application."""
    store.add_application(make_app("web", "file:///unused"))
    store.add_application(make_app("db", "file:///unused"))
    waiter = asyncio.create_task(store.watch_result("web"))
    await asyncio.sleep(0)

    store.record_result("db", _result(SyncStatus.SYNCED))
    await asyncio.sleep(0)
    assert not waiter.done()

    result = _result(SyncStatus.OUT_OF_SYNC)
    store.record_result("web", result)
    assert await waiter == result


def test_status_report(store: InMemoryStore) -> None:
    store.add_application(make_app("web", "file:///unused"))
    store.add_application(make_app("db", "file:///unused"))
    store.record_result(
        "web",
        _result(
            SyncStatus.ERROR,
            resources=[
                ResourceResult(CFG, ResourceAction.FAILED, "PermissionDenied: forbidden")
            ],
        ),
    )

    assert status_report(store) == [
        {"name": "db", "status": "Unknown", "phase": "Idle", "revision": "", "errors": []},
        {
            "name": "web",
            "status": "Error",
            "phase": "Idle",
            "revision": f"main@{'a' * 12}",
            "errors": ["ConfigMap/default/cfg: Failed (PermissionDenied: forbidden)"],
        },
    ]


def test_result_serialization() -> None:
    result = _result(
        SyncStatus.SYNCED,
        resources=[ResourceResult(CFG, ResourceAction.CREATED, attempts=1)],
    )
    data = result.to_dict()
    assert data["status"] == "Synced"
    assert data["operation"] == "sync"
    assert "message" not in data
    assert data["resources"][0]["action"] == "Created"
