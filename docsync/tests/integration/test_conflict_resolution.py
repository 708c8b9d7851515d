from __future__ import annotations

import pytest
from sqlalchemy import select

from docsync.domain.models import SyncConflict, SyncDocument
from docsync.domain.results import ErrorKind, Fail, Ok
from docsync.services.blobstore.keys import document_prefix
from docsync.services.sync import SyncCoordinator


async def _conflicted(coordinator, *, path: str = "notes/a.md") -> tuple[str, str]:
    first = await coordinator.upload(tenant_id="T1", tier="free", path=path, content="base", sidecar={})
    await coordinator.upload(
        tenant_id="T1", tier="free", path=path, content="theirs", sidecar={}, base_version=1
    )
    lost = await coordinator.upload(
        tenant_id="T1", tier="free", path=path, content="mine", sidecar={"k": 1}, base_version=1
    )
    assert lost.kind == ErrorKind.CONFLICT
    return first.value.id, lost.details["conflictId"]


async def _resolution_state(session_factory, blob_store, doc_id: str, conflict_id: str):
    # Everything a failed resolution must leave untouched.
    async with session_factory() as session:
        document = (
            await session.execute(select(SyncDocument).where(SyncDocument.id == doc_id))
        ).scalar_one()
        conflict = (
            await session.execute(select(SyncConflict).where(SyncConflict.id == conflict_id))
        ).scalar_one()
        documents = (await session.execute(select(SyncDocument.id))).scalars().all()
    blobs = sorted(key for key in blob_store.objects if key.startswith(document_prefix("T1", doc_id)))
    return {
        "version": document.version,
        "content_hash": document.content_hash,
        "content_key": document.content_key,
        "sidecar_key": document.sidecar_key,
        "size_bytes": document.size_bytes,
        "deleted_at": document.deleted_at,
        "resolved_at": conflict.resolved_at,
        "resolution": conflict.resolution,
        "documents": sorted(documents),
        "blobs": blobs,
    }


@pytest.mark.asyncio
async def test_resolve_remote_keeps_current(coordinator) -> None:
    doc_id, conflict_id = await _conflicted(coordinator)

    resolved = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="remote"
    )
    assert isinstance(resolved, Ok)
    assert resolved.value.document is None
    assert resolved.value.conflict.resolution == "remote"

    current = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert current.value.content == "theirs"
    assert current.value.document.version == 2


@pytest.mark.asyncio
async def test_resolve_both_creates_conflict_copy(coordinator, session_factory) -> None:
    doc_id, conflict_id = await _conflicted(coordinator)
    before = await coordinator.usage_snapshot("T1")

    resolved = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="both"
    )
    assert isinstance(resolved, Ok)
    copy = resolved.value.document
    assert copy.id != doc_id
    assert copy.path == "notes/a (conflict).md"
    assert copy.version == 1

    downloaded = await coordinator.download(tenant_id="T1", document_id=copy.id)
    assert downloaded.value.content == "mine"
    assert downloaded.value.sidecar == {"k": 1}
    original = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert original.value.content == "theirs"

    after = await coordinator.usage_snapshot("T1")
    assert after.document_count == before.document_count + 1
    assert after.total_size_bytes == before.total_size_bytes + copy.size_bytes


@pytest.mark.asyncio
async def test_resolve_both_never_overwrites_existing_copy(coordinator) -> None:
    await coordinator.upload(
        tenant_id="T1", tier="free", path="notes/a (conflict).md", content="occupied", sidecar={}
    )
    _doc_id, conflict_id = await _conflicted(coordinator)

    resolved = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="both"
    )
    assert resolved.value.document.path == "notes/a (conflict 2).md"


@pytest.mark.asyncio
async def test_resolve_local_on_deleted_document_is_stale(coordinator, session_factory, blob_store) -> None:
    doc_id, conflict_id = await _conflicted(coordinator)
    await coordinator.soft_delete(tenant_id="T1", document_id=doc_id)
    before = await coordinator.usage_snapshot("T1")
    state_before = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)

    result = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="local"
    )
    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.STALE
    assert await coordinator.usage_snapshot("T1") == before
    state_after = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)
    assert state_after == state_before
    assert state_after["resolved_at"] is None

    remote = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="remote"
    )
    assert isinstance(remote, Ok)


@pytest.mark.asyncio
async def test_unknown_or_foreign_conflict_is_not_found(coordinator) -> None:
    _doc_id, conflict_id = await _conflicted(coordinator)
    missing = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id="nope", resolution="remote"
    )
    assert missing.kind == ErrorKind.NOT_FOUND
    foreign = await coordinator.get_conflict(tenant_id="T2", conflict_id=conflict_id)
    assert foreign.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_upload_without_base_on_new_path_racing_existing(coordinator, session_factory) -> None:
    # A proposer that never saw the document is preserved under the unseen slot.
    first = await coordinator.upload(tenant_id="T1", tier="free", path="r.md", content="a", sidecar={})
    late = await coordinator.upload(
        tenant_id="T1", tier="free", path="r.md", content="b", sidecar={}, base_version=0
    )
    assert late.kind == ErrorKind.CONFLICT
    assert late.details["localVersion"] == 0
    async with session_factory() as session:
        rows = (await session.execute(select(SyncDocument))).scalars().all()
    assert [row.id for row in rows] == [first.value.id]


@pytest.mark.asyncio
async def test_resolved_conflicts_are_swept_after_retention(
    coordinator, session_factory, blob_store, settings, clock
) -> None:
    from docsync.services.sweeper import Sweeper

    _doc_id, conflict_id = await _conflicted(coordinator)
    detail = await coordinator.get_conflict(tenant_id="T1", conflict_id=conflict_id)
    local_key = detail.value.conflict.local_blob_key
    await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="remote"
    )

    clock.advance(days=8)
    sweeper = Sweeper(
        session_factory=session_factory, blob_store=blob_store, settings=settings, time_provider=clock
    )
    report = await sweeper.run_once()
    assert report.conflicts == 1
    assert local_key not in blob_store.objects
    gone = await coordinator.get_conflict(tenant_id="T1", conflict_id=conflict_id)
    assert gone.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
@pytest.mark.parametrize("resolution", ["local", "both"])
async def test_quota_denied_resolution_changes_nothing(
    session_factory, blob_store, settings, clock, resolution: str
) -> None:
    tight = settings.model_copy(update={"tier_free_max_bytes": 30})
    coordinator = SyncCoordinator(
        session_factory=session_factory, blob_store=blob_store, settings=tight, time_provider=clock
    )
    first = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="base", sidecar={})
    doc_id = first.value.id
    await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="theirs", sidecar={}, base_version=1)
    lost = await coordinator.upload(
        tenant_id="T1", tier="free", path="a.md", content="x" * 20, sidecar={}, base_version=1
    )
    conflict_id = lost.details["conflictId"]
    filler = await coordinator.upload(tenant_id="T1", tier="free", path="b.md", content="y" * 10, sidecar={})
    assert isinstance(filler, Ok)

    usage_before = await coordinator.usage_snapshot("T1")
    assert usage_before.total_size_bytes == 20
    state_before = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)

    result = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution=resolution
    )
    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.QUOTA_EXCEEDED
    assert await coordinator.usage_snapshot("T1") == usage_before
    state_after = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)
    assert state_after == state_before
    assert state_after["resolved_at"] is None


@pytest.mark.asyncio
async def test_document_deleted_while_local_resolution_writes(
    coordinator, session_factory, blob_store
) -> None:
    doc_id, conflict_id = await _conflicted(coordinator)

    async def deleted_meanwhile(_key: str) -> None:
        await coordinator.soft_delete(tenant_id="T1", document_id=doc_id)

    blob_store.before_put = deleted_meanwhile
    result = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="local"
    )
    assert result.kind == ErrorKind.STALE

    usage = await coordinator.usage_snapshot("T1")
    assert (usage.document_count, usage.total_size_bytes) == (0, 0)
    state = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)
    assert state["version"] == 2
    assert state["resolved_at"] is None
    assert state["blobs"] == sorted([state["content_key"], state["sidecar_key"]])


@pytest.mark.asyncio
@pytest.mark.parametrize("resolution", ["local", "both"])
async def test_missing_preserved_blob_fails_without_side_effects(
    coordinator, session_factory, blob_store, resolution: str
) -> None:
    doc_id, conflict_id = await _conflicted(coordinator)
    async with session_factory() as session:
        conflict = (
            await session.execute(select(SyncConflict).where(SyncConflict.id == conflict_id))
        ).scalar_one()
    del blob_store.objects[conflict.local_blob_key]
    usage_before = await coordinator.usage_snapshot("T1")
    state_before = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)

    result = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution=resolution
    )
    assert result.kind == ErrorKind.CORRUPT_CATALOG
    assert await coordinator.usage_snapshot("T1") == usage_before
    state_after = await _resolution_state(session_factory, blob_store, doc_id, conflict_id)
    assert state_after == state_before
    assert state_after["resolved_at"] is None

    # The preserved revision is gone, but the client can still keep the current one.
    remote = await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=conflict_id, resolution="remote"
    )
    assert isinstance(remote, Ok)
