from __future__ import annotations

import pytest

from docsync.domain.results import ErrorKind, Ok
from docsync.services.sweeper import Sweeper


def _sweeper(session_factory, blob_store, settings, clock) -> Sweeper:
    return Sweeper(
        session_factory=session_factory, blob_store=blob_store, settings=settings, time_provider=clock
    )


@pytest.mark.asyncio
async def test_failed_blob_delete_keeps_row_for_next_pass(
    coordinator, session_factory, blob_store, settings, clock
) -> None:
    uploaded = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="a", sidecar={})
    await coordinator.soft_delete(tenant_id="T1", document_id=uploaded.value.id)
    clock.advance(days=31)

    blob_store.fail_deletes = True
    report = await _sweeper(session_factory, blob_store, settings, clock).run_once()
    assert report.documents == 0
    assert report.failures == 1
    status = await coordinator.status(tenant_id="T1", tier="free")
    assert [doc.id for doc in status.value.documents] == [uploaded.value.id]

    blob_store.fail_deletes = False
    retried = await _sweeper(session_factory, blob_store, settings, clock).run_once()
    assert retried.documents == 1
    assert retried.failures == 0
    status = await coordinator.status(tenant_id="T1", tier="free")
    assert status.value.documents == []


@pytest.mark.asyncio
async def test_shared_conflict_slot_survives_until_last_reference(
    coordinator, session_factory, blob_store, settings, clock
) -> None:
    await coordinator.upload(tenant_id="T1", tier="free", path="s.md", content="base", sidecar={})
    await coordinator.upload(
        tenant_id="T1", tier="free", path="s.md", content="theirs", sidecar={}, base_version=1
    )
    first = await coordinator.upload(
        tenant_id="T1", tier="free", path="s.md", content="mine-1", sidecar={}, base_version=1
    )
    second = await coordinator.upload(
        tenant_id="T1", tier="free", path="s.md", content="mine-2", sidecar={}, base_version=1
    )
    first_id = first.details["conflictId"]
    second_id = second.details["conflictId"]

    await coordinator.resolve_conflict(
        tenant_id="T1", tier="free", conflict_id=first_id, resolution="remote"
    )
    clock.advance(days=8)
    report = await _sweeper(session_factory, blob_store, settings, clock).run_once()
    assert report.conflicts == 1

    remaining = await coordinator.get_conflict(tenant_id="T1", conflict_id=second_id)
    assert isinstance(remaining, Ok)
    assert remaining.value.local.content == "mine-2"
    assert remaining.value.conflict.local_blob_key in blob_store.objects

    gone = await coordinator.get_conflict(tenant_id="T1", conflict_id=first_id)
    assert gone.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_open_conflicts_are_never_swept(
    coordinator, session_factory, blob_store, settings, clock
) -> None:
    await coordinator.upload(tenant_id="T1", tier="free", path="o.md", content="base", sidecar={})
    await coordinator.upload(
        tenant_id="T1", tier="free", path="o.md", content="theirs", sidecar={}, base_version=1
    )
    lost = await coordinator.upload(
        tenant_id="T1", tier="free", path="o.md", content="mine", sidecar={}, base_version=1
    )
    clock.advance(days=365)
    report = await _sweeper(session_factory, blob_store, settings, clock).run_once()
    assert report.conflicts == 0
    detail = await coordinator.get_conflict(tenant_id="T1", conflict_id=lost.details["conflictId"])
    assert isinstance(detail, Ok)


@pytest.mark.asyncio
async def test_operation_log_is_pruned_after_retention(
    coordinator, session_factory, blob_store, settings, clock
) -> None:
    await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="a", sidecar={})
    clock.advance(days=89)
    sweeper = _sweeper(session_factory, blob_store, settings, clock)
    assert (await sweeper.run_once()).operations == 0

    clock.advance(days=2)
    assert (await sweeper.run_once()).operations == 1
