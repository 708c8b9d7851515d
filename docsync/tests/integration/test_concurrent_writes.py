from __future__ import annotations

import pytest

from docsync.domain.results import ErrorKind, Fail, Ok
from docsync.services.blobstore.keys import document_prefix
from docsync.services.sync import SyncCoordinator


def _document_keys(blob_store, document_id: str) -> set[str]:
    prefix = document_prefix("T1", document_id)
    return {key for key in blob_store.objects if key.startswith(prefix)}


@pytest.mark.asyncio
async def test_losing_same_base_upload_never_clobbers_the_winner(coordinator, blob_store) -> None:
    base = await coordinator.upload(tenant_id="T1", tier="free", path="race.md", content="base", sidecar={})
    doc_id = base.value.id
    committed: dict[str, object] = {}

    async def other_writer_commits(_key: str) -> None:
        committed["x"] = await coordinator.upload(
            tenant_id="T1", tier="free", path="race.md", content="from-x", sidecar={}, base_version=1
        )

    # Y has passed admission and is writing its blobs when X commits version 2.
    blob_store.before_put = other_writer_commits
    loser = await coordinator.upload(
        tenant_id="T1", tier="free", path="race.md", content="from-y", sidecar={}, base_version=1
    )

    winner = committed["x"]
    assert isinstance(winner, Ok)
    assert winner.value.version == 2
    assert isinstance(loser, Fail)
    assert loser.kind == ErrorKind.CONFLICT
    assert loser.details["remoteVersion"] == 2
    assert loser.details["remote"]["content"] == "from-x"

    current = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert isinstance(current, Ok)
    assert current.value.content == "from-x"
    assert current.value.document.version == 2
    assert _document_keys(blob_store, doc_id) == {winner.value.content_key, winner.value.sidecar_key}

    detail = await coordinator.get_conflict(tenant_id="T1", conflict_id=loser.details["conflictId"])
    assert detail.value.local.content == "from-y"
    assert detail.value.remote.content == "from-x"


@pytest.mark.asyncio
async def test_upload_going_stale_mid_write_keeps_current_blobs(coordinator, blob_store) -> None:
    base = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="base", sidecar={})
    doc_id = base.value.id

    async def renamed_meanwhile(_key: str) -> None:
        await coordinator.rename(tenant_id="T1", document_id=doc_id, path="b.md")

    blob_store.before_put = renamed_meanwhile
    stale = await coordinator.upload(
        tenant_id="T1", tier="free", path="a.md", content="late", sidecar={}, base_version=1
    )
    assert stale.kind == ErrorKind.STALE

    current = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert current.value.content == "base"
    assert current.value.document.path == "b.md"
    assert _document_keys(blob_store, doc_id) == {base.value.content_key, base.value.sidecar_key}


@pytest.mark.asyncio
async def test_in_transaction_quota_denial_keeps_current_blobs(
    session_factory, blob_store, settings, clock
) -> None:
    tight = settings.model_copy(update={"tier_free_max_bytes": 20})
    coordinator = SyncCoordinator(
        session_factory=session_factory, blob_store=blob_store, settings=tight, time_provider=clock
    )
    base = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="base", sidecar={})
    doc_id = base.value.id

    async def other_document_fills_quota(_key: str) -> None:
        filler = await coordinator.upload(
            tenant_id="T1", tier="free", path="filler.md", content="x" * 11, sidecar={}
        )
        assert isinstance(filler, Ok)

    blob_store.before_put = other_document_fills_quota
    denied = await coordinator.upload(
        tenant_id="T1", tier="free", path="a.md", content="from-y", sidecar={}, base_version=1
    )
    assert denied.kind == ErrorKind.QUOTA_EXCEEDED

    current = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert current.value.content == "base"
    assert current.value.document.version == 1
    assert _document_keys(blob_store, doc_id) == {base.value.content_key, base.value.sidecar_key}
    snapshot = await coordinator.usage_snapshot("T1")
    assert (snapshot.document_count, snapshot.total_size_bytes) == (2, 19)


@pytest.mark.asyncio
async def test_overwrite_discards_the_superseded_pair(coordinator, blob_store) -> None:
    first = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="one", sidecar={})
    second = await coordinator.upload(
        tenant_id="T1", tier="free", path="a.md", content="two", sidecar={}, base_version=1
    )
    assert second.value.content_key != first.value.content_key
    assert _document_keys(blob_store, first.value.id) == {
        second.value.content_key,
        second.value.sidecar_key,
    }


@pytest.mark.asyncio
async def test_reader_holding_a_superseded_row_follows_the_new_revision(
    coordinator, blob_store, session_factory
) -> None:
    first = await coordinator.upload(tenant_id="T1", tier="free", path="a.md", content="one", sidecar={})
    doc_id = first.value.id
    original_get = blob_store.get
    raced = {"done": False}

    async def get_after_overwrite(key: str) -> bytes:
        if not raced["done"]:
            raced["done"] = True
            await coordinator.upload(
                tenant_id="T1", tier="free", path="a.md", content="two", sidecar={}, base_version=1
            )
        return await original_get(key)

    blob_store.get = get_after_overwrite
    result = await coordinator.download(tenant_id="T1", document_id=doc_id)
    assert isinstance(result, Ok)
    assert result.value.content == "two"
    assert result.value.document.version == 2
