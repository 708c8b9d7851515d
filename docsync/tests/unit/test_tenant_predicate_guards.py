from __future__ import annotations

import pytest

from docsync.domain.models import SyncDocument
from docsync.persistence.guards import TenantPredicateError, require_tenant_id, tenant_predicate


def test_tenant_predicate_requires_tenant_id() -> None:
    with pytest.raises(TenantPredicateError):
        tenant_predicate(SyncDocument, "")
    with pytest.raises(TenantPredicateError):
        require_tenant_id(None)


def test_tenant_predicate_builds_clause() -> None:
    clause = tenant_predicate(SyncDocument, "t1")
    assert "tenant_id" in str(clause)
