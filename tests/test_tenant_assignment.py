from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import AuditWriteFailed, ValidationError
from tenantguard.service.migration import TenantAssignment
from tenantguard.storage.common import Store
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.postgres import PostgresStore
from tenantguard.storage.models import Severity, TenantStatus

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def job(store, alerter):
    store.create_tenant("school-42")
    return TenantAssignment(store, AuditSink(store, alerter), "platform_admin")


async def _run(job, **kwargs):
    params = dict(
        operator="ops@platform.example",
        reason="import without school",
        not_after=NOW + timedelta(hours=4),
        now=NOW,
    )
    params.update(kwargs)
    return await job.run("school-42", **params)


async def test_assigns_only_orphans(job, store):
    orphan = store.create_user("orphan@school.example")
    store.create_user("ops@platform.example", role="platform_admin")
    store.create_tenant("school-1")
    placed = store.create_user("placed@school.example", tenant_id="school-1")

    result = await _run(job)

    assert result.assigned == [orphan.id]
    assert store.get_user(orphan.id).tenant_id == "school-42"
    assert store.get_user(placed.id).tenant_id == "school-1"
    records = [r for r in store.audit_records if r.action == "tenant-assigned"]
    assert len(records) == 1
    assert records[0].severity == Severity.WARNING
    assert records[0].target_resource_id == orphan.id
    assert records[0].detail["reason"] == "import without school"


async def test_explicit_ids_never_reassign(job, store):
    store.create_tenant("school-1")
    placed = store.create_user("placed@school.example", tenant_id="school-1")
    operator = store.create_user("ops@platform.example", role="platform_admin")

    result = await _run(job, user_ids=[placed.id, operator.id, "missing"])

    assert result.assigned == []
    assert sorted(result.skipped) == sorted([placed.id, operator.id])
    assert store.get_user(operator.id).tenant_id is None


async def test_dry_run_changes_nothing(job, store):
    orphan = store.create_user("orphan@school.example")

    result = await _run(job, dry_run=True)

    assert result.assigned == [orphan.id]
    assert store.get_user(orphan.id).tenant_id is None
    assert store.audit_records == []


@pytest.mark.parametrize(
    "not_after",
    [NOW, NOW - timedelta(minutes=1), NOW + timedelta(hours=73)],
)
async def test_window_is_enforced(job, not_after):
    with pytest.raises(ValidationError):
        await _run(job, not_after=not_after)


async def test_suspended_target_refused(job, store):
    store.set_tenant_status("school-42", TenantStatus.SUSPENDED)
    store.create_user("orphan@school.example")

    with pytest.raises(ValidationError):
        await _run(job)


async def test_requires_reason(job):
    with pytest.raises(ValidationError):
        await _run(job, reason="")


async def test_stops_when_audit_is_down(audit_outage_store, alerter):
    audit_outage_store.create_tenant("school-42")
    orphan = audit_outage_store.create_user("orphan@school.example")
    job = TenantAssignment(audit_outage_store, AuditSink(audit_outage_store, alerter), "platform_admin")

    with pytest.raises(AuditWriteFailed):
        await _run(job)

    assert audit_outage_store.get_user(orphan.id).tenant_id is None
    assert alerter.alerts


@pytest.mark.parametrize("store_cls", [MemoryStore, PostgresStore])
def test_both_stores_satisfy_store_contract(store_cls):
    contract = [name for name in vars(Store) if not name.startswith("_")]

    assert "list_users_without_tenant" in contract
    assert "assign_user_tenant" in contract
    for name in contract:
        assert callable(getattr(store_cls, name, None)), name
