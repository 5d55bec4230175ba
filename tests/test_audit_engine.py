"""
Tests for the audit engine.

Each test seeds drift directly in Redis and checks that exactly that drift
is reported, without the audit writing anything.
"""

import pytest

from core.audit import AuditEngine
from core.models import AuditConfig, AuditPhase, AuditStatus, FindingKind, StaleReason
from core.storage import CollectionKind
from tests.fixtures.models import Customer, Member


async def snapshot(redis):
    """Every key with its type and contents"""
    state = {}
    async for key in redis.scan_iter(match="*"):
        kind = await redis.type(key)
        if kind == "hash":
            value = await redis.hgetall(key)
        elif kind == "set":
            value = sorted(await redis.smembers(key))
        elif kind == "zset":
            value = await redis.zrange(key, 0, -1, withscores=True)
        elif kind == "list":
            value = await redis.lrange(key, 0, -1)
        else:
            value = await redis.get(key)
        state[key] = (kind, value)
    return state


@pytest.fixture
def engine():
    return AuditEngine()


class TestInstancesAudit:
    """Test timeline vs keyspace comparison"""

    @pytest.mark.asyncio
    async def test_consistent_data_is_healthy(self, engine, customers):
        for i in range(5):
            await customers.save(Customer(custid=f"c{i}", email=f"c{i}@example.com", role="admin"))

        result = await engine.audit(customers)

        assert result.healthy
        assert result.complete
        assert result.total_findings == 0
        assert result.instances.count_timeline == result.instances.count_scan == 5

    @pytest.mark.asyncio
    async def test_phantom_identifier(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1"))
        await fake_redis.delete("customer:c1:object")

        result = await engine.audit(customers)

        assert result.instances.phantoms == ["c1"]
        assert result.instances.missing == []
        assert not result.healthy

    @pytest.mark.asyncio
    async def test_missing_identifier(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1"))
        await fake_redis.zrem("customer:instances", "c1")

        result = await engine.audit(customers)

        assert result.instances.missing == ["c1"]
        assert [f.kind for f in result.instances.findings] == [FindingKind.MISSING]

    @pytest.mark.asyncio
    async def test_compound_identifiers_are_not_split(self, engine, customers):
        await customers.save(Customer(custid="region:eu:42"))
        await customers.save(Customer(custid="plain"))

        result = await engine.audit(customers, batch_size=1)

        assert result.healthy
        assert result.instances.count_scan == 2

    @pytest.mark.asyncio
    async def test_foreign_keys_are_ignored(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1"))
        await fake_redis.set("customer:c2:objectx", "noise")
        await fake_redis.set("customers:c3:object", "noise")

        result = await engine.audit(customers)

        assert result.instances.count_scan == 1
        assert result.healthy

    @pytest.mark.asyncio
    async def test_index_value_shaped_like_record_key(self, engine, customers, fake_redis):
        """A role of "object" stores a set at customer:role_multi:object"""
        await customers.save(Customer(custid="A", email="a@example.com", role="object"))
        assert await fake_redis.type("customer:role_multi:object") == "set"

        result = await engine.audit(customers, batch_size=1)

        assert result.healthy
        assert result.instances.count_scan == 1
        assert result.instances.missing == []

    @pytest.mark.asyncio
    async def test_index_entry_naming_a_non_hash_key(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="A", email="a@example.com", role="object"))
        await fake_redis.hset("customer:email_index", "x@example.com", "role_multi")

        result = await engine.audit(customers)

        stale = result.unique_indexes[0].stale
        assert [(f.identifier, f.reason) for f in stale] == [("role_multi", StaleReason.OBJECT_MISSING)]
        assert result.instances.finding_count == 0


class TestUniqueIndexAudit:
    """Test stale and missing unique index entries"""

    @pytest.mark.asyncio
    async def test_stale_entry_for_deleted_record(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1", email="a@example.com"))
        await fake_redis.delete("customer:c1:object")

        audit = (await engine.audit(customers)).unique_indexes[0]

        assert audit.index_name == "email_index"
        assert len(audit.stale) == 1
        finding = audit.stale[0]
        assert finding.reason is StaleReason.OBJECT_MISSING
        assert finding.identifier == "c1"
        assert finding.field_value == "a@example.com"

    @pytest.mark.asyncio
    async def test_stale_entry_for_changed_value(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1", email="a@example.com"))
        await fake_redis.hset("customer:c1:object", "email", "b@example.com")

        audit = (await engine.audit(customers)).unique_indexes[0]

        assert [f.reason for f in audit.stale] == [StaleReason.VALUE_MISMATCH]
        assert audit.stale[0].current_value == "b@example.com"
        assert [f.field_value for f in audit.missing] == ["b@example.com"]

    @pytest.mark.asyncio
    async def test_missing_entry(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1", email="a@example.com"))
        await fake_redis.hdel("customer:email_index", "a@example.com")

        audit = (await engine.audit(customers)).unique_indexes[0]

        assert audit.stale == []
        assert [(f.identifier, f.field_value) for f in audit.missing] == [("c1", "a@example.com")]

    @pytest.mark.asyncio
    async def test_records_without_value_are_not_missing(self, engine, customers):
        await customers.save(Customer(custid="c1"))

        audit = (await engine.audit(customers)).unique_indexes[0]

        assert audit.missing == []

    @pytest.mark.asyncio
    async def test_empty_values_agree_with_rebuild(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="A", email="", role=""))
        await customers.save(Customer(custid="B", email="", role=""))

        result = await engine.audit(customers)

        assert result.healthy
        assert await fake_redis.hgetall("customer:email_index") == {}
        assert await customers.unique_index("email_index").rebuild() == 0
        assert await customers.multi_index("role_multi").rebuild() == 0
        assert (await engine.audit(customers)).healthy

    @pytest.mark.asyncio
    async def test_scoped_index_through_participation(self, engine, members, fake_redis):
        await members.save(Member(memberid="m1", nickname="ace"))
        await members.save(Member(memberid="m2", nickname="bee"))
        await members.participation("members").add("m1", "t1")
        await members.participation("members").add("m2", "t1")
        index = members.unique_index("nickname_index")
        await index.set("ace", "m1", scope="t1")
        await index.set("ghost", "m9", scope="t1")

        audit = (await engine.audit(members)).unique_indexes[0]

        assert audit.status is AuditStatus.AUDITED
        assert [(f.identifier, f.scope) for f in audit.stale] == [("m9", "t1")]
        assert [(f.identifier, f.field_value, f.scope) for f in audit.missing] == [("m2", "bee", "t1")]


class TestMultiIndexAudit:
    """Test multi index value sets"""

    @pytest.mark.asyncio
    async def test_stale_and_missing(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1", role="admin"))
        await customers.save(Customer(custid="c2", role="admin"))
        await fake_redis.hset("customer:c2:object", "role", "viewer")

        audit = (await engine.audit(customers)).multi_indexes[0]

        assert [(f.identifier, f.reason) for f in audit.stale] == [("c2", StaleReason.VALUE_MISMATCH)]
        assert [(f.identifier, f.key) for f in audit.missing] == [("c2", "customer:role_multi:viewer")]
        assert audit.orphaned_keys == []

    @pytest.mark.asyncio
    async def test_orphaned_value_keys(self, engine, customers, fake_redis):
        await customers.save(Customer(custid="c1", role="admin"))
        await fake_redis.sadd("customer:role_multi:ghost", "c8", "c9")
        await fake_redis.set("customer:role_multi:broken", "not a set")

        audit = (await engine.audit(customers)).multi_indexes[0]

        assert audit.orphaned_keys == ["customer:role_multi:broken", "customer:role_multi:ghost"]
        assert sorted(f.identifier for f in audit.stale) == ["c8", "c9"]

    @pytest.mark.asyncio
    async def test_sample_size_bounds_members_checked(self, engine, customers, fake_redis):
        for i in range(10):
            await customers.save(Customer(custid=f"c{i}", role="admin"))

        audit = (await engine.audit(customers, sample_size=3)).multi_indexes[0]

        assert audit.entries_checked == 3
        assert audit.stale == []

    @pytest.mark.asyncio
    async def test_scoped_multi_index_is_not_implemented(self, engine, members):
        result = await engine.audit(members)

        audit = result.multi_indexes[0]
        assert audit.index_name == "dept_multi"
        assert audit.status is AuditStatus.NOT_IMPLEMENTED
        assert audit.note
        assert result.healthy
        assert not result.complete


class TestParticipationAudit:
    """Test type-aware participation checks"""

    @pytest.mark.asyncio
    async def test_stale_members_per_kind(self, engine, members, fake_redis):
        await members.save(Member(memberid="m1"))
        for name in ("members", "watchers", "queue"):
            await members.participation(name).add("m1", "t1")
            await members.participation(name).add("gone", "t1")
        await members.participation("everyone").add("gone")

        result = await engine.audit(members)
        by_name = {audit.collection: audit for audit in result.participations}

        expected = {
            "members": CollectionKind.SORTED_SET,
            "watchers": CollectionKind.SET,
            "queue": CollectionKind.LIST,
            "everyone": CollectionKind.SET,
        }
        for name, kind in expected.items():
            findings = by_name[name].stale_members
            assert [f.identifier for f in findings] == ["gone"]
            assert findings[0].collection_kind is kind
            assert findings[0].reason is StaleReason.OBJECT_MISSING
        assert by_name["members"].stale_members[0].scope == "t1"
        assert by_name["everyone"].stale_members[0].scope is None
        assert by_name["members"].collections_checked == 1

    @pytest.mark.asyncio
    async def test_absent_collections_are_skipped(self, engine, members):
        result = await engine.audit(members)

        assert all(audit.collections_checked == 0 for audit in result.participations)
        assert result.healthy


class TestAuditBehaviour:
    """Test arguments, progress reporting and read-only behaviour"""

    @pytest.mark.asyncio
    async def test_audit_is_read_only(self, engine, customers, members, fake_redis):
        await customers.save(Customer(custid="c1", email="a@example.com", role="admin"))
        await members.save(Member(memberid="m1", nickname="ace"))
        await members.participation("queue").add("gone", "t1")
        await fake_redis.zadd("customer:instances", {"phantom": 1.0})
        await fake_redis.hset("customer:email_index", "x@example.com", "c9")

        before = await snapshot(fake_redis)
        await engine.audit(customers)
        await engine.audit(members)
        after = await snapshot(fake_redis)

        assert before == after

    @pytest.mark.asyncio
    async def test_progress_phases_in_order(self, engine, customers):
        await customers.save(Customer(custid="c1"))
        phases = []

        await engine.audit(customers, progress_callback=lambda phase, details: phases.append(phase))

        assert phases == [
            AuditPhase.COLLECTING_TIMELINE,
            AuditPhase.SCANNING_KEYSPACE,
            AuditPhase.COMPARING,
            AuditPhase.REPORTING,
        ]

    @pytest.mark.asyncio
    async def test_invalid_sizes_raise(self, engine, customers):
        with pytest.raises(ValueError):
            await engine.audit(customers, batch_size=0)
        with pytest.raises(ValueError):
            await engine.audit(customers, sample_size=0)

    @pytest.mark.asyncio
    async def test_batch_size_does_not_change_findings(self, customers, fake_redis):
        for i in range(9):
            await customers.save(Customer(custid=f"c{i}", email=f"c{i}@example.com", role="r"))
        await fake_redis.delete("customer:c3:object")
        await fake_redis.zrem("customer:instances", "c5")

        small = await AuditEngine(AuditConfig(batch_size=2)).audit(customers)
        large = await AuditEngine().audit(customers, batch_size=500)

        assert small == large

    @pytest.mark.asyncio
    async def test_health_check_wraps_result(self, engine, customers):
        await customers.save(Customer(custid="c1"))

        report = await engine.health_check(customers)

        assert report.model_name == "customer"
        assert report.duration >= 0
        assert report.healthy
