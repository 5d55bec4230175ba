"""
Tests for participation collections and their reverse navigation.
"""

import pytest

from core.errors import ConfigurationError
from core.records import ModelRegistry, ModelType
from core.relationships import ParticipationSpec
from core.storage import CollectionKind, RedisStoreClient
from tests.fixtures.models import Member, Membership, Team


class TestCollectionKinds:
    """Test each storage kind with its own Redis primitives"""

    @pytest.mark.asyncio
    async def test_sorted_set_uses_score_field(self, members, fake_redis):
        await members.save(Member(memberid="m1", joined=20.0))
        await members.save(Member(memberid="m2", joined=10.0))
        roster = members.participation("members")

        await roster.add("m1", "t1")
        await roster.add(Member(memberid="m2", joined=10.0), "t1")

        assert roster.collection_key("t1") == "team:t1:members"
        assert await fake_redis.type("team:t1:members") == "zset"
        assert await roster.members("t1") == ["m2", "m1"]
        assert await fake_redis.zscore("team:t1:members", "m1") == 20.0

    @pytest.mark.asyncio
    async def test_explicit_score_wins(self, members, fake_redis):
        await members.save(Member(memberid="m1", joined=20.0))
        await members.participation("members").add("m1", "t1", score=99.0)

        assert await fake_redis.zscore("team:t1:members", "m1") == 99.0

    @pytest.mark.asyncio
    async def test_list_keeps_insertion_order_without_duplicates(self, members, fake_redis):
        queue = members.participation("queue")
        await queue.add("m1", "t1")
        await queue.add("m2", "t1")
        await queue.add("m1", "t1")

        assert await fake_redis.type("team:t1:queue") == "list"
        assert await queue.members("t1") == ["m2", "m1"]
        assert await queue.contains("m1", "t1")

        await queue.remove("m1", "t1")
        assert await queue.members("t1") == ["m2"]
        assert not await queue.contains("m1", "t1")

    @pytest.mark.asyncio
    async def test_set(self, members, fake_redis):
        watchers = members.participation("watchers")
        await watchers.add("m2", "t1")
        await watchers.add("m1", "t1")

        assert await fake_redis.type("team:t1:watchers") == "set"
        assert await watchers.members("t1") == ["m1", "m2"]
        assert await watchers.size("t1") == 2

    @pytest.mark.asyncio
    async def test_class_level_collection(self, members, fake_redis):
        everyone = members.participation("everyone")
        await everyone.add("m1")

        assert everyone.collection_key() == "member:everyone"
        assert await everyone.members() == ["m1"]
        with pytest.raises(ValueError):
            everyone.collection_key("t1")
        with pytest.raises(ConfigurationError):
            await everyone.owner_ids("m1")

    @pytest.mark.asyncio
    async def test_owner_required_for_instance_collections(self, members):
        with pytest.raises(ValueError):
            members.participation("members").collection_key()

    @pytest.mark.asyncio
    async def test_collection_handle(self, members):
        handle = members.participation("watchers").collection("t1")
        await handle.add("m1")

        assert handle.key == "team:t1:watchers"
        assert await handle.members() == ["m1"]
        assert await handle.size() == 1
        assert await handle.contains("m1")

        await handle.remove("m1")
        assert await handle.size() == 0


class TestReverseNavigation:
    """Test count/owner_ids/owners/participates_in on the dependent"""

    @pytest.mark.asyncio
    async def test_owner_ids_and_count(self, members, teams, fake_redis):
        await teams.save(Team(teamid="t1", name="One"))
        await teams.save(Team(teamid="t2", name="Two"))
        roster = members.participation("members")
        await roster.add("m1", "t1")
        await roster.add("m1", "t2")
        await members.participation("watchers").add("m1", "t3")

        assert await roster.owner_ids("m1") == ["t1", "t2"]
        assert await roster.count("m1") == 2
        assert [t.name for t in await roster.owners("m1")] == ["One", "Two"]
        assert await roster.participates_in("m1", "t1")
        assert not await roster.participates_in("m1", "t3")
        assert await fake_redis.smembers("member:m1:participations") == {
            "team:t1:members", "team:t2:members", "team:t3:watchers"
        }

    @pytest.mark.asyncio
    async def test_remove_everywhere(self, members):
        roster = members.participation("members")
        await roster.add("m1", "t1")
        await roster.add("m1", "t2")

        assert await roster.remove_everywhere("m1") == 2
        assert await roster.owner_ids("m1") == []
        assert await roster.members("t1") == []

    @pytest.mark.asyncio
    async def test_collection_keys(self, members):
        roster = members.participation("members")
        await roster.add("m1", "t1")
        await roster.add("m1", "t2")

        found = sorted([pair async for pair in roster.collection_keys()])

        assert found == [("t1", "team:t1:members"), ("t2", "team:t2:members")]

    @pytest.mark.asyncio
    async def test_delete_leaves_memberships_by_default(self, members):
        await members.save(Member(memberid="m1"))
        await members.participation("watchers").add("m1", "t1")

        await members.delete("m1")

        assert await members.participation("watchers").members("t1") == ["m1"]


@pytest.fixture
def crew_registry(client):
    registry = ModelRegistry(client)
    registry.register(ModelType("team", Team, "teamid"))
    registry.register(ModelType("membership", Membership, "key"))
    registry.register(ModelType(
        "crew", Member, "memberid",
        relationships=[
            ParticipationSpec("crew", owner="team", kind=CollectionKind.SET,
                              through="membership", remove_on_delete=True),
        ]
    ))
    return registry


class TestThroughModels:
    """Test join records and remove_on_delete"""

    @pytest.mark.asyncio
    async def test_add_creates_join_record(self, crew_registry):
        crew = crew_registry["crew"].participation("crew")
        memberships = crew_registry["membership"]

        await crew.add("m1", "t1")

        join = await memberships.load("t1:m1")
        assert isinstance(join, Membership)
        assert join.owner_id == "t1"
        assert join.member_id == "m1"
        assert await memberships.timeline.members() == ["t1:m1"]

    @pytest.mark.asyncio
    async def test_remove_deletes_join_record(self, crew_registry):
        crew = crew_registry["crew"].participation("crew")
        await crew.add("m1", "t1")

        await crew.remove("m1", "t1")

        assert await crew_registry["membership"].exists("t1:m1") is False

    @pytest.mark.asyncio
    async def test_delete_removes_memberships(self, crew_registry):
        crew_type = crew_registry["crew"]
        crew = crew_type.participation("crew")
        await crew_type.save(Member(memberid="m1"))
        await crew.add("m1", "t1")
        await crew.add("m1", "t2")

        assert await crew_type.delete("m1") is True
        assert await crew.members("t1") == []
        assert await crew.members("t2") == []
        assert await crew_registry["membership"].exists("t1:m1") is False


class TestDeclarationValidation:
    """Test errors raised while building accessors"""

    def test_through_requires_through_record(self, client):
        registry = ModelRegistry(client)
        registry.register(ModelType("team", Team, "teamid"))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType(
                "crew", Member, "memberid",
                relationships=[ParticipationSpec("crew", owner="team", through="team")]
            ))

    def test_unknown_owner(self, client):
        registry = ModelRegistry(client)
        with pytest.raises(ConfigurationError):
            registry.register(ModelType(
                "crew", Member, "memberid",
                relationships=[ParticipationSpec("crew", owner="team")]
            ))

    def test_unknown_score_field(self, client):
        registry = ModelRegistry(client)
        registry.register(ModelType("team", Team, "teamid"))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType(
                "crew", Member, "memberid",
                relationships=[ParticipationSpec("crew", owner="team", score_field="nope")]
            ))

    def test_duplicate_type(self, client):
        registry = ModelRegistry(client)
        registry.register(ModelType("team", Team, "teamid"))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType("team", Team, "teamid"))

    def test_name_containing_client_delimiter(self, fake_redis):
        registry = ModelRegistry(RedisStoreClient(redis=fake_redis, key_delimiter="/"))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType("team/a", Team, "teamid"))

    def test_explicit_delimiter_wins_over_client(self, fake_redis):
        registry = ModelRegistry(RedisStoreClient(redis=fake_redis, key_delimiter="/"))
        team = registry.register(ModelType("team", Team, "teamid", delimiter="|"))

        assert team.dbkey("t1") == "team|t1|object"
        with pytest.raises(ConfigurationError):
            ModelType("a|b", Team, "teamid", delimiter="|")

    def test_names_that_share_record_or_timeline_keys(self, client):
        registry = ModelRegistry(client)
        registry.register(ModelType("team", Team, "teamid"))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType(
                "crew", Member, "memberid",
                relationships=[ParticipationSpec("object", owner="team")]
            ))
        with pytest.raises(ConfigurationError):
            registry.register(ModelType(
                "crew", Member, "memberid",
                relationships=[ParticipationSpec("instances", kind=CollectionKind.SET)]
            ))
