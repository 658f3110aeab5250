"""Tests for relationship preloading."""

from __future__ import annotations

import pytest

from querykit import Base, ForeignKey, Mapped, Preloader, Row, mapped_column, select
from querykit.errors import DatabaseError, InvalidRelationshipError, NotImplementedFeatureError
from querykit.executor import Executor
from querykit.relationships import belongs_to, has_many, has_one, many_to_many


class PUser(Base):
    __tablename__ = "p_users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]

    posts = has_many("PPost")
    profile = has_one("PProfile")
    groups = many_to_many("PGroup", through="p_memberships")


class PPost(Base):
    __tablename__ = "p_posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("p_users.id"), nullable=True)
    title: Mapped[str]

    author = belongs_to("PUser", local_key="user_id")
    comments = has_many("PComment", foreign_key="post_id")


class PComment(Base):
    __tablename__ = "p_comments"

    id: Mapped[int] = mapped_column(primary_key=True)
    post_id: Mapped[int]
    body: Mapped[str]


class PProfile(Base):
    __tablename__ = "p_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("p_users.id"))
    bio: Mapped[str]


class PGroup(Base):
    __tablename__ = "p_groups"

    id: Mapped[int] = mapped_column(primary_key=True)


USERS = [
    {"id": 1, "name": "Alice"},
    {"id": 2, "name": "Bob"},
    {"id": 3, "name": "Charlie"},
]
POSTS = [
    {"id": 10, "user_id": 1, "title": "A1"},
    {"id": 11, "user_id": 2, "title": "B1"},
    {"id": 12, "user_id": 1, "title": "A2"},
    {"id": 13, "user_id": 2, "title": "B2"},
    {"id": 14, "user_id": 1, "title": "A3"},
]
COMMENTS = [
    {"id": 100, "post_id": 10, "body": "first"},
    {"id": 101, "post_id": 10, "body": "second"},
    {"id": 102, "post_id": 13, "body": "third"},
]
PROFILES = [{"id": 50, "user_id": 2, "bio": "hi"}]


@pytest.fixture
def pool(pool):
    pool.table("p_users", USERS)
    pool.table("p_posts", POSTS)
    pool.table("p_comments", COMMENTS)
    pool.table("p_profiles", PROFILES)
    return pool


@pytest.fixture
def preloader(pool):
    return Preloader(Executor.for_pool(pool))


@pytest.fixture
def users():
    return [PUser._from_row(row) for row in USERS]


class TestSimplePreload:
    async def test_has_many_issues_one_query(self, pool, preloader, users):
        """Three users owning five posts cost exactly one extra query."""
        loaded = await preloader.preload(PUser, users, ["posts"])

        assert pool.sql == ["SELECT * FROM p_posts WHERE user_id IN ($1, $2, $3)"]
        assert [p.title for p in loaded[0].posts] == ["A1", "A2", "A3"]
        assert [p.title for p in loaded[1].posts] == ["B1", "B2"]
        assert loaded[2].posts == []

    async def test_one_query_per_association(self, pool, preloader, users):
        await preloader.preload(PUser, users, ["posts", "profile"])
        assert len(pool.statements) == 2

    async def test_has_one(self, preloader, users):
        loaded = await preloader.preload(PUser, users, ["profile"])
        assert loaded[0].profile is None
        assert loaded[1].profile.bio == "hi"

    async def test_belongs_to_uses_distinct_keys(self, pool, preloader):
        posts = [PPost._from_row(row) for row in POSTS]
        loaded = await preloader.preload(PPost, posts, ["author"])

        assert pool.statements == [("SELECT * FROM p_users WHERE id IN ($1, $2)", (1, 2))]
        assert [p.author.name for p in loaded] == ["Alice", "Bob", "Alice", "Bob", "Alice"]

    async def test_missing_keys_are_skipped(self, pool, preloader):
        posts = [
            PPost._from_row({"id": 1, "user_id": None, "title": "orphan"}),
            PPost._from_row({"id": 2, "user_id": 3, "title": "c"}),
        ]
        loaded = await preloader.preload(PPost, posts, ["author"])

        assert pool.statements[0][1] == (3,)
        assert loaded[0].author is None
        assert loaded[1].author.name == "Charlie"

    async def test_inputs_are_not_modified(self, preloader, users):
        loaded = await preloader.preload(PUser, users, ["posts"])
        assert loaded[0] is not users[0]
        with pytest.raises(AttributeError):
            _ = users[0].posts

    async def test_no_items_no_queries(self, pool, preloader):
        assert await preloader.preload(PUser, [], ["posts"]) == []
        assert pool.statements == []

    async def test_simple_associations_run_concurrently(self, pool, preloader, users):
        pool.delay_on("FROM p_", 0.01)
        await preloader.preload(PUser, users, ["posts", "profile"])
        assert pool.max_in_flight == 2


class TestBatching:
    async def test_keys_are_chunked(self, pool, users):
        preloader = Preloader(Executor.for_pool(pool), batch_size=2)
        loaded = await preloader.preload(PUser, users, ["posts"])

        assert [args for _, args in pool.statements] == [(1, 2), (3,)]
        assert [len(u.posts) for u in loaded] == [3, 2, 0]

    async def test_chunked_results_match_single_query(self, pool, users):
        chunked = await Preloader(Executor.for_pool(pool), batch_size=1).preload(PUser, users, ["posts"])
        single = await Preloader(Executor.for_pool(pool)).preload(PUser, users, ["posts"])

        def titles(loaded):
            return [[p.title for p in u.posts] for u in loaded]

        assert titles(chunked) == titles(single)


class TestNestedPreload:
    async def test_nested_path(self, pool, preloader, users):
        loaded = await preloader.preload(PUser, users, ["posts.comments"])

        assert len(pool.statements) == 2
        assert pool.sql[0].startswith("SELECT * FROM p_posts")
        assert pool.sql[1] == "SELECT * FROM p_comments WHERE post_id IN ($1, $2, $3, $4, $5)"

        first_post = loaded[0].posts[0]
        assert [c.body for c in first_post.comments] == ["first", "second"]
        assert loaded[1].posts[1].comments[0].body == "third"
        assert loaded[0].posts[1].comments == []

    async def test_prefix_is_loaded_once(self, pool, preloader, users):
        await preloader.preload(PUser, users, ["posts", "posts.comments", "profile"])
        assert len(pool.queries_on("p_posts")) == 1
        assert len(pool.statements) == 3

    async def test_nested_through_belongs_to(self, pool, preloader):
        posts = [PPost._from_row(row) for row in POSTS[:2]]
        loaded = await preloader.preload(PPost, posts, ["author.profile"])
        assert loaded[0].author.profile is None
        assert loaded[1].author.profile.bio == "hi"


class TestFailures:
    async def test_unknown_name_fails_before_any_query(self, pool, preloader, users):
        with pytest.raises(InvalidRelationshipError):
            await preloader.preload(PUser, users, ["posts", "followers"])
        assert pool.statements == []

    async def test_unknown_nested_segment(self, pool, preloader, users):
        with pytest.raises(InvalidRelationshipError):
            await preloader.preload(PUser, users, ["posts.likes"])
        assert pool.statements == []

    async def test_many_to_many_is_not_supported(self, pool, preloader, users):
        with pytest.raises(NotImplementedFeatureError):
            await preloader.preload(PUser, users, ["groups"])
        assert pool.statements == []

    async def test_failure_cancels_siblings(self, pool, preloader, users):
        """One failing association cancels the others and surfaces its error."""
        pool.delay_on("FROM p_profiles", 5)
        pool.fail_on("FROM p_posts", ConnectionResetError("connection reset"))

        with pytest.raises(DatabaseError, match="connection reset") as exc_info:
            await preloader.preload(PUser, users, ["profile", "posts"])

        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert pool.cancelled == ["SELECT * FROM p_profiles WHERE user_id IN ($1, $2, $3)"]

    async def test_nested_failure_returns_nothing(self, pool, preloader, users):
        pool.fail_on("FROM p_comments", TimeoutError())
        with pytest.raises(DatabaseError):
            await preloader.preload(PUser, users, ["profile", "posts.comments"])


class TestRepoPreload:
    async def test_query_preloads_are_applied(self, pool, repo):
        users = await repo.all(select(PUser).preload("posts"))

        assert pool.sql[0] == "SELECT * FROM p_users"
        assert len(pool.statements) == 2
        assert [len(u.posts) for u in users] == [3, 2, 0]

    async def test_rows_preload_attaches_rows(self, repo):
        rows = await repo.rows(select(PUser).preload("posts"))

        assert isinstance(rows[0], Row)
        assert all(isinstance(p, Row) for p in rows[0]["posts"])
        assert [p["title"] for p in rows[1]["posts"]] == ["B1", "B2"]

    async def test_repo_preload(self, pool, repo, users):
        loaded = await repo.preload(PUser, users, "posts", "profile")
        assert loaded[1].profile.bio == "hi"

    async def test_bound_query(self, repo):
        users = await repo.query(PUser).preload("posts.comments").all()
        assert users[0].posts[0].comments[1].body == "second"
