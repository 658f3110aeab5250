"""Tests for SQL compilation."""

from __future__ import annotations

import re

import pytest

from querykit import ConditionGroup, F, ForeignKey, JSON, Mapped, Query, mapped_column
from querykit.base import Base
from querykit.compiler import (
    ConflictTarget,
    chunked,
    compile_aggregate,
    compile_count,
    compile_delete,
    compile_in_lookup,
    compile_insert,
    compile_select,
    compile_update,
    compile_upsert,
    unique_keys,
)
from querykit.errors import InvalidQueryError, InvalidSchemaError
from querykit.query import Condition
from querykit.relationships import belongs_to, has_many


class CUser(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    email: Mapped[str]
    age: Mapped[int | None] = mapped_column(nullable=True)

    posts = has_many("CPost", foreign_key="user_id")


class CPost(Base):
    __tablename__ = "c_posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    title: Mapped[str]
    published: Mapped[bool] = mapped_column(default=False)
    meta: Mapped[dict] = mapped_column(JSON, nullable=True)

    author = belongs_to("CUser", local_key="user_id")


def placeholders(sql: str) -> list[int]:
    return [int(n) for n in re.findall(r"\$(\d+)", sql)]


class TestCompileSelect:
    def test_basic_scenario(self):
        """Two conditions and a limit compile to the documented statement."""
        query = (
            Query.from_("users")
            .where(F("age") >= 18)
            .where(F("email").like("%@x.com"))
            .limit(10)
        )
        sql, params = compile_select(query)

        assert sql == "SELECT * FROM users WHERE age >= $1 AND email LIKE $2 LIMIT 10"
        assert params == [18, "%@x.com"]

    def test_no_conditions_has_no_where(self):
        compiled = compile_select(Query.from_(CUser))
        assert compiled.sql == "SELECT * FROM users"
        assert compiled.params == []

    def test_order_limit_offset(self):
        query = Query.from_(CUser).order_by("-age").order_by("name").limit(5).offset(20)
        compiled = compile_select(query)
        assert compiled.sql == "SELECT * FROM users ORDER BY age DESC, name ASC LIMIT 5 OFFSET 20"

    def test_composite_group_is_parenthesized(self):
        query = (
            Query.from_(CUser)
            .where(F("age") > 18)
            .where_group(F("name") == "a", F("name") == "b", connector="OR")
        )
        compiled = compile_select(query)
        assert compiled.sql == "SELECT * FROM users WHERE age > $1 AND (name = $2 OR name = $3)"
        assert compiled.params == [18, "a", "b"]

    def test_nested_and_negated_groups(self):
        cond = ~((F("age") < 18) | (F("age") > 65)) & (F("name") != "root")
        compiled = compile_select(Query.from_(CUser).where(cond))
        assert compiled.sql == (
            "SELECT * FROM users WHERE (NOT (age < $1 OR age > $2) AND name != $3)"
        )
        assert compiled.params == [18, 65, "root"]

    def test_null_checks_take_no_params(self):
        compiled = compile_select(Query.from_(CUser).where(F("age").is_null(), F("name").is_not_null()))
        assert compiled.sql == "SELECT * FROM users WHERE age IS NULL AND name IS NOT NULL"
        assert compiled.params == []

    def test_in_and_between(self):
        query = Query.from_(CUser).where(F("id").in_([1, 2, 3]), F("age").between(18, 30))
        compiled = compile_select(query)
        assert compiled.sql == "SELECT * FROM users WHERE id IN ($1, $2, $3) AND age BETWEEN $4 AND $5"
        assert compiled.params == [1, 2, 3, 18, 30]

    def test_empty_in_is_always_false(self):
        compiled = compile_select(Query.from_(CUser).where(F("id").in_([])))
        assert compiled.sql == "SELECT * FROM users WHERE 1 = 0"
        assert compiled.params == []

    def test_explicit_selection_gets_primary_key(self):
        compiled = compile_select(Query.from_(CUser).select("name", "email"))
        assert compiled.sql == "SELECT id, name, email FROM users"

    def test_qualified_selection_keeps_single_primary_key(self):
        compiled = compile_select(Query.from_(CUser).select("users.id", "name").join("posts"))
        assert compiled.sql == (
            "SELECT users.id, users.name FROM users INNER JOIN c_posts ON users.id = c_posts.user_id"
        )

    def test_qualified_primary_key_without_joins(self):
        compiled = compile_select(Query.from_(CUser).select("users.id", "name"))
        assert compiled.sql == "SELECT users.id, name FROM users"

    def test_empty_group_among_conditions_is_skipped(self):
        query = Query.from_(CUser).where(ConditionGroup(()), F("name") == "a")
        compiled = compile_select(query)
        assert compiled.sql == "SELECT * FROM users WHERE name = $1"
        assert compiled.params == ["a"]

    def test_empty_group_inside_where_group_is_skipped(self):
        query = Query.from_(CUser).where_group(ConditionGroup(()), F("name") == "a", connector="OR")
        compiled = compile_select(query)
        assert compiled.sql == "SELECT * FROM users WHERE (name = $1)"

    def test_only_empty_groups_emit_no_where(self):
        query = Query.from_(CUser).where(ConditionGroup(())).where_related("posts", ConditionGroup(()))
        compiled = compile_select(query)
        assert " WHERE" not in compiled.sql
        assert compiled.params == []

    def test_relationship_condition_joins_implicitly(self):
        query = Query.from_(CUser).where(F("age") >= 18).where_related("posts", F("published") == True)  # noqa: E712
        compiled = compile_select(query)
        assert compiled.sql == (
            "SELECT users.id, users.name, users.email, users.age FROM users"
            " INNER JOIN c_posts ON users.id = c_posts.user_id"
            " WHERE users.age >= $1 AND c_posts.published = $2"
        )
        assert compiled.params == [18, True]

    def test_explicit_left_join_with_order(self):
        query = Query.from_(CPost).join("author", "left").order_by("title")
        compiled = compile_select(query)
        assert compiled.sql == (
            "SELECT c_posts.id, c_posts.user_id, c_posts.title, c_posts.published, c_posts.meta"
            " FROM c_posts LEFT JOIN users ON c_posts.user_id = users.id"
            " ORDER BY c_posts.title ASC"
        )

    def test_join_on_override(self):
        query = Query.from_(CUser).join("posts", on=("email", "title"))
        compiled = compile_select(query)
        assert "INNER JOIN c_posts ON users.email = c_posts.title" in compiled.sql

    def test_placeholders_are_gap_free(self):
        """Every combination of clauses numbers parameters 1..k in order."""
        query = (
            Query.from_(CUser)
            .where(F("age").between(1, 2), F("id").in_([5, 6]))
            .where_group(F("name") == "x", F("email").ilike("%y"), connector="OR")
            .where_group(F("age") != 3)
            .where_related("posts", F("title").like("a%"), F("published") == False)  # noqa: E712
            .where(F("name").is_not_null())
        )
        compiled = compile_select(query)
        assert placeholders(compiled.sql) == list(range(1, len(compiled.params) + 1))
        assert compiled.params == [1, 2, 5, 6, "x", "%y", 3, "a%", False]


class TestCompileErrors:
    def test_unknown_operator(self):
        with pytest.raises(InvalidQueryError):
            compile_select(Query.from_(CUser).where(Condition("age", "~~", 1)))

    def test_operator_is_case_insensitive(self):
        compiled = compile_select(Query.from_(CUser).where(Condition("name", "ilike", "a%")))
        assert compiled.sql == "SELECT * FROM users WHERE name ILIKE $1"

    @pytest.mark.parametrize("field", ["age; DROP TABLE users", "1age", "a.b.c", ""])
    def test_malformed_field(self, field):
        with pytest.raises(InvalidQueryError):
            compile_select(Query.from_(CUser).where(F(field) == 1))

    def test_bad_direction(self):
        with pytest.raises(InvalidQueryError):
            compile_select(Query.from_(CUser).order_by("age", "sideways"))

    @pytest.mark.parametrize("value", [-1, 1.5, "10", True])
    def test_bad_limit(self, value):
        with pytest.raises(InvalidQueryError):
            compile_select(Query.from_(CUser).limit(value))

    def test_between_needs_two_values(self):
        with pytest.raises(InvalidQueryError):
            compile_select(Query.from_(CUser).where(Condition("age", "BETWEEN", (1,))))

    def test_unknown_relationship_condition(self):
        from querykit.errors import InvalidRelationshipError

        with pytest.raises(InvalidRelationshipError):
            compile_select(Query.from_(CUser).where_related("comments", F("x") == 1))


class TestAggregates:
    def test_count_ignores_order_and_limit(self):
        query = Query.from_(CUser).where(F("age") > 18).order_by("name").limit(3)
        compiled = compile_count(query)
        assert compiled.sql == "SELECT COUNT(*) AS value FROM users WHERE age > $1"
        assert compiled.params == [18]

    def test_sum(self):
        compiled = compile_aggregate(Query.from_(CUser), "sum", "age")
        assert compiled.sql == "SELECT SUM(age) AS value FROM users"

    def test_unknown_aggregate(self):
        with pytest.raises(InvalidQueryError):
            compile_aggregate(Query.from_(CUser), "median", "age")


class TestWriteStatements:
    def test_single_insert(self):
        (compiled,) = compile_insert(CUser, [{"name": "Alice", "email": "a@x.com"}])
        assert compiled.sql == "INSERT INTO users (name, email) VALUES ($1, $2) RETURNING *"
        assert compiled.params == ["Alice", "a@x.com"]

    def test_multi_row_insert_uses_default_for_missing(self):
        rows = [{"name": "A", "email": "a@x"}, {"name": "B", "email": "b@x", "age": 3}]
        (compiled,) = compile_insert(CUser, rows)
        assert compiled.sql == (
            "INSERT INTO users (name, email, age) VALUES ($1, $2, DEFAULT), ($3, $4, $5) RETURNING *"
        )
        assert compiled.params == ["A", "a@x", "B", "b@x", 3]

    def test_insert_batches(self):
        rows = [{"name": str(i), "email": f"{i}@x"} for i in range(2500)]
        statements = compile_insert(CUser, rows)
        assert len(statements) == 3
        assert [len(s.params) for s in statements] == [2000, 2000, 1000]
        for compiled in statements:
            assert placeholders(compiled.sql)[-1] == len(compiled.params)

    def test_insert_without_values(self):
        statements = compile_insert(CUser, [{}, {}])
        assert [s.sql for s in statements] == ["INSERT INTO users DEFAULT VALUES RETURNING *"] * 2

    def test_upsert_on_columns(self):
        (compiled,) = compile_upsert(CUser, [{"name": "A", "email": "a@x"}], "email", ["name"])
        assert compiled.sql == (
            "INSERT INTO users (name, email) VALUES ($1, $2)"
            " ON CONFLICT (email) DO UPDATE SET name = EXCLUDED.name RETURNING *"
        )

    def test_upsert_default_update_columns_skip_keys(self):
        rows = [{"id": 1, "name": "A", "email": "a@x", "age": 2}]
        (compiled,) = compile_upsert(CUser, rows, ConflictTarget.on_columns("email"))
        assert "DO UPDATE SET name = EXCLUDED.name, age = EXCLUDED.age RETURNING *" in compiled.sql

    def test_upsert_on_constraint(self):
        (compiled,) = compile_upsert(
            CUser, [{"name": "A", "email": "a@x"}], ConflictTarget.on_constraint("users_email_key"), ["name"]
        )
        assert "ON CONFLICT ON CONSTRAINT users_email_key DO UPDATE SET name = EXCLUDED.name" in compiled.sql

    def test_upsert_do_nothing(self):
        (compiled,) = compile_upsert(CUser, [{"name": "A", "email": "a@x"}], ["email"], do_nothing=True)
        assert compiled.sql.endswith("ON CONFLICT (email) DO NOTHING RETURNING *")

    def test_upsert_empty_update_list_is_schema_error(self):
        with pytest.raises(InvalidSchemaError):
            compile_upsert(CUser, [{"name": "A", "email": "a@x"}], "email", [])

    def test_update(self):
        compiled = compile_update(CUser, 7, {"name": "B", "age": 30})
        assert compiled.sql == "UPDATE users SET name = $1, age = $2 WHERE id = $3 RETURNING *"
        assert compiled.params == ["B", 30, 7]

    def test_update_needs_changes(self):
        with pytest.raises(InvalidQueryError):
            compile_update(CUser, 7, {})

    def test_delete(self):
        compiled = compile_delete(CUser, 7)
        assert compiled.sql == "DELETE FROM users WHERE id = $1"
        assert compiled.params == [7]


class TestInLookup:
    def test_deduplicates_and_skips_none(self):
        (compiled,) = compile_in_lookup("c_posts", "user_id", [3, 1, None, 3, 2, 1])
        assert compiled.sql == "SELECT * FROM c_posts WHERE user_id IN ($1, $2, $3)"
        assert compiled.params == [3, 1, 2]

    def test_chunks(self):
        statements = compile_in_lookup("c_posts", "user_id", range(2001), batch_size=1000)
        assert [len(s.params) for s in statements] == [1000, 1000, 1]
        merged = [p for s in statements for p in s.params]
        assert merged == list(range(2001))

    def test_no_keys_no_statements(self):
        assert compile_in_lookup("c_posts", "user_id", [None, None]) == []

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 2)) == []
        with pytest.raises(InvalidQueryError):
            list(chunked([1], 0))

    def test_unique_keys(self):
        assert unique_keys(["b", "a", "b", None]) == ["b", "a"]
