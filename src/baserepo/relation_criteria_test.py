"""
Tests for relation filters (``relation.field`` criteria keys).

Run with: BASEREPO_ENV=test pytest src/baserepo/relation_criteria_test.py -v
"""

import logging

import pytest

from baserepo.exceptions import InvalidIdentifierError, UnsafeOperatorError
from baserepo.query import QueryBuilder
from baserepo.relation_criteria import RelationCriteriaCompiler, parse_relation_key, split_criteria
from baserepo.relations import CompiledRelation, RelationKind

COMPILED = {
    "author": CompiledRelation(RelationKind.BELONGS_TO, "authors", "id", foreign_key="author_id"),
    "comments": CompiledRelation(RelationKind.HAS_MANY, "comments", "id", foreign_key="post_id"),
    "tags": CompiledRelation(
        RelationKind.BELONGS_TO_MANY,
        "tags",
        "id",
        pivot_table="post_tag",
        foreign_pivot_key="post_id",
        related_pivot_key="tag_id",
    ),
}


def apply(relation_criteria, compiled=COMPILED) -> QueryBuilder:
    qb = QueryBuilder.select_from("posts", "p")
    RelationCriteriaCompiler().apply(qb, "p", "id", compiled, relation_criteria)
    return qb


def render(qb: QueryBuilder) -> str:
    return qb.as_sql().as_string()


class TestParseRelationKey:
    """Tests for parse_relation_key()"""

    @pytest.mark.parametrize("key,expected", [
        ("comments.status", ("comments", "status", False)),
        ("!comments.status", ("comments", "status", True)),
        ("author.profile.bio", ("author", "profile.bio", False)),
        ("status", None),
    ])
    def test_parse(self, key, expected):
        assert parse_relation_key(key) == expected


class TestSplitCriteria:
    """Tests for split_criteria()"""

    def test_groups_known_relations(self):
        criteria = {
            "status": "published",
            "comments.status": "approved",
            "comments.body": ("LIKE", "%x%"),
            "!comments.status": "spam",
            "unknown.field": 1,
            "comments.": 2,
        }

        base, grouped = split_criteria(criteria, {"comments": object()})

        assert base == {"status": "published", "unknown.field": 1, "comments.": 2}
        assert grouped == {
            "comments": {"status": "approved", "body": ("LIKE", "%x%")},
            "!comments": {"status": "spam"},
        }

    def test_no_relations(self):
        base, grouped = split_criteria({"author.name": "Ada"}, {})

        assert base == {"author.name": "Ada"}
        assert grouped == {}


class TestRelationCriteriaCompiler:
    """Tests for RelationCriteriaCompiler.apply()"""

    def test_has_many_exists(self):
        qb = apply({"comments": {"status": "approved"}})

        assert render(qb) == (
            'SELECT * FROM "posts" AS "p" WHERE EXISTS (SELECT 1 FROM "comments" AS "rel_comments" '
            'WHERE "rel_comments"."post_id" = "p"."id" '
            'AND "rel_comments"."status" = %(rel_comments_1)s)'
        )
        assert qb.params == {"rel_comments_1": "approved"}

    def test_negated_is_not_exists(self):
        qb = apply({"!comments": {"status": "approved"}})

        assert 'WHERE NOT EXISTS (SELECT 1 FROM "comments" AS "rel_comments"' in render(qb)

    def test_belongs_to_correlates_on_owner_foreign_key(self):
        qb = apply({"author": {"name": "Ada"}})

        assert render(qb) == (
            'SELECT * FROM "posts" AS "p" WHERE EXISTS (SELECT 1 FROM "authors" AS "rel_author" '
            'WHERE "rel_author"."id" = "p"."author_id" '
            'AND "rel_author"."name" = %(rel_author_1)s)'
        )

    def test_belongs_to_many_joins_pivot(self):
        qb = apply({"tags": {"name": ["python", "sql"]}})

        assert render(qb) == (
            'SELECT * FROM "posts" AS "p" WHERE EXISTS (SELECT 1 FROM "post_tag" AS "piv_tags" '
            'JOIN "tags" AS "rel_tags" ON "rel_tags"."id" = "piv_tags"."tag_id" '
            'WHERE "piv_tags"."post_id" = "p"."id" '
            'AND "rel_tags"."name" = ANY(%(rel_tags_1)s))'
        )

    def test_multiple_relations_have_unique_parameters(self):
        qb = apply({
            "comments": {"status": "approved", "id": ("BETWEEN", [1, 9])},
            "!tags": {"name": "draft"},
        })

        assert qb.params == {
            "rel_comments_1": "approved",
            "rel_comments_2": 1,
            "rel_comments_3": 9,
            "rel_tags_4": "draft",
        }

    def test_unknown_relation_is_skipped(self):
        qb = apply({"ghost": {"name": "x"}})

        assert render(qb) == 'SELECT * FROM "posts" AS "p"'
        assert qb.params == {}

    @pytest.mark.parametrize("field", ["bad field", "name; --", "author.name"])
    def test_unsafe_field_raises(self, field):
        with pytest.raises(InvalidIdentifierError):
            apply({"comments": {field: "x"}})

    def test_unsafe_operator_raises(self):
        with pytest.raises(UnsafeOperatorError):
            apply({"comments": {"status": ("OR 1=1", "x")}})


# =============================================================================
# Integration
# =============================================================================


@pytest.fixture
def commented_posts(repos, sample_posts):
    """First has an approved comment, Second only a pending one, Third none."""
    comments = repos["comments"]
    first, second, _ = sample_posts
    comments.create({"post_id": first.id, "body": "Great", "status": "approved"})
    comments.create({"post_id": first.id, "body": "Meh", "status": "pending"})
    comments.create({"post_id": second.id, "body": "Hmm", "status": "pending"})
    return sample_posts


class TestRelationFilters:
    """Relation criteria executed through Repository.find_by()"""

    def test_exists(self, post_repo, commented_posts):
        result = post_repo.find_by({"comments.status": "approved"})

        assert [p.title for p in result] == ["First"]

    def test_not_exists(self, post_repo, commented_posts):
        result = post_repo.find_by({"!comments.status": "approved"}, {"id": "ASC"})

        assert [p.title for p in result] == ["Second", "Third"]

    def test_combined_with_base_criteria(self, post_repo, commented_posts):
        result = post_repo.find_by({"status": "draft", "comments.status": "pending"})

        assert [p.title for p in result] == ["Second"]

    def test_belongs_to(self, post_repo, commented_posts):
        result = post_repo.find_by({"author.name": "Ada"}, {"id": "ASC"})

        assert [p.title for p in result] == ["First", "Second"]

    def test_belongs_to_many(self, repos, post_repo, commented_posts, db_cursor):
        tag = repos["tags"].create({"name": "python"})
        db_cursor.execute(
            "INSERT INTO post_tag (post_id, tag_id) VALUES (%s, %s)",
            (commented_posts[2].id, tag.id),
        )

        assert [p.title for p in post_repo.find_by({"tags.name": "python"})] == ["Third"]
        assert post_repo.count({"!tags.name": "python"}) == 2

    def test_has_one_through_lazy_repository(self, repos, author_repo, sample_author):
        other = author_repo.create({"name": "Grace"})
        repos["profiles"].create({"author_id": other.id, "bio": "Compilers"})

        assert [a.name for a in author_repo.find_by({"profile.bio": ("LIKE", "Comp%")})] == ["Grace"]
        assert [a.name for a in author_repo.find_by({"posts.views": (">", 15)})] == []

    def test_has_many_through_lazy_repository(self, author_repo, sample_author, sample_posts):
        result = author_repo.find_by({"posts.views": (">", 15)})

        assert [a.id for a in result] == [sample_author.id]

    def test_unknown_relation_is_dropped(self, post_repo, commented_posts, caplog):
        with caplog.at_level(logging.WARNING, logger="baserepo.repository"):
            filtered = post_repo.find_by({"unknown.field": "x"}, {"id": "ASC"})

        assert [p.id for p in filtered] == [p.id for p in post_repo.find_by({}, {"id": "ASC"})]
        assert "unknown" in caplog.text

    def test_unwired_relation_is_skipped(self, post_repo, commented_posts):
        result = post_repo.find_by({"ghost.name": "nobody"})

        assert len(result) == 3
