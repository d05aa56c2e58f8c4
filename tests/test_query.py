"""Tests for the query engine."""

from datetime import date, datetime, timezone

import pytest

from pillar.errors import ValidationError
from pillar.models import Issue, Milestone, Priority, Project, Status
from pillar.query import (
    Criteria,
    filter_entities,
    group_entities,
    search_entities,
    sort_entities,
)


def issue(number, title="Issue", project="ALPH", **kwargs):
    return Issue(project=project, number=number, title=title, **kwargs)


@pytest.fixture
def issues():
    return [
        issue(1, "Fix bug", priority=Priority.MEDIUM, status=Status.TODO, milestone="v1.0"),
        issue(2, "Add feature", priority=Priority.HIGH, status=Status.IN_PROGRESS, tags=["ui"]),
        issue(3, "write docs", priority=Priority.LOW, status=Status.COMPLETED, tags=["docs"]),
        issue(1, "Other bug", project="BETA", priority=Priority.HIGH, milestone="v1.0"),
    ]


class TestFilter:
    """Test filter semantics."""

    def test_empty_criteria_match_everything(self, issues):
        assert filter_entities(issues, Criteria()) == issues
        assert filter_entities(issues) == issues

    def test_or_within_and_across(self, issues):
        criteria = Criteria.build(project="ALPH", priority=["high", "low"])
        assert [i.number for i in filter_entities(issues, criteria)] == [2, 3]

    def test_status_aliases(self, issues):
        result = filter_entities(issues, Criteria.build(status="done"))
        assert [i.title for i in result] == ["write docs"]

    def test_milestone(self, issues):
        result = filter_entities(issues, Criteria.build(milestone="v1.0"))
        assert [(i.project, i.number) for i in result] == [("ALPH", 1), ("BETA", 1)]

    def test_tags(self, issues):
        result = filter_entities(issues, Criteria.build(tag=["docs", "UI"]))
        assert [i.number for i in result] == [2, 3]

    def test_search_case_insensitive(self, issues):
        result = filter_entities(issues, Criteria.build(search="BUG"))
        assert [i.title for i in result] == ["Fix bug", "Other bug"]

    def test_search_matches_project_id(self):
        projects = [Project(id="ALPH", name="Alpha"), Project(id="WEB", name="Site")]
        result = filter_entities(projects, Criteria.build(search="web"))
        assert [p.id for p in result] == ["WEB"]

    def test_missing_capability_never_matches(self):
        """Test a priority criterion excludes kinds without a priority."""
        milestone = Milestone(project="ALPH", title="v1.0")
        assert filter_entities([milestone], Criteria.build(priority="high")) == []
        assert filter_entities([milestone], Criteria.build(status="backlog")) == [milestone]

    def test_idempotent(self, issues):
        criteria = Criteria.build(project="ALPH", status=["todo", "in-progress"])
        once = filter_entities(issues, criteria)
        assert filter_entities(once, criteria) == once

    def test_invalid_value(self):
        with pytest.raises(ValidationError):
            Criteria.build(status="someday")

    def test_input_not_mutated(self, issues):
        snapshot = list(issues)
        filter_entities(issues, Criteria.build(priority="high"))
        assert issues == snapshot


class TestSort:
    """Test sort keys and stability."""

    def test_default_number_descending(self, issues):
        result = sort_entities(issues[:3])
        assert [i.number for i in result] == [3, 2, 1]

    def test_priority_scenario(self):
        """Test medium then high issues sort as [2, 1] by priority."""
        items = [
            issue(1, "Fix bug", priority=Priority.MEDIUM),
            issue(2, "Add feature", priority=Priority.HIGH),
        ]
        assert [i.number for i in sort_entities(items, "priority")] == [2, 1]

    def test_stable(self):
        """Test equal keys keep their input order."""
        items = [issue(n, priority=Priority.HIGH if n % 2 else Priority.LOW) for n in range(1, 7)]
        result = sort_entities(items, "priority")
        assert [i.number for i in result] == [1, 3, 5, 2, 4, 6]

    def test_status_weight(self, issues):
        result = sort_entities(issues, "status")
        assert [i.status for i in result] == [
            Status.COMPLETED,
            Status.IN_PROGRESS,
            Status.TODO,
            Status.TODO,
        ]

    def test_title_case_insensitive(self, issues):
        result = sort_entities(issues, "title")
        assert [i.title for i in result] == ["Add feature", "Fix bug", "Other bug", "write docs"]

    def test_created_newest_first(self):
        old = issue(1, created=datetime(2025, 1, 1, tzinfo=timezone.utc))
        new = issue(2, created=datetime(2025, 6, 1, tzinfo=timezone.utc))
        undated = issue(3)
        result = sort_entities([undated, old, new], "created")
        assert [i.number for i in result] == [2, 1, 3]

    def test_target_date_earliest_first(self):
        items = [
            Milestone(project="ALPH", title="later", target_date=date(2025, 9, 1)),
            Milestone(project="ALPH", title="none"),
            Milestone(project="ALPH", title="sooner", target_date=date(2025, 3, 1)),
        ]
        result = sort_entities(items, "target_date")
        assert [m.title for m in result] == ["sooner", "later", "none"]

    def test_unknown_key(self, issues):
        with pytest.raises(ValidationError, match="sort key"):
            sort_entities(issues, "color")


class TestGroup:
    """Test grouping into labelled buckets."""

    def test_status_buckets_follow_workflow(self, issues):
        groups = group_entities(issues, "status")
        assert [g.label for g in groups] == ["todo", "in-progress", "completed"]
        assert [len(g.items) for g in groups] == [2, 1, 1]

    def test_status_buckets_backlog_before_completed(self):
        items = [
            issue(1, status=Status.COMPLETED),
            issue(2, status=Status.BACKLOG),
            issue(3, status=Status.CANCELLED),
        ]
        groups = group_entities(items, "status")
        assert [g.label for g in groups] == ["cancelled", "backlog", "completed"]

    def test_priority_buckets_by_weight(self, issues):
        groups = group_entities(issues, "priority")
        assert [g.label for g in groups] == ["high", "medium", "low"]

    def test_milestone_with_no_milestone_bucket(self, issues):
        groups = group_entities(issues, "milestone")
        assert [g.label for g in groups] == ["No Milestone", "v1.0"]
        assert [i.number for i in groups[0].items] == [2, 3]

    def test_project_lexicographic(self, issues):
        groups = group_entities(list(reversed(issues)), "project")
        assert [g.label for g in groups] == ["ALPH", "BETA"]

    def test_items_keep_sorted_order(self, issues):
        groups = group_entities(sort_entities(issues, "number"), "milestone")
        assert [i.project for i in groups[1].items] == ["ALPH", "BETA"]

    def test_kind_without_key(self):
        milestone = Milestone(project="ALPH", title="v1.0")
        with pytest.raises(ValidationError):
            group_entities([milestone], "priority")
        with pytest.raises(ValidationError):
            group_entities([Project(id="ALPH", name="Alpha")], "milestone")

    def test_unknown_key(self, issues):
        with pytest.raises(ValidationError):
            group_entities(issues, "color")


class TestSearch:
    """Test free-text search."""

    def test_title_description_and_tags(self):
        items = [
            issue(1, "Login page", description="Use OAuth"),
            issue(2, "Misc", tags=["oauth-flow"]),
            issue(3, "Unrelated"),
        ]
        assert [i.number for i in search_entities(items, "oauth")] == [1, 2]
