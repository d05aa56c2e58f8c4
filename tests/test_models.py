"""Tests for pillar entity model."""

from datetime import date

import pytest

from pillar.errors import ValidationError
from pillar.models import (
    PRIORITY_WEIGHT,
    STATUS_WEIGHT,
    Comment,
    EntityKind,
    Issue,
    Milestone,
    Priority,
    Project,
    Status,
    entity_key,
    entity_to_dict,
    has_comments,
    has_priority,
    has_status,
    now_utc,
)


class TestStatus:
    """Test Status parsing."""

    def test_canonical_values(self):
        """Test every canonical value parses to itself."""
        for status in Status:
            assert Status.parse(status.value) is status

    def test_aliases(self):
        """Test hand-typed aliases map to canonical statuses."""
        assert Status.parse("done") is Status.COMPLETED
        assert Status.parse("canceled") is Status.CANCELLED
        assert Status.parse("inprogress") is Status.IN_PROGRESS
        assert Status.parse("in_progress") is Status.IN_PROGRESS

    def test_case_insensitive(self):
        assert Status.parse("In-Progress") is Status.IN_PROGRESS
        assert Status.parse(" TODO ") is Status.TODO

    def test_invalid(self):
        """Test unknown status raises ValidationError."""
        with pytest.raises(ValidationError, match="Invalid status"):
            Status.parse("someday")

    def test_str(self):
        assert str(Status.IN_PROGRESS) == "in-progress"


class TestPriority:
    """Test Priority parsing."""

    def test_parse(self):
        assert Priority.parse("HIGH") is Priority.HIGH
        assert Priority.parse(Priority.LOW) is Priority.LOW

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Invalid priority"):
            Priority.parse("critical")


class TestWeights:
    """Test the ordering weight tables."""

    def test_status_weights(self):
        assert {s.value: w for s, w in STATUS_WEIGHT.items()} == {
            "cancelled": 0,
            "backlog": 1,
            "todo": 2,
            "in-progress": 3,
            "completed": 4,
        }

    def test_priority_weights(self):
        assert {p.value: w for p, w in PRIORITY_WEIGHT.items()} == {
            "low": 1,
            "medium": 2,
            "high": 3,
            "urgent": 4,
        }


class TestCapabilities:
    """Test per-kind capabilities."""

    def test_milestone_has_no_priority(self):
        milestone = Milestone(project="ALPH", title="v1.0")
        assert has_status(milestone)
        assert has_comments(milestone)
        assert not has_priority(milestone)

    def test_issue_capabilities(self):
        issue = Issue(project="ALPH", number=1, title="Fix bug")
        assert has_status(issue)
        assert has_priority(issue)
        assert has_comments(issue)
        assert issue.kind is EntityKind.ISSUE

    def test_entity_kind_parse(self):
        assert EntityKind.parse("Issue") is EntityKind.ISSUE
        with pytest.raises(ValidationError):
            EntityKind.parse("epic")


class TestEntityKey:
    """Test human-readable entity keys."""

    def test_keys(self):
        assert entity_key(Project(id="ALPH", name="Alpha")) == "ALPH"
        assert entity_key(Milestone(project="ALPH", title="v1.0")) == "ALPH/v1.0"
        assert entity_key(Issue(project="ALPH", number=7, title="x")) == "ALPH/007"


class TestSerialization:
    """Test JSON-ready dicts."""

    def test_issue_to_dict(self, fixed_time):
        issue = Issue(
            project="ALPH",
            number=2,
            title="Add feature",
            priority=Priority.HIGH,
            tags=["ui"],
            created=fixed_time,
            comments=[Comment(id="c-1", author="Alice", timestamp="2025-01-01", content="hi")],
        )
        data = entity_to_dict(issue)
        assert data["id"] == "ALPH/002"
        assert data["kind"] == "issue"
        assert data["number"] == "002"
        assert data["priority"] == "high"
        assert data["status"] == "todo"
        assert data["tags"] == ["ui"]
        assert data["created"] == "2025-12-29T10:30:00+00:00"
        assert data["updated"] is None
        assert data["comments"][0]["author"] == "Alice"

    def test_milestone_to_dict(self):
        data = entity_to_dict(
            Milestone(project="ALPH", title="v1.0", target_date=date(2025, 3, 1))
        )
        assert data["id"] == "ALPH/v1.0"
        assert data["target_date"] == "2025-03-01"
        assert "priority" not in data

    def test_path_and_warnings_not_compared(self, tmp_path):
        """Test location and decode warnings are not part of equality."""
        a = Project(id="ALPH", name="Alpha", path=tmp_path, warnings=["x"])
        b = Project(id="ALPH", name="Alpha")
        assert a == b


def test_now_utc_whole_seconds():
    now = now_utc()
    assert now.microsecond == 0
    assert now.utcoffset().total_seconds() == 0
