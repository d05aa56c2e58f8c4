"""Tests for identifier allocation."""

import pytest

from pillar.errors import AlreadyExists, Conflict, ValidationError
from pillar.ids import (
    allocate_project_id,
    derive_project_id,
    issue_filename,
    next_issue_number,
    parse_issue_number,
    slugify,
    validate_project_id,
)


class TestProjectIds:
    """Test project id derivation, validation and disambiguation."""

    def test_single_word_prefix(self):
        assert derive_project_id("Alpha") == "ALPH"

    def test_multi_word_initials(self):
        assert derive_project_id("Pillar Web UI") == "PWU"
        assert derive_project_id("my-cool_project") == "MCP"

    def test_initials_capped_at_four_words(self):
        assert derive_project_id("one two three four five") == "OTTF"

    def test_short_single_word(self):
        assert derive_project_id("ui") == "UI"

    def test_no_usable_characters(self):
        with pytest.raises(ValidationError):
            derive_project_id("!!! ???")

    def test_derived_collision_gets_suffix(self):
        assert allocate_project_id("Alpha", ["ALPH"]) == "ALPH2"
        assert allocate_project_id("Alpha", ["ALPH", "alph2"]) == "ALPH3"

    def test_requested_id_used_verbatim(self):
        assert allocate_project_id("Alpha", ["BETA"], requested="my-proj") == "my-proj"

    def test_requested_id_taken(self):
        """Test a taken user-supplied id raises Conflict."""
        with pytest.raises(Conflict) as exc_info:
            allocate_project_id("Alpha", ["ALPH"], requested="alph")
        assert isinstance(exc_info.value, AlreadyExists)

    @pytest.mark.parametrize("bad", ["", "a" * 21, "has space", "dot.ted", ".hidden"])
    def test_invalid_ids(self, bad):
        with pytest.raises(ValidationError):
            validate_project_id(bad)

    def test_valid_id(self):
        assert validate_project_id("web_ui-2") == "web_ui-2"


class TestSlugs:
    """Test filename slugs."""

    def test_slugify(self):
        assert slugify("Fix critical bug") == "fix-critical-bug"
        assert slugify("v1.0") == "v1-0"
        assert slugify("  Hello,   World!  ") == "hello-world"

    def test_empty_slug(self):
        assert slugify("!!!") == "untitled"

    def test_truncation(self):
        slug = slugify("word " * 20, max_length=40)
        assert len(slug) <= 40
        assert not slug.endswith("-")


class TestIssueNumbers:
    """Test issue filenames and numbering."""

    def test_issue_filename(self):
        assert issue_filename(1, "Fix bug") == "001-fix-bug.md"
        assert issue_filename(1000, "Big") == "1000-big.md"

    def test_parse_issue_number(self):
        assert parse_issue_number("001-fix-bug.md") == 1
        assert parse_issue_number("042.md") == 42
        assert parse_issue_number("notes.md") is None
        assert parse_issue_number("001-fix-bug.txt") is None

    def test_missing_directory(self, tmp_path):
        assert next_issue_number(tmp_path / "issues") == 1

    def test_max_plus_one(self, tmp_path):
        """Test the next number skips gaps left by deleted files."""
        (tmp_path / "001-a.md").write_text("x")
        (tmp_path / "003-c.md").write_text("x")
        (tmp_path / "README.md").write_text("x")
        assert next_issue_number(tmp_path) == 4
