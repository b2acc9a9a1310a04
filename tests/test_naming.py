"""Tests for name sanitization and address helpers."""

import hashlib

from treehouse.naming import (
    display_name,
    format_ip,
    hostname,
    parse_ip,
    sanitize_branch,
    sanitize_project,
)


class TestSanitizeBranch:
    """Tests for branch labels."""

    def test_spaces_slashes_and_punctuation(self):
        assert sanitize_branch("Feature/My Branch!") == "feature-my-branch"

    def test_underscores_and_runs(self):
        assert sanitize_branch("fix__the___bug") == "fix-the-bug"

    def test_trims_dashes(self):
        assert sanitize_branch("--wip/--") == "wip"

    def test_plain_name_unchanged(self):
        assert sanitize_branch("main") == "main"

    def test_63_characters_not_truncated(self):
        name = "a" * 63
        assert sanitize_branch(name) == name

    def test_long_name_truncated_with_hash(self):
        name = "feature-" + "x" * 80
        label = sanitize_branch(name)

        assert len(label) <= 63
        assert label.endswith("-" + hashlib.md5(name.encode()).hexdigest()[:8])
        assert label.startswith("feature-xxx")

    def test_long_names_with_shared_prefix_differ(self):
        prefix = "release/" + "y" * 70
        assert sanitize_branch(prefix + "-one") != sanitize_branch(prefix + "-two")


class TestSanitizeProject:
    """Tests for project labels."""

    def test_cleans_like_branches(self):
        assert sanitize_project("My_App") == "my-app"

    def test_truncates_to_twenty(self):
        assert sanitize_project("a-very-long-project-name-indeed") == "a-very-long-project"

    def test_truncation_trims_trailing_dash(self):
        assert sanitize_project("abcdefghijklmnopqrs-tuv") == "abcdefghijklmnopqrs"


class TestHelpers:
    """Tests for display names and addresses."""

    def test_display_name(self):
        assert display_name("MyApp", "Feature/My Branch!") == "feature-my-branch.myapp"

    def test_hostname(self):
        assert hostname("main.myapp") == "main.myapp.local"
        assert hostname("main.myapp", "lan") == "main.myapp.lan"

    def test_format_ip(self):
        assert format_ip(42) == "127.0.0.42"
        assert format_ip(7, "10.0.0") == "10.0.0.7"

    def test_parse_ip(self):
        assert parse_ip("127.0.0.42") == (127, 0, 0, 42)
