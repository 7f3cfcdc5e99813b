"""
Tests for the off-limits policy.
"""

import pytest

from dydo.service.policy import OffLimitsPolicy, glob_to_regex
from dydo.service.policy.off_limits import parse_off_limits

DOCUMENT = """# Files Off-Limits

## Off-Limits

```
.env
.env.*
**/*.pem
secrets/**
```

- `private/notes.md`

## Whitelist

```
.env.example
```
"""


def write_policy(tmp_path, content):
    path = tmp_path / "files-off-limits.md"
    path.write_text(content, encoding="utf-8")
    return OffLimitsPolicy.load(path, tmp_path)


class TestGlobToRegex:
    """Tests for glob compilation."""

    def test_double_star_slash_matches_zero_or_more_dirs(self):
        regex = glob_to_regex("**/*.pem")
        assert regex.match("key.pem")
        assert regex.match("a/b/key.pem")

    def test_single_star_stays_in_segment(self):
        regex = glob_to_regex("src/*.py")
        assert regex.match("src/main.py")
        assert not regex.match("src/pkg/main.py")

    def test_question_mark(self):
        assert glob_to_regex("file?.txt").match("file1.txt")
        assert not glob_to_regex("file?.txt").match("file12.txt")

    def test_case_insensitive_and_anchored(self):
        regex = glob_to_regex("Secrets/**")
        assert regex.match("secrets/api.json")
        assert not regex.match("old/secrets/api.json")


class TestParseOffLimits:
    """Tests for reading the markdown document."""

    def test_sections_and_lines(self):
        patterns, whitelist, unclosed = parse_off_limits(DOCUMENT)

        assert [p.pattern for p in patterns] == [
            ".env",
            ".env.*",
            "**/*.pem",
            "secrets/**",
            "private/notes.md",
        ]
        assert [w.pattern for w in whitelist] == [".env.example"]
        assert patterns[0].line == 6
        assert not unclosed

    def test_unclosed_code_block(self):
        _, _, unclosed = parse_off_limits("# Off-Limits\n```\n.env\n")
        assert unclosed

    def test_header_inside_code_block_is_a_pattern_line(self):
        patterns, whitelist, _ = parse_off_limits("```\n# comment\n.env\n```\n")
        assert [p.pattern for p in patterns] == [".env"]
        assert whitelist == []


class TestOffLimitsPolicy:
    """Tests for path checks."""

    @pytest.fixture
    def policy(self, tmp_path):
        return write_policy(tmp_path, DOCUMENT)

    def test_exact_match(self, policy):
        assert policy.is_off_limits(".env").pattern == ".env"

    def test_simple_pattern_matches_basename(self, policy):
        assert policy.is_off_limits("config/.env").pattern == ".env"
        assert policy.is_off_limits("config/.env.local").pattern == ".env.*"

    def test_recursive_patterns(self, policy):
        assert policy.is_off_limits("deploy/certs/server.pem") is not None
        assert policy.is_off_limits("secrets/db/password.txt") is not None

    def test_whitelist_wins(self, policy):
        assert policy.is_whitelisted(".env.example")
        assert policy.is_off_limits(".env.example") is None

    def test_normal_paths_allowed(self, policy):
        assert policy.is_off_limits("src/main.py") is None
        assert policy.is_off_limits("README.md") is None

    def test_absolute_path_inside_project(self, policy, tmp_path):
        assert policy.is_off_limits(str(tmp_path / "secrets" / "x.txt")) is not None

    def test_windows_separators(self, policy):
        assert policy.is_off_limits("secrets\\db\\password.txt") is not None

    def test_missing_document_is_permissive(self, tmp_path):
        policy = OffLimitsPolicy.load(tmp_path / "missing.md", tmp_path)
        assert policy.is_off_limits(".env") is None


class TestValidate:
    """Tests for soft issues."""

    def test_missing_document(self, tmp_path):
        policy = OffLimitsPolicy.load(tmp_path / "missing.md", tmp_path)
        issues = policy.validate()
        assert len(issues) == 1
        assert "not found" in issues[0].message

    def test_unclosed_code_block_is_error(self, tmp_path):
        policy = write_policy(tmp_path, "# Off-Limits\n```\n**/*.pem\n")
        assert any(i.severity == "error" for i in policy.validate())

    def test_duplicate_and_broad_whitelist(self, tmp_path):
        policy = write_policy(
            tmp_path, "- **/*.pem\n- **/*.pem\n\n## Whitelist\n\n- **\n"
        )
        messages = [i.message for i in policy.validate()]
        assert any("Duplicate pattern" in m for m in messages)
        assert any("exempts every path" in m for m in messages)

    def test_literal_pattern_without_target(self, tmp_path):
        (tmp_path / "present.txt").write_text("x")
        policy = write_policy(tmp_path, "- present.txt\n- absent.txt\n")
        messages = [i.message for i in policy.validate()]
        assert any("'absent.txt'" in m for m in messages)
        assert not any("'present.txt'" in m for m in messages)

    def test_clean_document(self, tmp_path):
        policy = write_policy(tmp_path, "- **/*.pem\n")
        assert policy.validate() == []
