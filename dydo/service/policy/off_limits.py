"""
Off-Limits Policy - paths no agent may touch

Patterns come from dydo/files-off-limits.md: fenced code blocks or
markdown list items, one glob per line. A header mentioning "whitelist"
or "exception" starts a whitelist section; a header mentioning
"off-limits" switches back.

The check is independent of identity and role. A whitelisted path is
never off-limits; otherwise the first matching pattern wins.
"""

import logging
import posixpath
import re
from functools import lru_cache
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

OFF_LIMITS_FILE_NAME = "files-off-limits.md"

SECTION_OFF_LIMITS = "off-limits"
SECTION_WHITELIST = "whitelist"

# Whitelist entries that effectively disable the policy
BROAD_PATTERNS = {"*", "**", "**/*", "/**", "./**"}


@dataclass
class OffLimitsPattern:
    """A glob from the off-limits document plus where it was declared."""

    pattern: str
    line: int
    section: str = SECTION_OFF_LIMITS
    regex: Optional[Pattern] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.regex is None:
            self.regex = glob_to_regex(self.pattern)

    @property
    def is_simple(self) -> bool:
        """Simple patterns (no / and no **) also match a bare file name."""
        return "/" not in self.pattern and "**" not in self.pattern

    def matches(self, normalized_path: str) -> bool:
        if self.regex.match(normalized_path):
            return True
        if self.is_simple:
            name = posixpath.basename(normalized_path)
            if name and name != normalized_path:
                return bool(self.regex.match(name))
        return False

    def __str__(self) -> str:
        return f"{self.pattern} (line {self.line})"


@dataclass
class OffLimitsIssue:
    """Soft configuration issue; reported by `dydo check`, never by the guard."""

    severity: str  # "error" or "warning"
    message: str
    line: Optional[int] = None


@lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> Pattern:
    """
    Compile a glob into an anchored, case-insensitive regex.

    **/ matches zero or more directories, ** matches anything,
    * matches within one path segment and ? matches one character.
    """
    escaped = re.escape(pattern.replace("\\", "/"))
    regex = (
        escaped.replace(r"\*\*/", "(.*/)?")
        .replace(r"\*\*", ".*")
        .replace(r"\*", "[^/]*")
        .replace(r"\?", ".")
    )
    return re.compile(f"^{regex}$", re.IGNORECASE)


def normalize_path(path: str) -> str:
    """Forward slashes, no leading ./ or /."""
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def parse_off_limits(content: str) -> Tuple[List[OffLimitsPattern], List[OffLimitsPattern], bool]:
    """
    Parse the off-limits document.

    Returns:
        (off-limits patterns, whitelist patterns, code block left unclosed)
    """
    patterns: List[OffLimitsPattern] = []
    whitelist: List[OffLimitsPattern] = []
    in_code_block = False
    section = SECTION_OFF_LIMITS

    for number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()

        if not in_code_block and (line.startswith("# ") or line.startswith("## ") or line.startswith("### ")):
            header = line.lower()
            if "whitelist" in header or "exception" in header:
                section = SECTION_WHITELIST
            elif "off-limits" in header or "off limits" in header:
                section = SECTION_OFF_LIMITS
            continue

        if line.startswith("```"):
            in_code_block = not in_code_block
            continue

        if in_code_block:
            candidate = line
        elif line.startswith("- ") or line.startswith("* "):
            candidate = line[2:].strip()
        else:
            continue

        if not candidate or candidate.startswith("#"):
            continue

        comment = candidate.find(" #")
        if comment > 0:
            candidate = candidate[:comment].strip()
        candidate = candidate.strip("`")
        if not candidate:
            continue

        entry = OffLimitsPattern(pattern=candidate, line=number, section=section)
        if section == SECTION_WHITELIST:
            whitelist.append(entry)
        else:
            patterns.append(entry)

    return patterns, whitelist, in_code_block


class OffLimitsPolicy:
    """
    Off-limits glob policy for one project.

    An absent document yields an empty, permissive policy.
    """

    def __init__(
        self,
        patterns: Optional[List[OffLimitsPattern]] = None,
        whitelist: Optional[List[OffLimitsPattern]] = None,
        project_root: Optional[Path] = None,
    ):
        self.patterns = patterns or []
        self.whitelist = whitelist or []
        self.project_root = project_root
        self.source: Optional[Path] = None
        self.document_found = False
        self.unclosed_code_block = False

    @classmethod
    def load(cls, path: Path, project_root: Optional[Path] = None) -> "OffLimitsPolicy":
        """Load patterns from the off-limits document at `path`."""
        policy = cls(project_root=project_root)
        policy.source = path
        if not path.exists():
            logger.debug(f"No off-limits document at {path}, policy is empty")
            return policy

        content = path.read_text(encoding="utf-8")
        patterns, whitelist, unclosed = parse_off_limits(content)
        policy.patterns = patterns
        policy.whitelist = whitelist
        policy.document_found = True
        policy.unclosed_code_block = unclosed
        logger.debug(
            f"Loaded {len(patterns)} off-limits and {len(whitelist)} whitelist patterns"
        )
        return policy

    def _to_relative(self, path: str) -> str:
        normalized = path.replace("\\", "/")
        if self.project_root is not None:
            root = str(self.project_root).replace("\\", "/").rstrip("/")
            if normalized.lower().startswith(root.lower() + "/"):
                normalized = normalized[len(root) + 1 :]
        return normalize_path(normalized)

    def is_whitelisted(self, path: str) -> bool:
        normalized = self._to_relative(path)
        return any(entry.matches(normalized) for entry in self.whitelist)

    def is_off_limits(self, path: str) -> Optional[OffLimitsPattern]:
        """
        Check a path against the policy.

        Returns:
            The first matching off-limits pattern, or None if the path is
            allowed or whitelisted
        """
        normalized = self._to_relative(path)
        if not normalized:
            return None
        if any(entry.matches(normalized) for entry in self.whitelist):
            return None
        for entry in self.patterns:
            if entry.matches(normalized):
                return entry
        return None

    def validate(self) -> List[OffLimitsIssue]:
        """Soft issues for the consistency checker."""
        issues: List[OffLimitsIssue] = []

        if not self.document_found:
            issues.append(
                OffLimitsIssue("warning", f"Off-limits document not found: {self.source}")
            )
            return issues

        if self.unclosed_code_block:
            issues.append(OffLimitsIssue("error", "Unclosed code block in off-limits document"))

        if not self.patterns:
            issues.append(OffLimitsIssue("warning", "Off-limits document defines no patterns"))

        seen = {}
        for entry in self.patterns + self.whitelist:
            key = (entry.section, entry.pattern.lower())
            if key in seen:
                issues.append(
                    OffLimitsIssue(
                        "warning",
                        f"Duplicate pattern '{entry.pattern}' (first on line {seen[key]})",
                        entry.line,
                    )
                )
            else:
                seen[key] = entry.line

        for entry in self.whitelist:
            if entry.pattern.strip() in BROAD_PATTERNS:
                issues.append(
                    OffLimitsIssue(
                        "warning",
                        f"Whitelist pattern '{entry.pattern}' exempts every path",
                        entry.line,
                    )
                )

        if self.project_root is not None:
            for entry in self.patterns:
                if "*" in entry.pattern or "?" in entry.pattern:
                    continue
                if not (self.project_root / entry.pattern).exists():
                    issues.append(
                        OffLimitsIssue(
                            "warning",
                            f"Literal pattern '{entry.pattern}' matches no existing path",
                            entry.line,
                        )
                    )

        return issues
