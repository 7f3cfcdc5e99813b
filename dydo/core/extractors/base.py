"""
Base extractor types.

Every tool invocation the guard sees is reduced to a list of FileOperation
records before any policy runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OperationKind(Enum):
    """What an operation does to its target path."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"
    UNKNOWN = "unknown"

    @property
    def is_mutating(self) -> bool:
        return self in (OperationKind.WRITE, OperationKind.DELETE)


@dataclass
class FileOperation:
    """A single (path, kind) pair extracted from a tool call or shell command."""

    path: str
    kind: OperationKind
    command: str = ""  # verb or operator that produced it

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "kind": self.kind.value, "command": self.command}


@dataclass
class BashAnalysisResult:
    """Result of analysing one raw shell command line."""

    operations: List[FileOperation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dangerous: bool = False
    danger_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operations": [op.to_dict() for op in self.operations],
            "warnings": list(self.warnings),
            "dangerous": self.dangerous,
            "danger_reason": self.danger_reason,
        }


class BaseExtractor(ABC):
    """
    Base class for operation extractors.

    Each extractor specializes in one input shape (hook tool call, shell
    command) and turns it into FileOperation records.
    """

    @abstractmethod
    def extract(self, tool_name: str, args: Dict[str, Any]) -> List[FileOperation]:
        """
        Extract file operations from tool arguments.

        Args:
            tool_name: Name of the tool being called
            args: Arguments passed to the tool

        Returns:
            List of FileOperation records (may be empty)
        """
        pass
