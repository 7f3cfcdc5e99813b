"""
Operation extractors for the guard.

Each extractor reduces one input shape to FileOperation records:
- BashCommandAnalyzer: raw shell command lines
- parse_hook_input / request_from_cli: hook JSON and CLI arguments
"""

from .base import BaseExtractor, BashAnalysisResult, FileOperation, OperationKind
from .bash import BashCommandAnalyzer, get_bash_analyzer
from .filesystem import (
    GuardRequest,
    parse_hook_input,
    request_from_cli,
)

__all__ = [
    "BaseExtractor",
    "BashAnalysisResult",
    "FileOperation",
    "OperationKind",
    "BashCommandAnalyzer",
    "get_bash_analyzer",
    "GuardRequest",
    "parse_hook_input",
    "request_from_cli",
]
