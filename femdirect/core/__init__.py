"""femdirect.core - 問題インタフェース・フィールド履歴・戻り値型・例外.

Protocol:
  ElementProtocol   — 要素（接続・グローバルDOF・フィールド履歴）
  ProblemProtocol   — フィールド問題/境界問題（要素寄与のアセンブリ）
"""

from femdirect.core.errors import (
    AssemblyError,
    ConfigurationError,
    ConvergenceWarning,
    FemDirectError,
    NumericalError,
    PartitionMismatchError,
)
from femdirect.core.history import FieldHistory, FieldSnapshot, same_time, zero_field
from femdirect.core.problem import ElementProtocol, ProblemProtocol
from femdirect.core.results import ConstrainedSolveResult, DofPartition, SolveResult

__all__ = [
    "ElementProtocol",
    "ProblemProtocol",
    "FieldHistory",
    "FieldSnapshot",
    "same_time",
    "zero_field",
    "DofPartition",
    "ConstrainedSolveResult",
    "SolveResult",
    "FemDirectError",
    "ConfigurationError",
    "PartitionMismatchError",
    "AssemblyError",
    "NumericalError",
    "ConvergenceWarning",
]
