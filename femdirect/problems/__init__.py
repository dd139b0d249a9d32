"""femdirect.problems - ソルバー動作確認用の参照問題.

  Element           — 節点接続・要素パラメータ・フィールド履歴
  FieldProblem      — バルク釣り合い問題の基底（K, f）
  BoundaryProblem   — 拘束問題の基底（C, g）
  Bar1D             — 1D 棒/ばね（3次硬化オプション付き）
  DirichletProblem  — 節点 Dirichlet 拘束
"""

from femdirect.problems.bar import Bar1D
from femdirect.problems.base import BoundaryProblem, Element, FieldProblem, Problem
from femdirect.problems.dirichlet import DirichletProblem

__all__ = [
    "Element",
    "Problem",
    "FieldProblem",
    "BoundaryProblem",
    "Bar1D",
    "DirichletProblem",
]
