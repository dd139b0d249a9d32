"""メソッド戻り値の型定義.

公開メソッドの戻り値を NamedTuple で定義する。
タプルアンパッキング（u, la = solve_constrained(...)）と
名前付きアクセス（result.u, result.converged）の両方が使える。
"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np


class DofPartition(NamedTuple):
    """DOF の境界/内部分割.

    Attributes:
        boundary_dofs: 拘束行列 C に非ゼロを持つ DOF（昇順）
        interior_dofs: K が参照する DOF から境界 DOF を除いたもの（昇順）
    """

    boundary_dofs: np.ndarray
    interior_dofs: np.ndarray


class ConstrainedSolveResult(NamedTuple):
    """拘束付き線形系 K·u + Cᵀ·λ = f, C·u = g の解.

    Attributes:
        u: (dim,) 変位（非線形反復では増分）
        la: (dim,) Lagrange 乗数。境界 DOF 以外はゼロ。
    """

    u: np.ndarray
    la: np.ndarray


class SolveResult(NamedTuple):
    """DirectSolver.solve() の結果.

    Attributes:
        iterations: 使用した非線形反復回数
        converged: 増分ノルムが許容値を下回ったか
    """

    iterations: int
    converged: bool
