"""拘束付き線形系の直接法ソルバー.

解く系:
    K·u + Cᵀ·λ = f
    C·u       = g

2つの分解戦略（SolveMethod で選択、同一シグネチャ (K, f, C, g) -> (u, λ)）:

  PARTITIONED ("LDLt"):
    C の非ゼロ DOF を境界 b、K が参照する残りを内部 i に分割し、
      u_b = C_bb⁻¹ · g_b                              （LU）
      u_i = K_ii⁻¹ · (f_i − K_ib · u_b)                （Cholesky 系: K_ii は SPD 前提）
      λ_b = C_bb⁻ᵀ · (f_b − K_ibᵀ · u_i − K_bb · u_b)  （境界行の釣り合い）
    鞍点行列を作らない。境界ブロックが内部に比べ小さい場合に有利。
    λ の符号は K·u + Cᵀ·λ = f に従い、反力を −λ とする式とは逆符号になる。

  AUGMENTED ("LU"):
    A = [[K, Cᵀ], [C, 0]], b = [f; g] を構築し、構造的に非ゼロの行・列のみに
    制限して LU 分解する。剛性も拘束も持たない DOF は解ゼロのまま残す。
    SPD 仮定が成り立たない問題やデバッグ用。

分解の失敗は NumericalError として送出し、別戦略での再試行は行わない。
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from time import perf_counter

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from femdirect.core.errors import AssemblyError, NumericalError, PartitionMismatchError
from femdirect.core.results import ConstrainedSolveResult, DofPartition


class SolveMethod(Enum):
    """線形系の分解戦略."""

    PARTITIONED = "LDLt"
    AUGMENTED = "LU"

    @classmethod
    def _missing_(cls, value):
        # "partitioned" / "ldlt" / "Augmented" / "lu" なども受け付ける
        if isinstance(value, str):
            key = value.strip().lower()
            for member in cls:
                if key in (member.name.lower(), member.value.lower()):
                    return member
        return None


# ========== ヘルパー ==========


def _row_support(A: sp.spmatrix) -> np.ndarray:
    """非ゼロ要素を1つ以上持つ行インデックス（昇順、明示的ゼロは除外）."""
    A = sp.csr_matrix(A, copy=True)
    A.eliminate_zeros()
    return np.flatnonzero(np.diff(A.indptr))


def _as_vector(x, dim: int, name: str) -> np.ndarray:
    """疎/密の右辺を長さ dim の密ベクトルに揃える."""
    v = x.toarray().ravel() if sp.issparse(x) else np.asarray(x, dtype=float).ravel()
    if v.shape[0] != dim:
        raise AssemblyError(f"{name} の長さ {v.shape[0]} が次元 dim={dim} と一致しません。")
    return v.astype(float, copy=True)


def _check_shapes(K: sp.spmatrix, C: sp.spmatrix) -> int:
    dim = K.shape[0]
    if K.shape != (dim, dim) or C.shape != (dim, dim):
        raise AssemblyError(
            f"拘束付き系を構築できません。dim = {dim}, size(K) = {K.shape}, size(C) = {C.shape}"
        )
    return dim


def _lu_factor(A: sp.spmatrix, what: str) -> spla.SuperLU:
    """一般行列の疎 LU 分解."""
    try:
        return spla.splu(sp.csc_matrix(A))
    except RuntimeError as exc:
        raise NumericalError(f"{what} の LU 分解に失敗しました（特異行列）: {exc}") from exc


def _spd_factor(A: sp.spmatrix, what: str) -> spla.SuperLU:
    """対称正定値行列の Cholesky 系分解.

    対称オーダリング + 対角ピボットで LU 分解し、置換が対称
    （perm_r == perm_c）かつ全ピボットが正の場合のみ受理する。
    対称行列ではこれが正定値性（主小行列式がすべて正）と同値。
    """
    A = sp.csc_matrix(A)
    n = A.shape[0]
    try:
        lu = spla.splu(
            A,
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options={"SymmetricMode": True},
        )
    except RuntimeError as exc:
        raise NumericalError(f"{what} の Cholesky 分解に失敗しました（特異行列）: {exc}") from exc

    if not np.array_equal(lu.perm_r, lu.perm_c):
        raise NumericalError(f"{what} の Cholesky 分解に失敗しました（対角ピボット不可: 非正定値）")
    pivots = lu.U.diagonal()
    scale = float(np.abs(A.diagonal()).max()) if n > 0 else 0.0
    # 行列のスケールに対する相対値で判定
    tiny = n * np.finfo(float).eps * scale
    if not np.all(np.isfinite(pivots)) or np.any(pivots <= tiny):
        raise NumericalError(
            f"{what} の Cholesky 分解に失敗しました（非正定値）: min pivot = {pivots.min():.3e}"
        )
    return lu


def _check_finite(what: str, *arrays: np.ndarray) -> None:
    for a in arrays:
        if not np.all(np.isfinite(a)):
            raise NumericalError(f"{what}: 解に非有限値が含まれます。")


# ========== DOF 分割 ==========


def partition_dofs(K: sp.spmatrix, C: sp.spmatrix) -> DofPartition:
    """C の非ゼロ構造から境界 DOF と内部 DOF に分割する.

    Args:
        K: (dim, dim) 剛性行列
        C: (dim, dim) 拘束行列

    Returns:
        DofPartition: (boundary_dofs, interior_dofs)

    Raises:
        PartitionMismatchError: C の行サポートと列サポートが一致しない場合
    """
    boundary_dofs = _row_support(C)
    boundary_dofs_cols = _row_support(sp.csr_matrix(C).T)
    if len(boundary_dofs) != len(boundary_dofs_cols) or not np.array_equal(
        boundary_dofs, boundary_dofs_cols
    ):
        rows_only = np.setdiff1d(boundary_dofs, boundary_dofs_cols)
        cols_only = np.setdiff1d(boundary_dofs_cols, boundary_dofs)
        raise PartitionMismatchError(
            "拘束行列 C の行と列の非ゼロ DOF が一致しません: "
            f"rows={len(boundary_dofs)}, cols={len(boundary_dofs_cols)}, "
            f"rows only={rows_only.tolist()}, cols only={cols_only.tolist()}"
        )
    all_dofs = _row_support(K)
    interior_dofs = np.setdiff1d(all_dofs, boundary_dofs)
    return DofPartition(boundary_dofs=boundary_dofs, interior_dofs=interior_dofs)


# ========== 分解戦略 ==========


def solve_partitioned(
    K: sp.spmatrix,
    f: np.ndarray,
    C: sp.spmatrix,
    g: np.ndarray,
    *,
    show_progress: bool = True,
) -> ConstrainedSolveResult:
    """境界/内部分割 + C_bb の LU + K_ii の Cholesky 系分解で解く.

    K は数値的に対称であることを前提とし、再対称化はしない。

    Raises:
        PartitionMismatchError: C のサポートが対称でない
        NumericalError: C_bb が特異、または K_ii が正定値でない
    """
    t0 = perf_counter()
    K = sp.csr_matrix(K)
    C = sp.csr_matrix(C)
    dim = _check_shapes(K, C)
    f = _as_vector(f, dim, "f")
    g = _as_vector(g, dim, "g")

    b, i = partition_dofs(K, C)
    if show_progress:
        print(
            f"[{SolveMethod.PARTITIONED.value}] all dofs = {len(b) + len(i)}, "
            f"interior dofs = {len(i)}, boundary dofs = {len(b)}, "
            f"preparation {perf_counter() - t0:.3f} s"
        )

    u = np.zeros(dim, dtype=float)
    la = np.zeros(dim, dtype=float)

    # 境界の変位
    t0 = perf_counter()
    lu_c = None
    if b.size:
        lu_c = _lu_factor(C[b][:, b], "境界ブロック C_bb")
        u[b] = lu_c.solve(g[b])
        norm_ub = float(np.linalg.norm(u[b]))
        if show_progress:
            print(f"[{SolveMethod.PARTITIONED.value}] norm(u_boundary) = {norm_ub:.3e}")
            if np.isclose(norm_ub, 0.0):
                print(f"[{SolveMethod.PARTITIONED.value}] homogeneous dirichlet boundary")

    # 内部領域
    K_ib = K[i][:, b]
    if i.size:
        chol = _spd_factor(K[i][:, i], "内部ブロック K_ii")
        u[i] = chol.solve(f[i] - K_ib @ u[b])

    # 境界の Lagrange 乗数
    if lu_c is not None:
        K_bb = K[b][:, b]
        rhs = f[b] - K_ib.T @ u[i] - K_bb @ u[b]
        la[b] = lu_c.solve(rhs, trans="T")

    _check_finite("PARTITIONED", u, la)
    if show_progress:
        print(
            f"[{SolveMethod.PARTITIONED.value}] solved in {perf_counter() - t0:.3f} s, "
            f"norm(u) = {np.linalg.norm(u):.3e}"
        )
    return ConstrainedSolveResult(u=u, la=la)


def solve_augmented(
    K: sp.spmatrix,
    f: np.ndarray,
    C: sp.spmatrix,
    g: np.ndarray,
    *,
    show_progress: bool = True,
) -> ConstrainedSolveResult:
    """鞍点系 [[K, Cᵀ], [C, 0]] を LU 分解で解く.

    構造的に全ゼロの行・列は除外し、対応する未知数はゼロとする。

    Raises:
        AssemblyError: K と C の次元が整合しない
        NumericalError: 制限後の拡大系が特異
    """
    t0 = perf_counter()
    K = sp.csr_matrix(K)
    C = sp.csr_matrix(C)
    dim = _check_shapes(K, C)
    try:
        A = sp.bmat([[K, C.T], [C, None]], format="csr")
    except ValueError as exc:
        raise AssemblyError(
            f"拡大系の構築に失敗しました。dim = {dim}, size(K) = {K.shape}, size(C) = {C.shape}"
        ) from exc
    rhs = np.concatenate([_as_vector(f, dim, "f"), _as_vector(g, dim, "g")])

    nz = _row_support(A)
    x = np.zeros(2 * dim, dtype=float)
    if nz.size:
        lu = _lu_factor(A[nz][:, nz], "拡大系 [K Cᵀ; C 0]")
        x[nz] = lu.solve(rhs[nz])
    _check_finite("AUGMENTED", x)

    if show_progress:
        print(
            f"[{SolveMethod.AUGMENTED.value}] n={2 * dim}, active={nz.size}, nnz={A.nnz}, "
            f"elapsed={perf_counter() - t0:.3f} s"
        )
    return ConstrainedSolveResult(u=x[:dim].copy(), la=x[dim:].copy())


_STRATEGIES: dict[SolveMethod, Callable[..., ConstrainedSolveResult]] = {
    SolveMethod.PARTITIONED: solve_partitioned,
    SolveMethod.AUGMENTED: solve_augmented,
}


def solve_constrained(
    K: sp.spmatrix,
    f: np.ndarray,
    C: sp.spmatrix,
    g: np.ndarray,
    method: SolveMethod | str = SolveMethod.PARTITIONED,
    *,
    reduce: bool = False,
    show_progress: bool = True,
) -> ConstrainedSolveResult:
    """K·u + Cᵀ·λ = f, C·u = g を指定の戦略で解く.

    Args:
        K: (dim, dim) 剛性行列（対称）
        f: (dim,) 右辺（疎 (dim, 1) も可）
        C: (dim, dim) 拘束行列
        g: (dim,) 拘束右辺
        method: SolveMethod または "LDLt" / "LU" / "partitioned" / "augmented"
        reduce: True なら K, C のどちらにも現れない DOF を除いた
            縮約系を分解し、結果を全長に戻す
        show_progress: 進捗表示

    Returns:
        ConstrainedSolveResult: (u, la) の NamedTuple。いずれも長さ dim。
    """
    method = SolveMethod(method)
    strategy = _STRATEGIES[method]

    K = sp.csr_matrix(K)
    C = sp.csr_matrix(C)
    dim = _check_shapes(K, C)
    f = _as_vector(f, dim, "f")
    g = _as_vector(g, dim, "g")

    if not reduce:
        return strategy(K, f, C, g, show_progress=show_progress)

    active = np.union1d(_row_support(K), np.union1d(_row_support(C), _row_support(C.T)))
    if show_progress:
        print(f"[reduce] dim = {dim} -> {active.size}")
    reduced = strategy(
        K[active][:, active],
        f[active],
        C[active][:, active],
        g[active],
        show_progress=show_progress,
    )
    u = np.zeros(dim, dtype=float)
    la = np.zeros(dim, dtype=float)
    u[active] = reduced.u
    la[active] = reduced.la
    return ConstrainedSolveResult(u=u, la=la)
