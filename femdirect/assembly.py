"""COO トリプレットによるグローバル系アセンブリ.

問題ごとに Assembly（剛性・荷重のトリプレット蓄積器）を生成し、
連結してから CSR 行列・密ベクトルを構築する。重複インデックスは
sum_duplicates で加算されるため、連結順序は浮動小数点の加算誤差以外に
結果へ影響しない。

並列アセンブリ:
  問題単位で ThreadPoolExecutor に投げ、各ワーカーは独立した Assembly に
  書き込む。フィールド履歴は読み取りのみ（書き込みはソルバーが求解後に行う）。
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from time import perf_counter

import numpy as np
import scipy.sparse as sp

from femdirect.core.errors import AssemblyError
from femdirect.core.problem import ProblemProtocol


def _block_coo_indices(rows: np.ndarray, cols: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """局所ブロック (len(rows), len(cols)) の COO row/col を一括計算."""
    m = len(rows)
    n = len(cols)
    return np.repeat(rows, n), np.tile(cols, m)


class Assembly:
    """グローバル剛性行列・荷重ベクトルのトリプレット蓄積器.

    フィールド問題では (K, f)、境界問題では (C, g) を同じ形式で蓄積する。
    """

    def __init__(self) -> None:
        self._k_rows: list[np.ndarray] = []
        self._k_cols: list[np.ndarray] = []
        self._k_data: list[np.ndarray] = []
        self._f_rows: list[np.ndarray] = []
        self._f_data: list[np.ndarray] = []

    def add_stiffness(
        self,
        dofs: np.ndarray,
        Ke: np.ndarray,
        col_dofs: np.ndarray | None = None,
    ) -> None:
        """局所行列 Ke をグローバル DOF に散布加算する.

        Args:
            dofs: (m,) 行方向のグローバルDOF
            Ke: (m, n) 局所行列
            col_dofs: (n,) 列方向のグローバルDOF。None なら dofs と同じ。
        """
        rows = np.asarray(dofs, dtype=np.int64).ravel()
        cols = rows if col_dofs is None else np.asarray(col_dofs, dtype=np.int64).ravel()
        Ke = np.asarray(Ke, dtype=float)
        if Ke.shape != (len(rows), len(cols)):
            raise AssemblyError(
                f"局所行列の形状が DOF 数と一致しません: Ke={Ke.shape}, "
                f"dofs=({len(rows)}, {len(cols)})"
            )
        r, c = _block_coo_indices(rows, cols)
        self._k_rows.append(r)
        self._k_cols.append(c)
        self._k_data.append(Ke.ravel())

    def add_force(self, dofs: np.ndarray, fe: np.ndarray) -> None:
        """局所ベクトル fe をグローバル DOF に散布加算する."""
        rows = np.asarray(dofs, dtype=np.int64).ravel()
        fe = np.asarray(fe, dtype=float).ravel()
        if fe.shape != rows.shape:
            raise AssemblyError(
                f"局所ベクトルの長さが DOF 数と一致しません: fe={fe.shape}, dofs={rows.shape}"
            )
        self._f_rows.append(rows)
        self._f_data.append(fe)

    def append(self, other: Assembly) -> None:
        """other のトリプレットを連結する."""
        self._k_rows.extend(other._k_rows)
        self._k_cols.extend(other._k_cols)
        self._k_data.extend(other._k_data)
        self._f_rows.extend(other._f_rows)
        self._f_data.extend(other._f_data)

    def __iadd__(self, other: Assembly) -> Assembly:
        self.append(other)
        return self

    @property
    def stiffness_triplets(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """剛性の (rows, cols, data)."""
        if not self._k_rows:
            empty = np.empty(0, dtype=np.int64)
            return empty, empty.copy(), np.empty(0, dtype=float)
        return (
            np.concatenate(self._k_rows),
            np.concatenate(self._k_cols),
            np.concatenate(self._k_data),
        )

    @property
    def force_triplets(self) -> tuple[np.ndarray, np.ndarray]:
        """荷重の (rows, data)."""
        if not self._f_rows:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=float)
        return np.concatenate(self._f_rows), np.concatenate(self._f_data)

    @property
    def ndof(self) -> int:
        """剛性トリプレットが参照する DOF 数（最大インデックス + 1）."""
        rows, cols, _ = self.stiffness_triplets
        if rows.size == 0:
            return 0
        return int(max(rows.max(), cols.max())) + 1

    def stiffness_matrix(self, shape: tuple[int, int] | None = None) -> sp.csr_matrix:
        """CSR 形式のグローバル行列を構築する.

        Args:
            shape: 行列サイズ。None なら参照 DOF から決める正方行列。

        Raises:
            AssemblyError: インデックスが shape を超える場合
        """
        rows, cols, data = self.stiffness_triplets
        if shape is None:
            n = self.ndof
            shape = (n, n)
        if rows.size and (rows.max() >= shape[0] or cols.max() >= shape[1]):
            raise AssemblyError(
                f"アセンブリの DOF が行列サイズ {shape} を超えています: "
                f"max row={int(rows.max())}, max col={int(cols.max())}"
            )
        K = sp.csr_matrix((data, (rows, cols)), shape=shape)
        K.sum_duplicates()
        return K

    def force_vector(self, dim: int) -> np.ndarray:
        """長さ dim の密な荷重ベクトルを構築する."""
        rows, data = self.force_triplets
        if rows.size and rows.max() >= dim:
            raise AssemblyError(
                f"荷重ベクトルの DOF が次元 {dim} を超えています: max dof={int(rows.max())}"
            )
        return np.bincount(rows, weights=data, minlength=dim).astype(float)


def assemble(problem: ProblemProtocol, time: float) -> Assembly:
    """1つの問題の時刻 time における寄与をアセンブルする."""
    assembly = Assembly()
    problem.assemble_elements(assembly, time)
    return assembly


def assemble_problems(
    problems: Sequence[ProblemProtocol],
    time: float,
    *,
    parallel: bool = False,
    n_jobs: int | None = None,
    show_progress: bool = True,
    label: str = "body",
) -> Assembly:
    """問題リスト全体の寄与を1つの Assembly に連結する.

    Args:
        problems: 問題のリスト
        time: 時刻
        parallel: True なら問題単位でスレッド並列にアセンブリ
        n_jobs: スレッド数（None = ThreadPoolExecutor の既定値）
        show_progress: 進捗表示
        label: 進捗表示用の呼称

    Returns:
        Assembly: 問題順に連結された蓄積器
    """
    t0 = perf_counter()
    total = Assembly()
    if parallel and len(problems) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            parts = list(executor.map(lambda p: assemble(p, time), problems))
        for part in parts:
            total.append(part)
        if show_progress:
            print(
                f"Assembled {len(problems)} {label} problem(s) in parallel "
                f"in {perf_counter() - t0:.3f} sec"
            )
        return total

    for i, problem in enumerate(problems, start=1):
        if show_progress:
            print(f"Assembling {label} {i}...")
        total.append(assemble(problem, time))
    return total
