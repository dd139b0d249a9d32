"""反復ごとの線形系 (K, f, C, g) のディスク書き出し（診断用）.

1反復につき1ファイル ``host_<pid>_iteration_<k>_matrices.mat`` を
MATLAB 形式で保存する。疎行列は疎のまま保存される。
ソルバーの計算結果には影響しない。
"""

from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import scipy.io as sio
import scipy.sparse as sp

# アーティファクトの4フィールド
MATRIX_FIELDS = (
    "stiffness_matrix",
    "force_vector",
    "constraint_matrix_lhs",
    "constraint_matrix_rhs",
)


def dump_filename(iteration: int, worker_id: int | None = None) -> str:
    """ワーカーIDと反復番号からファイル名を生成する."""
    if worker_id is None:
        worker_id = os.getpid()
    return f"host_{worker_id}_iteration_{iteration}_matrices.mat"


def dump_matrices(
    K: sp.spmatrix,
    f: np.ndarray,
    C: sp.spmatrix,
    g: np.ndarray,
    iteration: int,
    *,
    directory: str | Path = ".",
    worker_id: int | None = None,
) -> Path:
    """(K, f, C, g) を1ファイルに保存する.

    Returns:
        保存先パス
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / dump_filename(iteration, worker_id)
    data = {
        "stiffness_matrix": sp.csc_matrix(K),
        "force_vector": np.asarray(f, dtype=float).reshape(-1, 1),
        "constraint_matrix_lhs": sp.csc_matrix(C),
        "constraint_matrix_rhs": np.asarray(g, dtype=float).reshape(-1, 1),
    }
    sio.savemat(path, data, do_compression=True)
    return path


def load_matrices(path: str | Path) -> dict[str, sp.csr_matrix | np.ndarray]:
    """dump_matrices() で保存したファイルを読み込む.

    Returns:
        {"stiffness_matrix": CSR, "force_vector": (dim,), ...}
    """
    raw = sio.loadmat(path)
    return {
        "stiffness_matrix": sp.csr_matrix(raw["stiffness_matrix"]),
        "force_vector": np.asarray(raw["force_vector"], dtype=float).ravel(),
        "constraint_matrix_lhs": sp.csr_matrix(raw["constraint_matrix_lhs"]),
        "constraint_matrix_rhs": np.asarray(raw["constraint_matrix_rhs"], dtype=float).ravel(),
    }
