"""非線形直接法ソルバー（DirectSolver）.

ある時刻 time において、フィールド問題群と境界問題群から
    K·Δu + Cᵀ·λ = f
    C·Δu       = g
を反復的に組み立てて解き、要素のフィールド履歴を更新する。

1反復の流れ:
  1) フィールド問題のアセンブリ → (K, f)、dim は参照 DOF の和集合
  2) 境界問題のアセンブリ → (C, g) を dim × dim / dim に埋め込み
  3) dump_matrices=True なら (K, f, C, g) を保存
  4) solve_constrained() で (Δu, λ) を求解
  5) フィールド要素: 最新スナップショットに Δu を加算（増分の累積）
  6) 境界要素: 最新の "reaction force" を λ で置換（累積しない）
  7) ||Δu|| < tol なら収束

反復は厳密に逐次（k+1 回目は k 回目の履歴更新後の状態から組み立てる）。
最大反復回数に達した場合は (max_iterations, False) を返し、
ConvergenceWarning を発行する（例外にはしない）。
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, fields, replace
from pathlib import Path
from time import perf_counter

import numpy as np

from femdirect.assembly import assemble_problems
from femdirect.core.errors import AssemblyError, ConfigurationError, ConvergenceWarning
from femdirect.core.history import FieldHistory, same_time, zero_field
from femdirect.core.problem import ElementProtocol, ProblemProtocol
from femdirect.core.results import SolveResult
from femdirect.dump import dump_matrices
from femdirect.linsolve import SolveMethod, solve_constrained
from femdirect.problems.base import BoundaryProblem

# 境界要素の反力フィールド名
REACTION_FORCE = "reaction force"


@dataclass(frozen=True)
class DirectSolverConfig:
    """DirectSolver の設定（構築後は不変）.

    Attributes:
        parallel: 問題単位のスレッド並列アセンブリ
        nonlinear_problem: 非線形反復を行うか（False は未実装でエラー）
        max_iterations: 最大非線形反復回数
        tol: 増分ノルムの収束判定値
        dump_matrices: 反復ごとに (K, f, C, g) をディスクに保存
        reduce_stiffness_matrix: 分解前に未参照 DOF を除いた縮約系を作る
        method: 分解戦略（PARTITIONED = "LDLt", AUGMENTED = "LU"）
        n_jobs: 並列アセンブリのスレッド数（None = 既定値）
        dump_dir: dump_matrices の保存先ディレクトリ
        show_progress: 進捗表示
    """

    parallel: bool = False
    nonlinear_problem: bool = True
    max_iterations: int = 10
    tol: float = 1.0e-6
    dump_matrices: bool = False
    reduce_stiffness_matrix: bool = True
    method: SolveMethod | str = SolveMethod.PARTITIONED
    n_jobs: int | None = None
    dump_dir: str | Path = "."
    show_progress: bool = True

    def __post_init__(self) -> None:
        try:
            method = SolveMethod(self.method)
        except ValueError as exc:
            raise ConfigurationError(
                f"method は {[m.value for m in SolveMethod]} のいずれか: {self.method!r}"
            ) from exc
        object.__setattr__(self, "method", method)
        if (
            isinstance(self.max_iterations, bool)
            or not isinstance(self.max_iterations, (int, np.integer))
            or self.max_iterations <= 0
        ):
            raise ConfigurationError(f"max_iterations は正の整数: {self.max_iterations}")
        if not self.tol > 0.0:
            raise ConfigurationError(f"tol は正値: {self.tol}")
        if self.n_jobs is not None and self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs は 1 以上: {self.n_jobs}")


@dataclass
class IterationTiming:
    """1非線形反復のフェーズ別経過時間 [s]."""

    field_assembly: float = 0.0
    boundary_assembly: float = 0.0
    dump_matrices: float = 0.0
    solution: float = 0.0
    update_element_data: float = 0.0
    nonlinear_iteration: float = 0.0

    def report(self) -> None:
        print("timing info for non-linear iteration:")
        for f in fields(self):
            print(f"  {f.name:<24s}: {getattr(self, f.name):.4f}")


def _element_values(vec: np.ndarray, element: ElementProtocol, field_dim: int) -> list[np.ndarray]:
    """全体ベクトルから要素の節点ごとの値を取り出す."""
    gdofs = np.asarray(element.gdofs(field_dim), dtype=np.int64)
    if gdofs.size and gdofs.max() >= vec.shape[0]:
        raise AssemblyError(
            f"要素 DOF {int(gdofs.max())} が全体系の次元 {vec.shape[0]} を超えています。"
        )
    local = vec[gdofs].reshape(len(element), field_dim)
    return [local[n].copy() for n in range(len(element))]


class DirectSolver:
    """フィールド問題と境界問題を非線形反復で解く直接法ソルバー.

    Examples:
        >>> solver = DirectSolver(max_iterations=20, tol=1e-8, show_progress=False)
        >>> solver.add(bar)
        >>> solver.add(support)
        >>> iterations, converged = solver.solve(time=1.0)
    """

    def __init__(self, config: DirectSolverConfig | None = None, **options) -> None:
        if config is None:
            config = DirectSolverConfig(**options)
        elif options:
            config = replace(config, **options)
        self.config = config
        self.field_problems: list[ProblemProtocol] = []
        self.boundary_problems: list[ProblemProtocol] = []
        self.timings: list[IterationTiming] = []
        self.initialization_time = 0.0

    def add_field_problem(self, problem: ProblemProtocol) -> None:
        self.field_problems.append(problem)

    def add_boundary_problem(self, problem: ProblemProtocol) -> None:
        self.boundary_problems.append(problem)

    def add(self, problem: ProblemProtocol) -> None:
        """問題の種類に応じてフィールド/境界のリストに追加する."""
        if isinstance(problem, BoundaryProblem):
            self.add_boundary_problem(problem)
        else:
            self.add_field_problem(problem)

    # ---------- 初期化 ----------

    def _check_field_problems(self) -> tuple[str, int]:
        """全フィールド問題の未知フィールド名・次元が一致することを確認する."""
        if not self.field_problems:
            raise ConfigurationError("フィールド問題が登録されていません。")
        first = self.field_problems[0]
        field_name = first.unknown_field_name
        field_dim = int(first.unknown_field_dim)
        for problem in self.field_problems:
            if problem.unknown_field_name != field_name:
                raise ConfigurationError(
                    "複数の異なるフィールドは未対応です: "
                    f"{field_name!r} != {problem.unknown_field_name!r}"
                )
            if int(problem.unknown_field_dim) != field_dim:
                raise ConfigurationError(
                    "複数の異なるフィールド次元は未対応です: "
                    f"{field_dim} != {problem.unknown_field_dim}"
                )
        return field_name, field_dim

    def _initialize_fields(self, time: float, field_name: str, field_dim: int) -> None:
        """時刻 time のスナップショットを用意する.

        フィールド要素: 履歴なし → ゼロ、前時刻のみ → 直前値のコピー
        （今回の増分はそこから累積）、同時刻あり → そのまま継続。
        境界要素: 同時刻の反力スナップショットがなければゼロで追加。
        """
        for problem in self.field_problems:
            for element in problem.elements:
                history = element.fields.get(field_name)
                if history is None or len(history) == 0:
                    element.fields[field_name] = FieldHistory.create(
                        time, zero_field(len(element), field_dim)
                    )
                elif not same_time(history.last().time, time):
                    history.push(time, history.last().copy().data)

        for problem in self.boundary_problems:
            for element in problem.elements:
                data = zero_field(len(element), field_dim)
                history = element.fields.get(REACTION_FORCE)
                if history is None or len(history) == 0:
                    element.fields[REACTION_FORCE] = FieldHistory.create(time, data)
                elif not same_time(history.last().time, time):
                    history.push(time, data)

    # ---------- 要素データ更新 ----------

    def _update_field_problems(self, sol: np.ndarray, field_name: str, field_dim: int) -> None:
        for problem in self.field_problems:
            for element in problem.elements:
                increment = _element_values(sol, element, field_dim)
                last = element.fields[field_name].last()
                last.data = [d + du for d, du in zip(last.data, increment, strict=True)]

    def _update_boundary_problems(self, la: np.ndarray, field_dim: int) -> None:
        for problem in self.boundary_problems:
            for element in problem.elements:
                element.fields[REACTION_FORCE].last().data = _element_values(
                    la, element, field_dim
                )

    # ---------- 求解 ----------

    def solve(self, time: float = 0.0) -> SolveResult:
        """時刻 time で非線形反復を実行する.

        Returns:
            SolveResult: (iterations, converged) の NamedTuple

        Raises:
            ConfigurationError: 異種フィールド問題、nonlinear_problem=False 等
            PartitionMismatchError: 拘束行列のサポート不一致
            AssemblyError: 全体系の次元不整合
            NumericalError: 行列分解の失敗
        """
        cfg = self.config
        show = cfg.show_progress
        if show:
            print(f"# of field problems: {len(self.field_problems)}")
            print(f"# of boundary problems: {len(self.boundary_problems)}")
        if not cfg.nonlinear_problem:
            raise ConfigurationError("線形解析モード (nonlinear_problem=False) は未実装です。")

        t_solver = perf_counter()
        field_name, field_dim = self._check_field_problems()
        self._initialize_fields(time, field_name, field_dim)
        self.initialization_time = perf_counter() - t_solver
        self.timings = []

        for it in range(1, cfg.max_iterations + 1):
            if show:
                print(f"Starting iteration {it}")
            timing = IterationTiming()
            t_iter = perf_counter()

            t0 = perf_counter()
            field_assembly = assemble_problems(
                self.field_problems,
                time,
                parallel=cfg.parallel,
                n_jobs=cfg.n_jobs,
                show_progress=show,
                label="body",
            )
            K = field_assembly.stiffness_matrix()
            dim = K.shape[0]
            f = field_assembly.force_vector(dim)
            del field_assembly
            timing.field_assembly = perf_counter() - t0

            t0 = perf_counter()
            boundary_assembly = assemble_problems(
                self.boundary_problems,
                time,
                parallel=cfg.parallel,
                n_jobs=cfg.n_jobs,
                show_progress=show,
                label="boundary",
            )
            C = boundary_assembly.stiffness_matrix((dim, dim))
            g = boundary_assembly.force_vector(dim)
            del boundary_assembly
            timing.boundary_assembly = perf_counter() - t0

            t0 = perf_counter()
            if cfg.dump_matrices:
                path = dump_matrices(K, f, C, g, it, directory=cfg.dump_dir)
                if show:
                    print(f"Matrices saved to: {path}")
            timing.dump_matrices = perf_counter() - t0

            t0 = perf_counter()
            sol, la = solve_constrained(
                K,
                f,
                C,
                g,
                cfg.method,
                reduce=cfg.reduce_stiffness_matrix,
                show_progress=show,
            )
            del K, f, C, g
            timing.solution = perf_counter() - t0

            t0 = perf_counter()
            self._update_field_problems(sol, field_name, field_dim)
            self._update_boundary_problems(la, field_dim)
            timing.update_element_data = perf_counter() - t0

            timing.nonlinear_iteration = perf_counter() - t_iter
            self.timings.append(timing)

            norm = float(np.linalg.norm(sol))
            if show:
                timing.report()
                print(f"  iter {it}, ||du|| = {norm:.3e}")
            if norm < cfg.tol:
                if show:
                    print(f"solver finished in {perf_counter() - t_solver:.3f} seconds.")
                return SolveResult(iterations=it, converged=True)

        msg = f"did not converge in {cfg.max_iterations} iterations"
        if show:
            print(f"WARNING: {msg}")
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
        return SolveResult(iterations=cfg.max_iterations, converged=False)
