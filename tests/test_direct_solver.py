"""DirectSolver（非線形反復コントローラ）のテスト.

テスト方針:
  1. 3節点棒: 1反目で厳密解、2反目の増分ゼロで収束
  2. 釣り合い状態からの再求解は1反復で収束
  3. 3次硬化ばね: Newton 反復で解析解 δ + δ³ = P に収束
  4. 反復上限: (max_iterations, False) と ConvergenceWarning、アセンブリ回数は上限以下
  5. 増分は累積、反力は置換
  6. 設定・構成エラー
  7. 並列アセンブリ、AUGMENTED、行列ダンプ
"""

from __future__ import annotations

import numpy as np
import pytest

import femdirect.solver as solver_module
from femdirect.core.errors import (
    AssemblyError,
    ConfigurationError,
    ConvergenceWarning,
    PartitionMismatchError,
)
from femdirect.dump import MATRIX_FIELDS, load_matrices
from femdirect.linsolve import SolveMethod, solve_constrained
from femdirect.problems import Bar1D, BoundaryProblem, DirichletProblem, FieldProblem
from femdirect.solver import REACTION_FORCE, DirectSolver, DirectSolverConfig

# ========== テスト用ヘルパー ==========


class _CountingBar(Bar1D):
    """アセンブリ呼び出し回数を数える棒."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.n_assembly = 0

    def assemble_elements(self, assembly, time):
        self.n_assembly += 1
        super().assemble_elements(assembly, time)


class _SkewConstraint(BoundaryProblem):
    """行と列のサポートが異なる壊れた拘束."""

    def assemble_elements(self, assembly, time):
        assembly.add_stiffness([0], np.array([[1.0]]), col_dofs=[1])


class _FarConstraint(BoundaryProblem):
    """フィールド問題の DOF 範囲外を拘束する."""

    def assemble_elements(self, assembly, time):
        assembly.add_stiffness([10], np.array([[1.0]]))


def _bar3(**bar_kwargs):
    """3節点・2要素の棒（節点0固定、節点2に単位荷重）."""
    bar = _CountingBar("bar", **bar_kwargs)
    bar.add_bar(0, 1)
    bar.add_bar(1, 2)
    bar.add_load(2, 1.0)
    support = DirichletProblem(bar, "support")
    support.fix(0)
    return bar, support


def _spring(P: float = 2.0):
    """3次硬化ばね1本: δ + δ³ = P."""
    bar = _CountingBar("spring", stiffness=1.0, cubic_stiffness=1.0)
    bar.add_bar(0, 1)
    bar.add_load(1, P)
    support = DirichletProblem(bar)
    support.fix(0)
    return bar, support


def _solver(*problems, **options) -> DirectSolver:
    options.setdefault("show_progress", False)
    solver = DirectSolver(**options)
    for p in problems:
        solver.add(p)
    return solver


def _nodal(problem) -> dict[int, float]:
    return {n: float(v[0]) for n, v in problem.nodal_values().items()}


# ========== 3節点棒 ==========


class TestBarScenario:
    """3節点棒の非線形反復."""

    def test_converges_at_second_iteration(self):
        bar, support = _bar3()
        result = _solver(bar, support).solve(0.0)
        assert result == (2, True)
        assert result.iterations == 2
        assert result.converged

    def test_displacement_field(self):
        bar, support = _bar3()
        _solver(bar, support).solve(0.0)
        u = _nodal(bar)
        assert u[0] == pytest.approx(0.0, abs=1e-12)
        assert u[1] == pytest.approx(1.0)
        assert u[2] == pytest.approx(2.0)

    def test_reaction_force(self):
        bar, support = _bar3()
        _solver(bar, support).solve(0.0)
        (element,) = support.elements
        history = element.fields[REACTION_FORCE]
        assert len(history) == 1
        assert abs(history.last().data[0][0]) == pytest.approx(1.0)

    def test_equilibrium_converges_in_one_iteration(self):
        """釣り合い済みの状態から同時刻で再求解すると1反復で収束."""
        bar, support = _bar3()
        solver = _solver(bar, support)
        solver.solve(0.0)
        n_before = bar.n_assembly
        result = solver.solve(0.0)
        assert result == (1, True)
        assert bar.n_assembly - n_before == 1
        assert _nodal(bar)[2] == pytest.approx(2.0)

    def test_history_per_time(self):
        """新しい時刻では直前値をコピーしたスナップショットから累積する."""
        bar, support = _bar3(load_curve=lambda t: t)
        solver = _solver(bar, support)
        solver.solve(0.5)
        solver.solve(1.0)
        element = bar.elements[1]
        history = element.fields["displacement"]
        assert history.times == [0.5, 1.0]
        np.testing.assert_allclose(np.ravel(history.at(0.5).data), [0.5, 1.0])
        np.testing.assert_allclose(np.ravel(history.at(1.0).data), [1.0, 2.0])
        assert support.elements[0].fields[REACTION_FORCE].times == [0.5, 1.0]

    def test_timings_recorded(self):
        bar, support = _bar3()
        solver = _solver(bar, support)
        solver.solve(0.0)
        assert len(solver.timings) == 2
        assert all(t.nonlinear_iteration >= t.solution for t in solver.timings)

    def test_progress_output(self, capsys):
        bar, support = _bar3()
        _solver(bar, support, show_progress=True).solve(0.0)
        out = capsys.readouterr().out
        assert "Starting iteration 1" in out
        assert "timing info for non-linear iteration" in out


# ========== 非線形ばね ==========


class TestNonlinearSpring:
    """3次硬化ばねの Newton 反復."""

    def test_converges_to_analytical(self):
        bar, support = _spring(P=2.0)
        result = _solver(bar, support, max_iterations=30, tol=1e-10).solve()
        assert result.converged
        assert 2 < result.iterations <= 30
        assert _nodal(bar)[1] == pytest.approx(1.0, abs=1e-8)

    def test_reaction_balances_load(self):
        bar, support = _spring(P=2.0)
        _solver(bar, support, max_iterations=30, tol=1e-10).solve()
        reaction = support.elements[0].fields[REACTION_FORCE].last().data[0][0]
        assert abs(reaction) == pytest.approx(2.0, rel=1e-8)
        assert bar.axial_force(bar.elements[0]) == pytest.approx(2.0, rel=1e-8)

    @pytest.mark.parametrize("method", ["LDLt", "LU"])
    def test_methods_agree(self, method):
        bar, support = _spring(P=10.0)
        result = _solver(bar, support, max_iterations=50, tol=1e-10, method=method).solve()
        assert result.converged
        delta = _nodal(bar)[1]
        assert delta + delta**3 == pytest.approx(10.0, rel=1e-9)


# ========== 反復上限 ==========


class TestExhaustion:
    """収束しない場合の戻り値と警告."""

    @pytest.mark.parametrize("max_iterations", [1, 3])
    def test_returns_not_converged(self, max_iterations):
        bar, support = _spring(P=2.0)
        solver = _solver(bar, support, max_iterations=max_iterations, tol=1e-14)
        with pytest.warns(ConvergenceWarning):
            result = solver.solve()
        assert result == (max_iterations, False)
        assert bar.n_assembly == max_iterations
        assert len(solver.timings) == max_iterations


# ========== 累積と置換 ==========


class TestAccumulation:
    """フィールドは増分の和、反力は最後の λ."""

    def test_accumulation_law(self, monkeypatch):
        records = []

        def _recording(*args, **kwargs):
            result = solve_constrained(*args, **kwargs)
            records.append(result)
            return result

        monkeypatch.setattr(solver_module, "solve_constrained", _recording)
        bar, support = _spring(P=2.0)
        with pytest.warns(ConvergenceWarning):
            _solver(bar, support, max_iterations=4, tol=1e-14).solve()

        assert len(records) == 4
        element = bar.elements[0]
        gdofs = element.gdofs(1)
        total = sum(r.u[gdofs] for r in records)
        np.testing.assert_allclose(np.ravel(element.fields["displacement"].last().data), total)

        reaction = support.elements[0].fields[REACTION_FORCE].last().data
        np.testing.assert_array_equal(np.ravel(reaction), records[-1].la[[0]])
        summed = sum(r.la[0] for r in records)
        assert summed != pytest.approx(records[-1].la[0])


# ========== エラー ==========


class TestConfiguration:
    """設定・構成エラー."""

    def test_defaults(self):
        cfg = DirectSolverConfig()
        assert cfg.max_iterations == 10
        assert cfg.tol == 1.0e-6
        assert cfg.method is SolveMethod.PARTITIONED
        assert cfg.nonlinear_problem
        assert cfg.reduce_stiffness_matrix
        assert not cfg.parallel
        assert not cfg.dump_matrices

    def test_method_from_string(self):
        assert DirectSolverConfig(method="LU").method is SolveMethod.AUGMENTED

    @pytest.mark.parametrize(
        "options",
        [
            {"max_iterations": 0},
            {"max_iterations": 2.5},
            {"max_iterations": "3"},
            {"max_iterations": True},
            {"tol": 0.0},
            {"tol": -1.0},
            {"method": "gmres"},
            {"n_jobs": 0},
        ],
    )
    def test_invalid_options(self, options):
        with pytest.raises(ConfigurationError):
            DirectSolverConfig(**options)

    def test_config_is_frozen(self):
        cfg = DirectSolverConfig()
        with pytest.raises(AttributeError):
            cfg.tol = 1.0

    def test_override_config(self):
        solver = DirectSolver(DirectSolverConfig(tol=1e-3), max_iterations=3)
        assert solver.config.tol == 1e-3
        assert solver.config.max_iterations == 3

    def test_linear_mode_unimplemented(self):
        bar, support = _bar3()
        solver = _solver(bar, support, nonlinear_problem=False)
        with pytest.raises(ConfigurationError):
            solver.solve()
        assert bar.n_assembly == 0

    def test_no_field_problems(self):
        with pytest.raises(ConfigurationError):
            _solver().solve()

    def test_heterogeneous_field_dim(self):
        bar, _ = _bar3()
        other = FieldProblem("plate", unknown_field_dim=2)
        with pytest.raises(ConfigurationError, match="次元"):
            _solver(bar, other).solve()
        assert bar.n_assembly == 0

    def test_heterogeneous_field_name(self):
        bar, _ = _bar3()
        heat = Bar1D("heat", unknown_field_name="temperature")
        with pytest.raises(ConfigurationError):
            _solver(bar, heat).solve()

    def test_add_dispatch(self):
        bar, support = _bar3()
        solver = _solver(bar, support)
        assert solver.field_problems == [bar]
        assert solver.boundary_problems == [support]


class TestFatalErrors:
    """アセンブリ・分割エラーは即座に中断."""

    def test_partition_mismatch(self):
        bar, _ = _bar3()
        with pytest.raises(PartitionMismatchError):
            _solver(bar, _SkewConstraint("skew")).solve()
        assert bar.n_assembly == 1

    def test_constraint_outside_dim(self):
        bar, _ = _bar3()
        with pytest.raises(AssemblyError):
            _solver(bar, _FarConstraint("far")).solve()


# ========== 並列・AUGMENTED・ダンプ ==========


class TestOptions:
    """parallel / method / reduce / dump_matrices."""

    def _two_bars(self):
        left = Bar1D("left")
        left.add_bar(0, 1)
        left.add_bar(1, 2)
        right = Bar1D("right", stiffness=2.0)
        right.add_bar(2, 3)
        right.add_load(3, 1.0)
        support = DirichletProblem(left)
        support.fix(0)
        return left, right, support

    @pytest.mark.parametrize(
        "options",
        [
            {"parallel": True, "n_jobs": 2},
            {"method": SolveMethod.AUGMENTED},
            {"reduce_stiffness_matrix": False},
        ],
    )
    def test_same_solution(self, options):
        left, right, support = self._two_bars()
        result = _solver(left, right, support, **options).solve()
        assert result == (2, True)
        u = {**_nodal(left), **_nodal(right)}
        assert u[1] == pytest.approx(1.0)
        assert u[2] == pytest.approx(2.0)
        assert u[3] == pytest.approx(2.5)

    def test_dump_matrices(self, tmp_path):
        bar, support = _bar3()
        _solver(bar, support, dump_matrices=True, dump_dir=tmp_path).solve()
        files = sorted(tmp_path.glob("host_*_iteration_*_matrices.mat"))
        assert len(files) == 2
        first = next(p for p in files if p.name.endswith("_iteration_1_matrices.mat"))
        data = load_matrices(first)
        assert set(data) == set(MATRIX_FIELDS)
        np.testing.assert_array_equal(
            data["stiffness_matrix"].toarray(),
            [[1.0, -1.0, 0.0], [-1.0, 2.0, -1.0], [0.0, -1.0, 1.0]],
        )
        np.testing.assert_array_equal(data["force_vector"], [0.0, 0.0, 1.0])
        np.testing.assert_array_equal(
            data["constraint_matrix_lhs"].toarray(), np.diag([1.0, 0.0, 0.0])
        )
        np.testing.assert_array_equal(data["constraint_matrix_rhs"], np.zeros(3))

    def test_no_dump_by_default(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        bar, support = _bar3()
        _solver(bar, support).solve()
        assert not list(tmp_path.glob("*.mat"))
