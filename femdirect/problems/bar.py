"""1D 棒（ばね）要素のフィールド問題.

2節点要素、伸び δ = u₂ − u₁ に対して軸力
    N(δ) = k·δ + k3·δ³
を与える（k3 = 0 で線形）。要素寄与:
    K_e = (k + 3·k3·δ²) · [[1, −1], [−1, 1]]     （接線剛性）
    f_e = −N · [−1, 1]                            （内力の符号反転）
節点荷重 P を加えた残差 f = λ(t)·P − f_int を右辺とする。
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np

from femdirect.problems.base import Element, FieldProblem

if TYPE_CHECKING:
    from femdirect.assembly import Assembly

_B = np.array([-1.0, 1.0])


class Bar1D(FieldProblem):
    """1D 棒要素の集合.

    Args:
        name: 問題名
        stiffness: 既定の線形剛性 k
        cubic_stiffness: 既定の3次硬化係数 k3
        load_curve: 時刻 → 荷重係数。None なら常に 1。
    """

    def __init__(
        self,
        name: str = "bar",
        *,
        stiffness: float = 1.0,
        cubic_stiffness: float = 0.0,
        load_curve: Callable[[float], float] | None = None,
        unknown_field_name: str = "displacement",
    ) -> None:
        super().__init__(name, unknown_field_name, 1)
        self.stiffness = float(stiffness)
        self.cubic_stiffness = float(cubic_stiffness)
        self.load_curve = load_curve
        self.loads: dict[int, float] = {}

    def add_bar(
        self,
        n1: int,
        n2: int,
        *,
        stiffness: float | None = None,
        cubic_stiffness: float | None = None,
    ) -> Element:
        """2節点棒要素を追加する."""
        k = self.stiffness if stiffness is None else float(stiffness)
        k3 = self.cubic_stiffness if cubic_stiffness is None else float(cubic_stiffness)
        return self.add_element(Element((n1, n2), properties={"k": k, "k3": k3}))

    def add_load(self, node: int, value: float) -> None:
        """節点荷重を加算する."""
        self.loads[int(node)] = self.loads.get(int(node), 0.0) + float(value)

    def axial_force(self, element: Element) -> float:
        """現在の変位に対する軸力 N."""
        u = element.field_values(self.unknown_field_name, 1).ravel()
        delta = u[1] - u[0]
        return element.properties["k"] * delta + element.properties["k3"] * delta**3

    def assemble_element(self, assembly: Assembly, element: Element, time: float) -> None:
        u = element.field_values(self.unknown_field_name, 1).ravel()
        delta = u[1] - u[0]
        k = element.properties["k"]
        k3 = element.properties["k3"]
        kt = k + 3.0 * k3 * delta**2
        N = k * delta + k3 * delta**3
        dofs = element.gdofs(1)
        assembly.add_stiffness(dofs, kt * np.outer(_B, _B))
        assembly.add_force(dofs, -N * _B)

    def assemble_elements(self, assembly: Assembly, time: float) -> None:
        super().assemble_elements(assembly, time)
        if not self.loads:
            return
        factor = 1.0 if self.load_curve is None else float(self.load_curve(time))
        nodes = np.fromiter(self.loads.keys(), dtype=np.int64)
        values = np.fromiter(self.loads.values(), dtype=float)
        assembly.add_force(nodes, factor * values)
