"""節点 Dirichlet 拘束の境界問題.

拘束 u[node, comp] = value を Lagrange 乗数で課す。1節点1要素で、
拘束成分 d = node * dim + comp ごとに
    C[d, d] = 1
    g[d]    = value − u_current[d]
を与える。u_current は拘束対象のフィールド問題の最新値で、
非線形反復では増分に対する拘束（残差）になる。
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

import numpy as np

from femdirect.problems.base import BoundaryProblem, Element, Problem

if TYPE_CHECKING:
    from femdirect.assembly import Assembly

PrescribedValue = float | Callable[[float], float]


class DirichletProblem(BoundaryProblem):
    """節点変位の固定/強制.

    Args:
        target: 拘束対象のフィールド問題。未知フィールド名・次元を引き継ぎ、
            現在値の読み出しに使う。None の場合は現在値ゼロとみなす。
        name: 問題名
        unknown_field_name: target が None の場合のフィールド名
        unknown_field_dim: target が None の場合の成分数
    """

    def __init__(
        self,
        target: Problem | None = None,
        name: str = "dirichlet",
        *,
        unknown_field_name: str = "displacement",
        unknown_field_dim: int = 1,
    ) -> None:
        if target is not None:
            unknown_field_name = target.unknown_field_name
            unknown_field_dim = target.unknown_field_dim
        super().__init__(name, unknown_field_name, unknown_field_dim)
        self.target = target

    def fix(
        self,
        node: int,
        value: PrescribedValue | Sequence[PrescribedValue] = 0.0,
        components: Sequence[int] | None = None,
    ) -> Element:
        """節点 node の指定成分を value に拘束する.

        Args:
            node: 節点番号
            value: 規定値（スカラー、時刻の関数、または成分ごとのリスト）
            components: 拘束成分。None なら全成分。
        """
        dim = self.unknown_field_dim
        comps = tuple(range(dim)) if components is None else tuple(int(c) for c in components)
        for c in comps:
            if not 0 <= c < dim:
                raise ValueError(f"成分番号 {c} は [0, {dim}) の範囲外です。")
        if isinstance(value, (list, tuple, np.ndarray)):
            if len(value) != len(comps):
                raise ValueError("value の長さと components の長さが一致していません。")
            values = tuple(value)
        else:
            values = (value,) * len(comps)
        return self.add_element(
            Element((node,), properties={"components": comps, "values": values})
        )

    @staticmethod
    def _prescribed(value: PrescribedValue, time: float) -> float:
        return float(value(time)) if callable(value) else float(value)

    def assemble_elements(self, assembly: Assembly, time: float) -> None:
        current = self.target.nodal_values() if self.target is not None else {}
        zero = np.zeros(self.unknown_field_dim)
        for element in self.elements:
            node = element.connectivity[0]
            u_node = current.get(node, zero)
            gdofs = element.gdofs(self.unknown_field_dim)
            for comp, value in zip(
                element.properties["components"], element.properties["values"], strict=True
            ):
                d = gdofs[comp : comp + 1]
                assembly.add_stiffness(d, np.ones((1, 1)))
                assembly.add_force(d, [self._prescribed(value, time) - u_node[comp]])
