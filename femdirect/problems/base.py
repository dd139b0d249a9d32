"""要素・問題の基底クラス.

Element は節点接続・要素パラメータ・フィールド履歴を持つ。
FieldProblem / BoundaryProblem は要素集合を持ち、assemble_element() で
各要素の寄与を Assembly に書き込む（具象クラスで実装）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from femdirect.core.history import FieldHistory

if TYPE_CHECKING:
    from femdirect.assembly import Assembly


@dataclass
class Element:
    """有限要素.

    Attributes:
        connectivity: グローバル節点番号のタプル
        properties: 要素パラメータ（剛性、拘束成分など）
        fields: フィールド名 → 時刻付き履歴
    """

    connectivity: tuple[int, ...]
    properties: dict[str, Any] = field(default_factory=dict)
    fields: dict[str, FieldHistory] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.connectivity = tuple(int(n) for n in self.connectivity)

    def __len__(self) -> int:
        return len(self.connectivity)

    def gdofs(self, field_dim: int) -> np.ndarray:
        """節点順・成分順のグローバルDOF: node * field_dim + comp."""
        nodes = np.asarray(self.connectivity, dtype=np.int64)
        return (nodes[:, None] * field_dim + np.arange(field_dim, dtype=np.int64)[None, :]).ravel()

    def field_values(self, name: str, field_dim: int) -> np.ndarray:
        """最新スナップショットの値 (nnodes, field_dim)。履歴がなければゼロ."""
        history = self.fields.get(name)
        if history is None or len(history) == 0:
            return np.zeros((len(self), field_dim), dtype=float)
        return np.array(history.last().data, dtype=float).reshape(len(self), field_dim)


class Problem:
    """要素集合と未知フィールドを持つ問題の基底クラス.

    Attributes:
        name: 問題名
        unknown_field_name: 未知フィールド名
        unknown_field_dim: 1節点あたりの成分数
    """

    def __init__(
        self,
        name: str,
        unknown_field_name: str = "displacement",
        unknown_field_dim: int = 1,
    ) -> None:
        if unknown_field_dim < 1:
            raise ValueError(f"unknown_field_dim は 1 以上: {unknown_field_dim}")
        self.name = name
        self.unknown_field_name = unknown_field_name
        self.unknown_field_dim = int(unknown_field_dim)
        self._elements: list[Element] = []

    @property
    def elements(self) -> list[Element]:
        return self._elements

    def add_element(self, element: Element) -> Element:
        self._elements.append(element)
        return element

    def nodal_values(self) -> dict[int, np.ndarray]:
        """節点番号 → 未知フィールドの最新値."""
        values: dict[int, np.ndarray] = {}
        for element in self._elements:
            if self.unknown_field_name not in element.fields:
                continue
            local = element.field_values(self.unknown_field_name, self.unknown_field_dim)
            for n, node in enumerate(element.connectivity):
                values[node] = local[n].copy()
        return values

    def assemble_elements(self, assembly: Assembly, time: float) -> None:
        for element in self._elements:
            self.assemble_element(assembly, element, time)

    def assemble_element(self, assembly: Assembly, element: Element, time: float) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, field={self.unknown_field_name!r}, "
            f"dim={self.unknown_field_dim}, elements={len(self._elements)})"
        )


class FieldProblem(Problem):
    """バルクの釣り合い問題（K, f を与える）."""


class BoundaryProblem(Problem):
    """拘束問題（C, g を与える）. 要素は "reaction force" 履歴を持つ."""
