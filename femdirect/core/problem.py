"""問題・要素の抽象インタフェース定義.

Protocol 階層:
  ElementProtocol  — 節点接続・グローバルDOF・フィールド履歴を持つ要素
  ProblemProtocol  — 未知フィールド名/次元、要素集合、要素寄与のアセンブリ

要素剛性・内力の計算そのものは問題側の責務であり、ソルバーは
assemble_elements() が Assembly に書き込んだ寄与だけを扱う。
"""

from __future__ import annotations

from collections.abc import Iterable, MutableMapping
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from femdirect.core.history import FieldHistory

if TYPE_CHECKING:
    from femdirect.assembly import Assembly


@runtime_checkable
class ElementProtocol(Protocol):
    """ソルバーが読み書きする要素のインタフェース.

    Attributes:
        connectivity: 要素節点のグローバル節点番号
        fields: フィールド名 → 時刻付き履歴
    """

    connectivity: tuple[int, ...]
    fields: MutableMapping[str, FieldHistory]

    def gdofs(self, field_dim: int) -> np.ndarray:
        """節点順・成分順に並んだグローバルDOF (nnodes * field_dim,)."""
        ...

    def __len__(self) -> int:
        """要素の節点数."""
        ...


@runtime_checkable
class ProblemProtocol(Protocol):
    """フィールド問題・境界問題の共通インタフェース.

    Attributes:
        unknown_field_name: 未知フィールド名（例: "displacement"）
        unknown_field_dim: 1節点あたりの成分数
    """

    unknown_field_name: str
    unknown_field_dim: int

    @property
    def elements(self) -> Iterable[ElementProtocol]:
        """要素の列挙."""
        ...

    def assemble_elements(self, assembly: Assembly, time: float) -> None:
        """時刻 time での要素寄与を assembly に追加する.

        フィールド問題: 接線剛性 K と残差 f。
        境界問題: 拘束行列 C と拘束右辺 g。
        フィールド履歴は読み取りのみ。
        """
        ...
