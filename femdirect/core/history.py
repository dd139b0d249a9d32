"""要素ごとのフィールド履歴（時刻付きスナップショット列）.

要素は ``fields: dict[str, FieldHistory]`` を持ち、未知フィールド
（例: "displacement"）と境界要素の "reaction force" をここに保持する。
履歴の寿命は問題オブジェクトが持ち、ソルバーは追加・上書きのみ行う。
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np

# 時刻一致判定の相対許容値（float64 の sqrt(eps) 相当）
TIME_RTOL = 1.0e-8


def same_time(t1: float, t2: float) -> bool:
    """2つの時刻がほぼ等しいか."""
    return math.isclose(t1, t2, rel_tol=TIME_RTOL, abs_tol=1.0e-12)


def zero_field(n_nodes: int, field_dim: int) -> list[np.ndarray]:
    """節点ごとのゼロベクトルのリストを生成する."""
    return [np.zeros(field_dim, dtype=float) for _ in range(n_nodes)]


@dataclass
class FieldSnapshot:
    """ある時刻のフィールド値.

    Attributes:
        time: 時刻
        data: 節点ごとのフィールドベクトル (field_dim,) のリスト
    """

    time: float
    data: list[np.ndarray]

    def copy(self) -> FieldSnapshot:
        """深いコピーを返す."""
        return FieldSnapshot(time=self.time, data=[d.copy() for d in self.data])


@dataclass
class FieldHistory:
    """時刻順に並んだ FieldSnapshot の可変長ログ."""

    snapshots: list[FieldSnapshot] = field(default_factory=list)

    @classmethod
    def create(cls, time: float, data: list[np.ndarray]) -> FieldHistory:
        """スナップショット1つで履歴を生成する."""
        return cls(snapshots=[FieldSnapshot(time=time, data=data)])

    def push(self, time: float, data: list[np.ndarray]) -> FieldSnapshot:
        """末尾にスナップショットを追加する.

        Raises:
            ValueError: 最新時刻より前の時刻を追加しようとした場合
        """
        if self.snapshots and time < self.snapshots[-1].time and not same_time(
            time, self.snapshots[-1].time
        ):
            raise ValueError(
                f"時刻は単調増加である必要があります: last={self.snapshots[-1].time}, new={time}"
            )
        snap = FieldSnapshot(time=time, data=data)
        self.snapshots.append(snap)
        return snap

    def last(self) -> FieldSnapshot:
        """最新のスナップショット."""
        if not self.snapshots:
            raise IndexError("フィールド履歴が空です。")
        return self.snapshots[-1]

    def at(self, time: float) -> FieldSnapshot:
        """指定時刻のスナップショットを返す（ほぼ一致する最後のもの）."""
        for snap in reversed(self.snapshots):
            if same_time(snap.time, time):
                return snap
        raise KeyError(f"時刻 {time} のスナップショットがありません。")

    @property
    def times(self) -> list[float]:
        return [s.time for s in self.snapshots]

    def __len__(self) -> int:
        return len(self.snapshots)

    def __iter__(self) -> Iterator[FieldSnapshot]:
        return iter(self.snapshots)
