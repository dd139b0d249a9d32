"""例外・警告の型定義.

致命的エラーはすべて FemDirectError を基底とし、ソルバーは再試行も
別メソッドへのフォールバックも行わずに呼び出し元へ伝播させる。

  ConfigurationError      — 異種フィールド問題の混在、nonlinear_problem=False 等
  PartitionMismatchError  — 拘束行列 C の行サポートと列サポートの不一致
  AssemblyError           — 拡大系 [K Cᵀ; C 0] 構築時の次元不一致
  NumericalError          — 分解の失敗（特異な境界ブロック、非SPDの内部ブロック等）
  ConvergenceWarning      — 反復上限到達（非致命的、converged=False で通知）
"""

from __future__ import annotations


class FemDirectError(Exception):
    """femdirect の致命的エラーの基底クラス."""


class ConfigurationError(FemDirectError, ValueError):
    """ソルバー設定・問題構成が不正.

    アセンブリ開始前に送出される。
    """


class PartitionMismatchError(ConfigurationError):
    """拘束行列の行サポートと列サポートが一致しない.

    境界問題のアセンブリが壊れていることを示す。常に致命的。
    """


class AssemblyError(FemDirectError, ValueError):
    """アセンブリ結果の次元が整合しない."""


class NumericalError(FemDirectError, RuntimeError):
    """行列分解・求解が数値的に失敗した.

    典型例:
    - 境界ブロック C_bb が特異（冗長・退化した拘束）
    - 内部ブロック K_ii が正定値でない（拘束不足、剛体モード）
    - 拡大系が特異
    """


class ConvergenceWarning(UserWarning):
    """非線形反復が最大反復回数内に収束しなかった."""
