# 実験エンジンの例外定義
"""
例外の分類:
- ConfigurationError: テスト定義の不備（重み合計、バリアント無し、ルール木の不正）。
  テストを running に遷移させる時点で致命的。
- TestStateError: ライフサイクル上許されない状態遷移。
- PersistenceError: 永続化コラボレーターからのエラー。書き込みは
  insert-if-absent / append-only なので呼び出し側でそのままリトライしてよい。

除外（ターゲティング不一致）・アトリビューション不一致・標本不足は
例外ではなく値として表現する（AssignmentResult / AttributionStatus / ゼロ幅区間）。
"""


class ABTestError(Exception):
    """実験エンジンの基底例外"""
    pass


class ConfigurationError(ABTestError):
    """テスト定義が不正な場合のエラー"""
    pass


class TestStateError(ABTestError):
    """テストの状態が不正な場合のエラー"""
    __test__ = False


class PersistenceError(ABTestError):
    """永続化コラボレーターの操作に失敗した場合のエラー"""
    pass
