# 実験エンジン パラメータ設定

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class EngineConfig:
    """実験割り当て・統計推論エンジンのパラメータ設定

    構築時に各コンポーネントへ明示的に渡す。プロセス全体で共有する
    ミュータブルなシングルトンは持たない。

    環境変数:
        ABTEST_BOOTSTRAP_SEED: ブートストラップ乱数シード（オプション、再現性確保用）
        ABTEST_EXPLORATION_RATE: バンディットの探索率の既定値（オプション）

    使用例:
        config = EngineConfig()
        config = EngineConfig(bootstrap_samples=2000, event_batch_size=50)
        config.validate()
    """

    # === 割り当て ===
    default_exploration_rate: float = 0.1
    """バンディット（epsilon-greedy）の既定探索率"""

    # === ブートストラップ ===
    bootstrap_samples: int = 5000
    """リサンプリング回数"""

    confidence_level: float = 0.95
    """信頼水準"""

    bootstrap_seed: Optional[int] = None
    """乱数シード。None の場合は毎回異なる乱数列を使用"""

    parallel_threshold: int = 5000 * 200
    """リサンプル数 × 標本サイズ がこの値以上なら並列化する"""

    parallel_chunk_size: int = 1000
    """並列化時の1チャンクあたりリサンプル数"""

    max_workers: int = 4
    """並列化時の最大ワーカー数"""

    # === イベントトラッカー ===
    event_batch_size: int = 100
    """この件数に達したらフラッシュを起動"""

    event_flush_interval_seconds: float = 5.0
    """タイマーフラッシュの間隔（秒）"""

    event_buffer_max_size: int = 10000
    """バッファの最大件数（超過分は破棄）"""

    dedup_window_size: int = 100000
    """メモリ上で保持する重複排除キーの最大件数"""

    # === アトリビューション ===
    default_attribution_window_days: int = 30
    """終了日時のないテストのアトリビューション期間（日）"""

    # === LTV分析 ===
    ltv_periods: List[int] = field(default_factory=lambda: [30, 60, 90])
    """分析期間（日）"""

    min_cohort_size: int = 30
    """これ未満のコホートは低信頼として扱う"""

    ltv_drift_threshold: float = 10.0
    """30日と90日のリフト差がこれ（ポイント）を超えたら長期差異とみなす"""

    # === ガードレール ===
    srm_alpha: float = 0.01
    """サンプル比率不一致（SRM）判定の有意水準"""

    srm_min_sample_size: int = 100
    """SRM判定に必要な最小訪問者数"""

    guardrail_tolerance: float = 0.05
    """保護指標の許容劣化率（相対値）"""

    guardrail_interval_seconds: float = 900.0
    """定期評価の間隔（15分）"""

    cuped_min_correlation: float = 0.1
    """CUPED を適用する共変量との最小相関（絶対値）"""

    # === ノベルティ効果 ===
    novelty_min_days: int = 7
    """ノベルティ効果の判定に必要な最小日数"""

    novelty_decay_threshold: float = 0.2
    """初日から直近までのリフト減衰率がこれを超えたら減衰とみなす"""

    novelty_fit_threshold: float = 0.6
    """指数減衰モデルの当てはまり（R²）の下限"""

    novelty_stability_threshold: float = 0.05
    """漸近値までの残り距離がこの割合以下なら安定とみなす"""

    # === 母集団ドリフト ===
    drift_alpha: float = 0.05
    """ドリフト判定の有意水準"""

    drift_min_samples: int = 100
    """前期・後期それぞれに必要な最小訪問者数"""

    drift_period_fraction: float = 0.25
    """前期・後期として使う訪問者の割合（割り当て時刻順）"""

    # === 結果集計 ===
    significance_level: float = 0.05
    """多重比較補正の family-wise 有意水準"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を取得"""
        env_seed = os.getenv("ABTEST_BOOTSTRAP_SEED")
        if self.bootstrap_seed is None and env_seed:
            self.bootstrap_seed = int(env_seed)

        env_rate = os.getenv("ABTEST_EXPLORATION_RATE")
        if env_rate:
            self.default_exploration_rate = float(env_rate)

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値が無効な場合
        """
        if not (0.0 <= self.default_exploration_rate <= 1.0):
            raise ValueError(
                f"default_exploration_rate は 0.0-1.0 の範囲である必要があります: "
                f"{self.default_exploration_rate}"
            )

        if self.bootstrap_samples <= 0:
            raise ValueError(
                f"bootstrap_samples は正の整数である必要があります: {self.bootstrap_samples}"
            )

        if not (0.0 < self.confidence_level < 1.0):
            raise ValueError(
                f"confidence_level は 0.0-1.0 の範囲（両端を除く）である必要があります: "
                f"{self.confidence_level}"
            )

        if self.event_batch_size <= 0:
            raise ValueError(
                f"event_batch_size は正の整数である必要があります: {self.event_batch_size}"
            )

        if self.event_buffer_max_size < self.event_batch_size:
            raise ValueError(
                "event_buffer_max_size は event_batch_size 以上である必要があります"
            )

        if self.event_flush_interval_seconds <= 0:
            raise ValueError(
                f"event_flush_interval_seconds は正の値である必要があります: "
                f"{self.event_flush_interval_seconds}"
            )

        if not self.ltv_periods or any(p <= 0 for p in self.ltv_periods):
            raise ValueError(f"ltv_periods は正の日数のリストである必要があります: {self.ltv_periods}")

        if not (0.0 < self.srm_alpha < 1.0):
            raise ValueError(f"srm_alpha は 0.0-1.0 の範囲である必要があります: {self.srm_alpha}")

        if not (0.0 < self.drift_period_fraction <= 0.5):
            raise ValueError(
                f"drift_period_fraction は 0.0-0.5 の範囲である必要があります: "
                f"{self.drift_period_fraction}"
            )

        if self.novelty_min_days < 3:
            raise ValueError(f"novelty_min_days は 3 以上である必要があります: {self.novelty_min_days}")

        if self.max_workers <= 0:
            raise ValueError(f"max_workers は正の整数である必要があります: {self.max_workers}")
