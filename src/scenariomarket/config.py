from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scenariomarket.domain.money_policy import BPS_DENOMINATOR, StealSplitPolicy
from scenariomarket.domain.pricing import PricingCurve, PricingPolicy
from scenariomarket.domain.similarity import DuplicateGateConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="scenariomarket.db", alias="STATE_DB_PATH")
    db_busy_timeout_ms: int = Field(default=5000, alias="DB_BUSY_TIMEOUT_MS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    pricing_curve: PricingCurve = Field(default=PricingCurve.LINEAR, alias="PRICING_CURVE")
    base_price: int = Field(default=10, alias="BASE_PRICE")
    price_step: int = Field(default=1, alias="PRICE_STEP")
    price_growth: Decimal = Field(default=Decimal("1.10"), alias="PRICE_GROWTH")
    price_floor: int = Field(default=1, alias="PRICE_FLOOR")
    price_ceiling: int = Field(default=1_000_000, alias="PRICE_CEILING")

    victim_share_bps: int = Field(default=5000, alias="VICTIM_SHARE_BPS")
    pool_share_bps: int = Field(default=4000, alias="POOL_SHARE_BPS")
    platform_share_bps: int = Field(default=1000, alias="PLATFORM_SHARE_BPS")

    lock_duration_seconds: int = Field(default=600, alias="LOCK_DURATION_SECONDS")
    scenario_creation_fee: int = Field(default=10, alias="SCENARIO_CREATION_FEE")
    platform_pool_seed: int = Field(default=0, alias="PLATFORM_POOL_SEED")
    reimburse_creator_on_resolve: bool = Field(default=True, alias="REIMBURSE_CREATOR_ON_RESOLVE")

    duplicate_block_threshold: int = Field(default=70, alias="DUPLICATE_BLOCK_THRESHOLD")
    duplicate_warn_threshold: int = Field(default=60, alias="DUPLICATE_WARN_THRESHOLD")
    duplicate_display_threshold: int = Field(default=50, alias="DUPLICATE_DISPLAY_THRESHOLD")
    duplicate_min_title_length: int = Field(default=10, alias="DUPLICATE_MIN_TITLE_LENGTH")
    duplicate_lookback_days: int = Field(default=90, alias="DUPLICATE_LOOKBACK_DAYS")
    duplicate_candidate_limit: int = Field(default=500, alias="DUPLICATE_CANDIDATE_LIMIT")
    duplicate_max_matches: int = Field(default=5, alias="DUPLICATE_MAX_MATCHES")

    steal_busy_max_attempts: int = Field(default=3, alias="STEAL_BUSY_MAX_ATTEMPTS")
    steal_busy_base_delay_ms: int = Field(default=50, alias="STEAL_BUSY_BASE_DELAY_MS")
    steal_busy_max_delay_ms: int = Field(default=500, alias="STEAL_BUSY_MAX_DELAY_MS")

    events_webhook_url: str | None = Field(default=None, alias="EVENTS_WEBHOOK_URL")
    events_webhook_token: SecretStr | None = Field(default=None, alias="EVENTS_WEBHOOK_TOKEN")
    events_webhook_timeout_seconds: float = Field(
        default=5.0, alias="EVENTS_WEBHOOK_TIMEOUT_SECONDS"
    )
    events_webhook_max_attempts: int = Field(default=3, alias="EVENTS_WEBHOOK_MAX_ATTEMPTS")
    events_webhook_max_total_sleep_seconds: float = Field(
        default=2.0, alias="EVENTS_WEBHOOK_MAX_TOTAL_SLEEP_SECONDS"
    )
    events_queue_max_pending: int = Field(default=1000, alias="EVENTS_QUEUE_MAX_PENDING")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )

    @field_validator(
        "base_price",
        "price_step",
        "scenario_creation_fee",
        "platform_pool_seed",
        "lock_duration_seconds",
        "duplicate_lookback_days",
    )
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("price_floor")
    def validate_price_floor(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PRICE_FLOOR must be >= 1")
        return value

    @field_validator("price_growth")
    def validate_price_growth(cls, value: Decimal) -> Decimal:
        if value < 1:
            raise ValueError("PRICE_GROWTH must be >= 1")
        return value

    @field_validator("victim_share_bps", "pool_share_bps", "platform_share_bps")
    def validate_share_bps(cls, value: int) -> int:
        if value < 0 or value > BPS_DENOMINATOR:
            raise ValueError("share bps must be within [0, 10000]")
        return value

    @field_validator(
        "duplicate_block_threshold", "duplicate_warn_threshold", "duplicate_display_threshold"
    )
    def validate_threshold(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError("similarity thresholds must be within [0, 100]")
        return value

    @field_validator(
        "db_busy_timeout_ms",
        "duplicate_candidate_limit",
        "duplicate_max_matches",
        "steal_busy_max_attempts",
        "events_webhook_max_attempts",
        "events_queue_max_pending",
    )
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @model_validator(mode="after")
    def validate_cross_field(self) -> Settings:
        total = self.victim_share_bps + self.pool_share_bps + self.platform_share_bps
        if total != BPS_DENOMINATOR:
            raise ValueError(
                "VICTIM_SHARE_BPS + POOL_SHARE_BPS + PLATFORM_SHARE_BPS must equal 10000"
            )
        if self.price_ceiling < self.price_floor:
            raise ValueError("PRICE_CEILING must be >= PRICE_FLOOR")
        if self.duplicate_warn_threshold > self.duplicate_block_threshold:
            raise ValueError("DUPLICATE_WARN_THRESHOLD must be <= DUPLICATE_BLOCK_THRESHOLD")
        return self

    def pricing_policy(self) -> PricingPolicy:
        return PricingPolicy(
            curve=self.pricing_curve,
            base_price=self.base_price,
            step=self.price_step,
            growth=self.price_growth,
            floor=self.price_floor,
            ceiling=self.price_ceiling,
        )

    def split_policy(self) -> StealSplitPolicy:
        return StealSplitPolicy(
            victim_bps=self.victim_share_bps,
            pool_bps=self.pool_share_bps,
            platform_bps=self.platform_share_bps,
        )

    def lock_duration(self) -> timedelta:
        return timedelta(seconds=self.lock_duration_seconds)

    def lookback(self) -> timedelta | None:
        if self.duplicate_lookback_days == 0:
            return None
        return timedelta(days=self.duplicate_lookback_days)

    def gate_config(self) -> DuplicateGateConfig:
        return DuplicateGateConfig(
            block_threshold=self.duplicate_block_threshold,
            warn_threshold=self.duplicate_warn_threshold,
            display_threshold=self.duplicate_display_threshold,
            min_title_length=self.duplicate_min_title_length,
            lookback=self.lookback(),
            candidate_limit=self.duplicate_candidate_limit,
            max_matches=self.duplicate_max_matches,
        )
