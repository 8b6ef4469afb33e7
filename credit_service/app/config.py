from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_FILE_NAME = "config.yaml"

PADDLE_API_BASE_URLS = {
    "sandbox": "https://sandbox-api.paddle.com",
    "production": "https://api.paddle.com",
}


@dataclass(slots=True)
class PriceConfig:
    price_id: str
    billing_cycle: str  # "monthly" | "annual"
    credits: int


@dataclass(slots=True)
class PlanConfig:
    tier: str
    name: str
    product_id: str
    monthly_credits: int
    prices: list[PriceConfig]


@dataclass(slots=True)
class AddonConfig:
    name: str
    product_id: str
    price_id: str
    credits_per_unit: int


@dataclass(slots=True)
class BillingConfig:
    plans: list[PlanConfig]
    addon: AddonConfig | None
    tier_levels: dict[str, int]


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0


@dataclass(slots=True)
class ReconciliationConfig:
    stale_after_seconds: int = 3600
    snapshot_fresh_seconds: int = 300


@dataclass(slots=True)
class CreditsConfig:
    monthly_credit_interval_days: int = 30
    retry: RetryConfig = field(default_factory=RetryConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)


@dataclass(slots=True)
class AppConfig:
    """credit-service 전체 설정 루트."""

    billing: BillingConfig
    credits: CreditsConfig


@dataclass(slots=True)
class PaddleSettings:
    """환경 변수로 주입되는 Paddle 연동 설정."""

    api_key: str | None
    webhook_secret: str | None
    environment: str

    @property
    def api_base_url(self) -> str:
        return PADDLE_API_BASE_URLS[self.environment]


def _find_config_path() -> Path:
    """현재 작업 디렉토리 기준으로 상위로 올라가며 config.yaml 을 찾는다."""

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / DEFAULT_CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate

    raise RuntimeError(
        f"{DEFAULT_CONFIG_FILE_NAME} not found. Place config.yaml in project root.",
    )


def _as_int(raw: Any, key: str, path: Path) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(f"invalid {key} in {path}: {raw!r}") from exc


def _as_float(raw: Any, key: str, path: Path) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(f"invalid {key} in {path}: {raw!r}") from exc


def _parse_billing(data: dict[str, Any], path: Path) -> BillingConfig:
    billing = data.get("billing") or {}

    plans: list[PlanConfig] = []
    for item in billing.get("plans") or []:
        if not isinstance(item, dict):
            continue
        tier = str(item.get("tier", "")).strip()
        product_id = str(item.get("product_id", "")).strip()
        if not tier or not product_id:
            raise RuntimeError(f"billing.plans entry needs tier and product_id in {path}")

        prices: list[PriceConfig] = []
        for price in item.get("prices") or []:
            cycle = str(price.get("billing_cycle", "monthly")).strip()
            if cycle not in ("monthly", "annual"):
                raise RuntimeError(
                    f"invalid billing.plans[{tier}].billing_cycle in {path}: {cycle!r}"
                )
            prices.append(
                PriceConfig(
                    price_id=str(price["price_id"]).strip(),
                    billing_cycle=cycle,
                    credits=_as_int(price.get("credits"), f"billing.plans[{tier}].credits", path),
                )
            )

        plans.append(
            PlanConfig(
                tier=tier,
                name=str(item.get("name") or tier.title()),
                product_id=product_id,
                monthly_credits=_as_int(
                    item.get("monthly_credits", 0), f"billing.plans[{tier}].monthly_credits", path
                ),
                prices=prices,
            )
        )

    addon: AddonConfig | None = None
    raw_addon = billing.get("addon")
    if isinstance(raw_addon, dict):
        addon = AddonConfig(
            name=str(raw_addon.get("name") or "Credit Add-on"),
            product_id=str(raw_addon.get("product_id", "")).strip(),
            price_id=str(raw_addon.get("price_id", "")).strip(),
            credits_per_unit=_as_int(
                raw_addon.get("credits_per_unit", 0), "billing.addon.credits_per_unit", path
            ),
        )

    tier_levels = {
        str(tier): _as_int(level, f"billing.tier_levels.{tier}", path)
        for tier, level in (billing.get("tier_levels") or {}).items()
    }

    return BillingConfig(plans=plans, addon=addon, tier_levels=tier_levels)


def _parse_credits(data: dict[str, Any], path: Path) -> CreditsConfig:
    credits = data.get("credits") or {}
    retry = credits.get("retry") or {}
    reconciliation = credits.get("reconciliation") or {}

    retry_config = RetryConfig(
        max_attempts=_as_int(retry.get("max_attempts", 3), "credits.retry.max_attempts", path),
        base_delay_seconds=_as_float(
            retry.get("base_delay_seconds", 0.05), "credits.retry.base_delay_seconds", path
        ),
        max_delay_seconds=_as_float(
            retry.get("max_delay_seconds", 1.0), "credits.retry.max_delay_seconds", path
        ),
    )
    if retry_config.max_attempts < 1:
        raise RuntimeError(f"credits.retry.max_attempts must be >= 1 in {path}")

    return CreditsConfig(
        monthly_credit_interval_days=_as_int(
            credits.get("monthly_credit_interval_days", 30),
            "credits.monthly_credit_interval_days",
            path,
        ),
        retry=retry_config,
        reconciliation=ReconciliationConfig(
            stale_after_seconds=_as_int(
                reconciliation.get("stale_after_seconds", 3600),
                "credits.reconciliation.stale_after_seconds",
                path,
            ),
            snapshot_fresh_seconds=_as_int(
                reconciliation.get("snapshot_fresh_seconds", 300),
                "credits.reconciliation.snapshot_fresh_seconds",
                path,
            ),
        ),
    )


def load_config(path: Path | None = None) -> AppConfig:
    """config.yaml 을 읽어 AppConfig 로 반환한다."""

    path = path or _find_config_path()
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(
        billing=_parse_billing(data, path),
        credits=_parse_credits(data, path),
    )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    return load_config()


def load_paddle_settings() -> PaddleSettings:
    environment = os.getenv("PADDLE_ENVIRONMENT", "sandbox").strip().lower() or "sandbox"
    if environment not in PADDLE_API_BASE_URLS:
        raise RuntimeError(
            f"PADDLE_ENVIRONMENT must be one of {sorted(PADDLE_API_BASE_URLS)}, got: {environment!r}"
        )
    return PaddleSettings(
        api_key=os.getenv("PADDLE_API_KEY") or None,
        webhook_secret=os.getenv("PADDLE_WEBHOOK_SECRET") or None,
        environment=environment,
    )
