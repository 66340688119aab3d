"""Regional compliance configuration with regulator references.

Each supported region carries its own reporting thresholds, submission
deadlines, screening sources and business-day calendar. Tenants pick a
region and may override any value through their stored settings.

References:
- AML/CTF Act 2006 (Cth) s43: Threshold transaction reports (AUSTRAC)
- AML/CTF Act 2006 (Cth) s41: Suspicious matter reports, 3 business days
  (24 hours where the suspicion relates to terrorism financing)
- AML/CFT Act 2009 (NZ) s48A: Prescribed transaction reports
- 31 CFR § 1010.311: Currency transaction reports (FinCEN)
- MLR 2017 (UK) reg. 33: Enhanced customer due diligence
- FATF public statement: High-risk and increased-monitoring jurisdictions
"""

import copy
import os
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import structlog

from .exceptions import InvalidConfigError, TenantNotFoundError
from .store import ComplianceStore

logger = structlog.get_logger()

# FATF "call for action" jurisdictions
FATF_HIGH_RISK_COUNTRIES = ["IR", "KP", "MM"]

# FATF jurisdictions under increased monitoring
FATF_INCREASED_MONITORING = [
    "BF", "CM", "CD", "HT", "KE", "ML", "MZ", "NG",
    "PH", "SN", "ZA", "SS", "SY", "TZ", "VN", "YE",
]

DEFAULT_REGION = "AU"

_FIXED_HOLIDAY = re.compile(r"^FIXED:(\d{2})-(\d{2})$")


@dataclass
class AmountRange:
    """Half-open amount band [min, max)."""

    min: float
    max: float


@dataclass
class RegionalThresholds:
    """Monetary thresholds in the region's local currency."""

    # Threshold transaction report trigger: AUSTRAC TTR is A$10,000 cash
    ttr_required: float = 10_000.0

    # Identity verification required above this cumulative amount
    kyc_required: float = 5_000.0

    # Enhanced due diligence trigger
    enhanced_dd_required: float = 50_000.0

    # Structuring lookback in calendar days
    structuring_window_days: int = 7

    # Transactions inside the band before band clustering fires
    structuring_min_tx_count: int = 3

    structuring_amount_range: AmountRange = field(
        default_factory=lambda: AmountRange(min=7_000.0, max=9_999.0)
    )

    # International funds transfer instruction reporting floor; 0 reports all
    international_transfer: float = 0.0


@dataclass
class DeadlineLengths:
    ttr_submission: int = 10  # business days
    smr_submission: int = 3  # business days
    smr_urgent_hours: int = 24  # calendar hours, terrorism financing
    ifti_submission: int = 10  # business days


@dataclass
class RegionalConfig:
    """Everything the decision core needs to know about a jurisdiction."""

    thresholds: RegionalThresholds = field(default_factory=RegionalThresholds)
    deadlines: DeadlineLengths = field(default_factory=DeadlineLengths)

    screening_sources: list[str] = field(default_factory=lambda: ["DFAT", "UN"])
    high_risk_countries: list[str] = field(
        default_factory=lambda: FATF_HIGH_RISK_COUNTRIES + FATF_INCREASED_MONITORING
    )

    # Holiday patterns: FIXED:MM-DD, EASTER_FRIDAY, EASTER_MONDAY,
    # EASTER_SUNDAY or {FIRST..FOURTH,LAST}_{DOW}_{MON}
    holidays: list[str] = field(default_factory=list)

    # 0=Sunday ... 6=Saturday
    workweek: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    timezone: str = "Australia/Sydney"

    currency: str = "AUD"
    currency_symbol: str = "$"
    regulator: str = "AUSTRAC"

    def validate(self) -> "RegionalConfig":
        """Reject configurations the calendar and detectors cannot work with."""
        if not self.workweek:
            raise InvalidConfigError("workweek must contain at least one day")
        if any(d < 0 or d > 6 for d in self.workweek):
            raise InvalidConfigError(f"workweek days must be 0-6, got {self.workweek}")

        band = self.thresholds.structuring_amount_range
        if band.min >= band.max:
            raise InvalidConfigError(
                f"structuring band min {band.min} must be below max {band.max}"
            )
        if self.thresholds.structuring_window_days <= 0:
            raise InvalidConfigError("structuring window must be positive")

        for pattern in self.holidays:
            if pattern.startswith("FIXED:"):
                match = _FIXED_HOLIDAY.match(pattern)
                if not match:
                    raise InvalidConfigError(f"malformed fixed holiday {pattern!r}")
                month, day = int(match.group(1)), int(match.group(2))
                if not (1 <= month <= 12 and 1 <= day <= 31):
                    raise InvalidConfigError(f"malformed fixed holiday {pattern!r}")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegionalConfig":
        thresholds = dict(data.get("thresholds", {}))
        if isinstance(band := thresholds.get("structuring_amount_range"), dict):
            thresholds["structuring_amount_range"] = AmountRange(**band)
        known = {f.name for f in fields(cls)} - {"thresholds", "deadlines"}
        return cls(
            thresholds=RegionalThresholds(**thresholds),
            deadlines=DeadlineLengths(**data.get("deadlines", {})),
            **{k: v for k, v in data.items() if k in known},
        )

    @classmethod
    def from_env(cls, region: str = DEFAULT_REGION) -> "RegionalConfig":
        """Start from a regional preset and apply COMPLIANCE_* overrides."""
        preset = REGIONAL_CONFIGS.get(region.upper(), REGIONAL_CONFIGS[DEFAULT_REGION])
        config = copy.deepcopy(preset)
        if v := os.environ.get("COMPLIANCE_TTR_THRESHOLD"):
            config.thresholds.ttr_required = float(v)
        if v := os.environ.get("COMPLIANCE_KYC_THRESHOLD"):
            config.thresholds.kyc_required = float(v)
        if v := os.environ.get("COMPLIANCE_EDD_THRESHOLD"):
            config.thresholds.enhanced_dd_required = float(v)
        if v := os.environ.get("COMPLIANCE_STRUCTURING_WINDOW_DAYS"):
            config.thresholds.structuring_window_days = int(v)
        if v := os.environ.get("COMPLIANCE_TIMEZONE"):
            config.timezone = v
        return config.validate()


# ---------------------------------------------------------------------------
# Regional presets
# ---------------------------------------------------------------------------

REGIONAL_CONFIGS: dict[str, RegionalConfig] = {
    # Australia (AUSTRAC)
    "AU": RegionalConfig(
        holidays=[
            "FIXED:01-01",
            "FIXED:01-26",
            "EASTER_FRIDAY",
            "EASTER_MONDAY",
            "FIXED:04-25",
            "FIXED:12-25",
            "FIXED:12-26",
        ],
    ),
    # New Zealand (FIU)
    "NZ": RegionalConfig(
        thresholds=RegionalThresholds(international_transfer=1_000.0),
        screening_sources=["UN", "NZ_DIA"],
        holidays=[
            "FIXED:01-01",
            "FIXED:02-06",
            "EASTER_FRIDAY",
            "EASTER_MONDAY",
            "FIXED:04-25",
            "FIXED:12-25",
            "FIXED:12-26",
        ],
        timezone="Pacific/Auckland",
        currency="NZD",
        regulator="NZ_FIU",
    ),
    # United Kingdom (FCA / NCA)
    "GB": RegionalConfig(
        thresholds=RegionalThresholds(
            kyc_required=1_000.0,
            enhanced_dd_required=25_000.0,
            structuring_amount_range=AmountRange(min=8_000.0, max=10_000.0),
            international_transfer=1_000.0,
        ),
        deadlines=DeadlineLengths(ttr_submission=14, smr_submission=7, ifti_submission=14),
        screening_sources=["UK_HMT", "OFSI", "UN", "EU"],
        holidays=[
            "FIXED:01-01",
            "EASTER_FRIDAY",
            "EASTER_MONDAY",
            "FIRST_MON_MAY",
            "LAST_MON_MAY",
            "LAST_MON_AUG",
            "FIXED:12-25",
            "FIXED:12-26",
        ],
        timezone="Europe/London",
        currency="GBP",
        currency_symbol="£",
        regulator="FCA",
    ),
    # United States (FinCEN)
    "US": RegionalConfig(
        thresholds=RegionalThresholds(
            kyc_required=3_000.0,
            enhanced_dd_required=25_000.0,
            structuring_amount_range=AmountRange(min=8_000.0, max=10_000.0),
            international_transfer=3_000.0,
        ),
        deadlines=DeadlineLengths(ttr_submission=15, smr_submission=30, ifti_submission=15),
        screening_sources=["OFAC", "UN"],
        holidays=[
            "FIXED:01-01",
            "THIRD_MON_JAN",
            "THIRD_MON_FEB",
            "LAST_MON_MAY",
            "FIXED:07-04",
            "FIRST_MON_SEP",
            "FOURTH_THU_NOV",
            "FIXED:12-25",
        ],
        timezone="America/New_York",
        currency="USD",
        regulator="FinCEN",
    ),
    # European Union (AMLD)
    "EU": RegionalConfig(
        thresholds=RegionalThresholds(
            kyc_required=1_000.0,
            enhanced_dd_required=15_000.0,
            structuring_amount_range=AmountRange(min=8_000.0, max=10_000.0),
            international_transfer=1_000.0,
        ),
        deadlines=DeadlineLengths(ttr_submission=14, smr_submission=7, ifti_submission=14),
        screening_sources=["EU_SANCTIONS", "UN"],
        holidays=[],
        timezone="Europe/Brussels",
        currency="EUR",
        currency_symbol="€",
        regulator="AMLD",
    ),
    # Singapore (MAS); lunar holidays are not computed and never match
    "SG": RegionalConfig(
        thresholds=RegionalThresholds(
            ttr_required=20_000.0,
            kyc_required=5_000.0,
            enhanced_dd_required=50_000.0,
            structuring_amount_range=AmountRange(min=15_000.0, max=20_000.0),
            international_transfer=5_000.0,
        ),
        deadlines=DeadlineLengths(ttr_submission=15, smr_submission=15, ifti_submission=15),
        screening_sources=["UN", "MAS_SANCTIONS"],
        holidays=[
            "FIXED:01-01",
            "CHINESE_NEW_YEAR_1",
            "CHINESE_NEW_YEAR_2",
            "EASTER_FRIDAY",
            "FIXED:05-01",
            "VESAK_DAY",
            "HARI_RAYA_PUASA",
            "FIXED:08-09",
            "HARI_RAYA_HAJI",
            "DEEPAVALI",
            "FIXED:12-25",
        ],
        timezone="Asia/Singapore",
        currency="SGD",
        regulator="MAS",
    ),
}

# UK is accepted as an alias for GB
REGIONAL_CONFIGS["UK"] = REGIONAL_CONFIGS["GB"]


# ---------------------------------------------------------------------------
# Tenant overrides
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# Stored tenant settings use the dashboard's key names for a few fields
_KEY_ALIASES = {
    "structuring_window": "structuring_window_days",
    "smr_urgent": "smr_urgent_hours",
}


def _snake(key: str) -> str:
    snake = _CAMEL_BOUNDARY.sub("_", key).lower()
    return _KEY_ALIASES.get(snake, snake)


def _normalize_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_snake(k): _normalize_keys(v) for k, v in value.items()}
    return value


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_tenant_config(
    region: str | None,
    tenant_settings: dict[str, Any] | None = None,
    default_region: str = DEFAULT_REGION,
) -> RegionalConfig:
    """Resolve a tenant's effective configuration.

    A missing region resolves to ``default_region``; an unknown one falls
    back to ``default_region`` too, or to AU when that is unknown as well.
    Tenant settings are deep-merged over the regional preset and may use
    camelCase or snake_case keys; keys the core does not know about are
    ignored.
    """
    fallback_region = default_region.upper()
    if fallback_region not in REGIONAL_CONFIGS:
        fallback_region = DEFAULT_REGION
    preset = REGIONAL_CONFIGS.get((region or fallback_region).upper())
    if preset is None:
        logger.warning("unknown_region_fallback", region=region, fallback=fallback_region)
        preset = REGIONAL_CONFIGS[fallback_region]

    if not tenant_settings:
        return copy.deepcopy(preset)

    merged = _deep_merge(preset.to_dict(), _normalize_keys(tenant_settings))
    known_thresholds = {f.name for f in fields(RegionalThresholds)}
    known_deadlines = {f.name for f in fields(DeadlineLengths)}
    merged["thresholds"] = {
        k: v for k, v in merged["thresholds"].items() if k in known_thresholds
    }
    merged["deadlines"] = {k: v for k, v in merged["deadlines"].items() if k in known_deadlines}
    try:
        return RegionalConfig.from_dict(merged).validate()
    except TypeError as exc:
        raise InvalidConfigError(f"invalid tenant settings: {exc}") from exc


def is_high_risk_country(country_code: str, config: RegionalConfig) -> bool:
    return country_code.upper() in config.high_risk_countries


class RegionalConfigProvider:
    """Resolves and caches tenant configurations for one run.

    A provider is created per batch or deadline invocation so settings
    changed between runs are always picked up.
    """

    def __init__(self, store: ComplianceStore, default_region: str = DEFAULT_REGION) -> None:
        self._store = store
        self.default_region = default_region
        self._cache: dict[str, RegionalConfig] = {}

    async def for_tenant(self, tenant_id: str) -> RegionalConfig:
        if tenant_id in self._cache:
            return self._cache[tenant_id]

        tenant = await self._store.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        config = get_tenant_config(tenant.region, tenant.settings, self.default_region)
        self._cache[tenant_id] = config
        return config
