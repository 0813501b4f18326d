"""Static provider-policy catalog, keyed by jurisdiction.

Pure data. The orchestrator receives a PolicyCatalog at construction and
looks candidates up per session; an unsupported jurisdiction returns None
and the score stage fails terminally.

Usage:
    catalog = PolicyCatalog.default()
    candidates = catalog.for_jurisdiction("AU")
"""

from __future__ import annotations

from src.models.enums import ExcessCategory, PolicyTier, PolicyType, PremiumCategory
from src.schemas.session import PolicyFeatures, PremiumRange, PriceBand, ProviderPolicy


def _premiums(single: tuple[int, int], couple: tuple[int, int], family: tuple[int, int]) -> PremiumRange:
    return PremiumRange(
        single=PriceBand(min=single[0], max=single[1]),
        couple=PriceBand(min=couple[0], max=couple[1]),
        family=PriceBand(min=family[0], max=family[1]),
    )


# ── Australia ────────────────────────────────────────────────────────

AU_POLICIES: tuple[ProviderPolicy, ...] = (
    ProviderPolicy(
        id="hcf_silver_plus",
        provider_code="HCF",
        provider_name="HCF Health Insurance",
        policy_name="Silver Plus",
        policy_type=PolicyType.COMBINED,
        policy_tier=PolicyTier.SILVER,
        premium_range=_premiums((300, 400), (600, 800), (900, 1200)),
        features=PolicyFeatures(
            policy_type=PolicyType.COMBINED,
            policy_tier=PolicyTier.SILVER,
            premium_category=PremiumCategory.FROM_400_TO_600,
            excess_category=ExcessCategory.UNDER_500,
            hospital_features=["private_hospital", "choice_of_doctor", "emergency_ambulance"],
            extras_features=["general_dental", "optical", "physiotherapy"],
            waiting_periods={"hospital_services": "12 months", "extras_services": "2 months"},
            exclusions=["cosmetic_surgery"],
            conditions=["excess_applies"],
        ),
        website_url="https://www.hcf.com.au",
        contact_phone="1300 642 642",
    ),
    ProviderPolicy(
        id="medibank_silver",
        provider_code="MEDIBANK",
        provider_name="Medibank",
        policy_name="Silver",
        policy_type=PolicyType.COMBINED,
        policy_tier=PolicyTier.SILVER,
        premium_range=_premiums((280, 380), (560, 760), (840, 1140)),
        features=PolicyFeatures(
            policy_type=PolicyType.COMBINED,
            policy_tier=PolicyTier.SILVER,
            premium_category=PremiumCategory.FROM_200_TO_400,
            excess_category=ExcessCategory.FROM_500_TO_1000,
            hospital_features=["private_hospital", "day_surgery", "emergency_ambulance"],
            extras_features=["general_dental", "major_dental", "optical", "physiotherapy"],
            waiting_periods={"hospital_services": "12 months", "extras_services": "2 months"},
            exclusions=["experimental_treatments"],
            conditions=["annual_limits"],
        ),
        website_url="https://www.medibank.com.au",
        contact_phone="1300 644 648",
    ),
    ProviderPolicy(
        id="bupa_silver_plus",
        provider_code="BUPA",
        provider_name="Bupa Australia",
        policy_name="Silver Plus",
        policy_type=PolicyType.COMBINED,
        policy_tier=PolicyTier.SILVER,
        premium_range=_premiums((320, 420), (640, 840), (960, 1260)),
        features=PolicyFeatures(
            policy_type=PolicyType.COMBINED,
            policy_tier=PolicyTier.SILVER,
            premium_category=PremiumCategory.FROM_400_TO_600,
            excess_category=ExcessCategory.UNDER_500,
            hospital_features=["private_hospital", "choice_of_doctor", "accommodation", "emergency_ambulance"],
            extras_features=["general_dental", "major_dental", "optical", "physiotherapy", "psychology"],
            waiting_periods={"hospital_services": "12 months", "extras_services": "2 months"},
            exclusions=["cosmetic_surgery", "experimental_treatments"],
            conditions=["excess_applies", "session_limits"],
        ),
        website_url="https://www.bupa.com.au",
        contact_phone="1300 888 299",
    ),
)

# ── New Zealand ──────────────────────────────────────────────────────

NZ_POLICIES: tuple[ProviderPolicy, ...] = (
    ProviderPolicy(
        id="southern_cross_wellbeing_one",
        provider_code="SOUTHERN_CROSS",
        provider_name="Southern Cross Health Insurance",
        policy_name="Wellbeing One",
        policy_type=PolicyType.HOSPITAL,
        policy_tier=PolicyTier.SILVER,
        premium_range=_premiums((150, 250), (300, 500), (450, 750)),
        features=PolicyFeatures(
            policy_type=PolicyType.HOSPITAL,
            policy_tier=PolicyTier.SILVER,
            premium_category=PremiumCategory.FROM_200_TO_400,
            excess_category=ExcessCategory.UNDER_500,
            hospital_features=["private_hospital", "day_surgery", "specialist_consultations"],
            waiting_periods={"hospital_services": "3 months"},
            exclusions=["cosmetic_surgery"],
            conditions=["excess_applies"],
        ),
        website_url="https://www.southerncross.co.nz",
        contact_phone="0800 800 181",
    ),
    ProviderPolicy(
        id="nib_nz_ultimate",
        provider_code="NIB_NZ",
        provider_name="nib New Zealand",
        policy_name="Ultimate Health",
        policy_type=PolicyType.COMBINED,
        policy_tier=PolicyTier.GOLD,
        premium_range=_premiums((350, 500), (700, 1000), (1050, 1500)),
        features=PolicyFeatures(
            policy_type=PolicyType.COMBINED,
            policy_tier=PolicyTier.GOLD,
            premium_category=PremiumCategory.OVER_600,
            excess_category=ExcessCategory.NONE,
            hospital_features=["private_hospital", "choice_of_doctor", "day_surgery", "specialist_consultations"],
            extras_features=["general_dental", "optical", "physiotherapy"],
            waiting_periods={"hospital_services": "3 months", "extras_services": "3 months"},
            exclusions=["experimental_treatments"],
            conditions=["annual_limits"],
        ),
        website_url="https://www.nib.co.nz",
        contact_phone="0800 123 642",
    ),
)


class PolicyCatalog:
    """Read-only lookup of candidate policies per jurisdiction code."""

    def __init__(self, policies: dict[str, tuple[ProviderPolicy, ...]]) -> None:
        self._policies = {code.upper(): tuple(items) for code, items in policies.items()}

    @classmethod
    def default(cls) -> PolicyCatalog:
        return cls({"AU": AU_POLICIES, "NZ": NZ_POLICIES})

    @property
    def jurisdictions(self) -> frozenset[str]:
        return frozenset(self._policies)

    def supports(self, jurisdiction: str) -> bool:
        return jurisdiction.upper() in self._policies

    def for_jurisdiction(self, jurisdiction: str) -> tuple[ProviderPolicy, ...] | None:
        """Candidates for a jurisdiction, or None when it is not covered."""
        return self._policies.get(jurisdiction.upper())
