from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


class CmsTier(str, Enum):
    # Values are the wire representation used by the chat protocol.
    NONE = "0"
    HEADLESS = "100000"
    TRADITIONAL = "250000"


class SelectionsError(ValueError):
    pass


DESIGN_TIER_LABELS: Mapping[int, str] = {
    1: "Template Customization",
    2: "Custom Design",
    3: "Premium Custom",
    4: "Enterprise-grade",
}

CMS_TIER_LABELS: Mapping[CmsTier, str] = {
    CmsTier.NONE: "None",
    CmsTier.HEADLESS: "Headless CMS",
    CmsTier.TRADITIONAL: "Traditional CMS",
}

# field -> (min, max); the estimator controls use the same bounds.
SELECTION_LIMITS: Mapping[str, Tuple[int, int]] = {
    "design_tier": (1, 4),
    "standard_pages": (0, 20),
    "complex_pages": (0, 20),
    "system_pages": (0, 5),
    "products": (0, 200),
    "apis": (0, 10),
}

# wire key (camelCase, as emitted by the advisor) -> Selections attribute
WIRE_KEYS: Mapping[str, str] = {
    "designTier": "design_tier",
    "standardPages": "standard_pages",
    "complexPages": "complex_pages",
    "systemPages": "system_pages",
    "cmsType": "cms_tier",
    "products": "products",
    "userAuth": "user_auth",
    "paymentGateway": "payment_gateway",
    "apis": "apis",
}

_BOOL_FIELDS = frozenset({"user_auth", "payment_gateway"})


@dataclass(frozen=True)
class Selections:
    design_tier: int = 1
    standard_pages: int = 3
    complex_pages: int = 0
    system_pages: int = 0
    cms_tier: CmsTier = CmsTier.NONE
    products: int = 0
    user_auth: bool = False
    payment_gateway: bool = False
    apis: int = 0

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for wire_key, attr in WIRE_KEYS.items():
            value = getattr(self, attr)
            out[wire_key] = value.value if isinstance(value, CmsTier) else value
        return out


DEFAULT_SELECTIONS = Selections()


@dataclass(frozen=True)
class PriceTable:
    base_fee_ngn: int
    design_unit_ngn: int
    standard_page_ngn: int
    complex_page_ngn: int
    system_page_ngn: int
    ecommerce_base_ngn: int
    per_product_ngn: int
    user_auth_ngn: int
    payment_gateway_ngn: int
    per_api_ngn: int
    cms_prices_ngn: Mapping[CmsTier, int] = field(default_factory=dict)


DEFAULT_PRICE_TABLE = PriceTable(
    base_fee_ngn=250_000,
    design_unit_ngn=100_000,
    standard_page_ngn=25_000,
    complex_page_ngn=45_000,
    system_page_ngn=90_000,
    ecommerce_base_ngn=300_000,
    per_product_ngn=5_000,
    user_auth_ngn=120_000,
    payment_gateway_ngn=150_000,
    per_api_ngn=100_000,
    cms_prices_ngn={
        CmsTier.NONE: 0,
        CmsTier.HEADLESS: 100_000,
        CmsTier.TRADITIONAL: 250_000,
    },
)


@dataclass(frozen=True)
class LineItem:
    code: str
    description: str
    amount_ngn: int


@dataclass(frozen=True)
class Milestone:
    label: str
    description: str
    fraction_bp: int
    amount_ngn: int


@dataclass(frozen=True)
class QuoteResult:
    line_items: Tuple[LineItem, ...]
    total_ngn: int
    milestones: Tuple[Milestone, ...]


# (label, description, basis points); basis points sum to 10_000.
MILESTONE_PLAN: Tuple[Tuple[str, str, int], ...] = (
    ("Initial Deposit (20%)", "Project kickoff & discovery", 2_000),
    ("Design Approval (25%)", "Final UI/UX wireframes", 2_500),
    ("Development Complete (35%)", "Core features implemented", 3_500),
    ("Final Delivery (20%)", "Deployment & handover", 2_000),
)


def validate_selections(sel: Selections) -> None:
    for name, (lo, hi) in SELECTION_LIMITS.items():
        value = getattr(sel, name)
        if isinstance(value, bool) or not isinstance(value, int) or not lo <= value <= hi:
            raise SelectionsError(f"{name} must be an integer in [{lo}, {hi}] (got {value!r})")
    if not isinstance(sel.cms_tier, CmsTier):
        raise SelectionsError(f"cms_tier must be a CmsTier (got {sel.cms_tier!r})")
    for name in _BOOL_FIELDS:
        if not isinstance(getattr(sel, name), bool):
            raise SelectionsError(f"{name} must be a boolean (got {getattr(sel, name)!r})")


def _cost_components(sel: Selections, table: PriceTable) -> Tuple[LineItem, ...]:
    """
    The additive cost components, in the fixed order the total is built from.

    Every component is present (zero-valued ones included) so the sum is always
    the full total.
    """
    ecommerce = (table.ecommerce_base_ngn if sel.products > 0 else 0) + table.per_product_ngn * sel.products
    return (
        LineItem("BASE", "Base fee", table.base_fee_ngn),
        LineItem(
            "DESIGN",
            f"Design tier {sel.design_tier} ({DESIGN_TIER_LABELS.get(sel.design_tier, '?')})",
            table.design_unit_ngn * sel.design_tier,
        ),
        LineItem(
            "PAGES",
            f"Pages ({sel.standard_pages} standard, {sel.complex_pages} complex, {sel.system_pages} system)",
            table.standard_page_ngn * sel.standard_pages
            + table.complex_page_ngn * sel.complex_pages
            + table.system_page_ngn * sel.system_pages,
        ),
        LineItem("CMS", f"CMS ({CMS_TIER_LABELS[sel.cms_tier]})", int(table.cms_prices_ngn[sel.cms_tier])),
        LineItem("ECOMMERCE", f"E-commerce ({sel.products} products)", ecommerce),
        LineItem("USER_AUTH", "User authentication", table.user_auth_ngn if sel.user_auth else 0),
        LineItem("PAYMENT_GATEWAY", "Payment gateway", table.payment_gateway_ngn if sel.payment_gateway else 0),
        LineItem("APIS", f"API integrations x{sel.apis}", table.per_api_ngn * sel.apis),
    )


def compute_total(sel: Selections, table: PriceTable = DEFAULT_PRICE_TABLE) -> int:
    return sum(li.amount_ngn for li in _cost_components(sel, table))


def split_milestones(total_ngn: int) -> Tuple[Milestone, ...]:
    """
    Split a total into the four payment phases.

    Each phase but the last is rounded half-up to the nearest naira; the last
    phase takes the remainder so the amounts always add up to the total.
    """
    if total_ngn < 0:
        raise ValueError(f"total must be >= 0 (got {total_ngn})")
    out: List[Milestone] = []
    allocated = 0
    for idx, (label, description, bp) in enumerate(MILESTONE_PLAN):
        if idx == len(MILESTONE_PLAN) - 1:
            amount = total_ngn - allocated
        else:
            amount = (total_ngn * bp + 5_000) // 10_000
        allocated += amount
        out.append(Milestone(label=label, description=description, fraction_bp=bp, amount_ngn=amount))
    return tuple(out)


def generate_quote(sel: Selections, table: PriceTable = DEFAULT_PRICE_TABLE) -> QuoteResult:
    """
    Build the itemized quote for a selection set.

    Zero-valued components are left out of the line items; the total is the
    same as `compute_total`.
    """
    validate_selections(sel)
    components = _cost_components(sel, table)
    total = sum(li.amount_ngn for li in components)
    return QuoteResult(
        line_items=tuple(li for li in components if li.amount_ngn > 0),
        total_ngn=total,
        milestones=split_milestones(total),
    )


# region patch coercion


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):  # NaN / inf
            return None
        return int(round(value))
    if isinstance(value, str):
        t = value.strip()
        try:
            return int(t)
        except ValueError:
            try:
                return _coerce_int(float(t))
            except ValueError:
                return None
    return None


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        t = value.strip().lower()
        if t in {"true", "yes", "1", "on"}:
            return True
        if t in {"false", "no", "0", "off"}:
            return False
    return None


def _coerce_cms_tier(value: Any) -> Optional[CmsTier]:
    if isinstance(value, CmsTier):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(int(value)) if float(value).is_integer() else None
    if not isinstance(value, str):
        return None
    try:
        return CmsTier(value.strip())
    except ValueError:
        return None


def coerce_selections(patch: Mapping[str, Any], base: Selections = DEFAULT_SELECTIONS) -> Selections:
    """
    Merge an untrusted wire-format patch over `base`, field by field.

    Unknown keys are ignored and unusable values leave the base value in place;
    numbers outside their range are clamped. The result is always a valid
    Selections, so this never raises for mapping input.
    """
    updates: Dict[str, Any] = {}
    for wire_key, raw in patch.items():
        attr = WIRE_KEYS.get(str(wire_key))
        if attr is None:
            continue
        if attr == "cms_tier":
            tier = _coerce_cms_tier(raw)
            if tier is not None:
                updates[attr] = tier
        elif attr in _BOOL_FIELDS:
            flag = _coerce_bool(raw)
            if flag is not None:
                updates[attr] = flag
        else:
            num = _coerce_int(raw)
            if num is not None:
                lo, hi = SELECTION_LIMITS[attr]
                updates[attr] = max(lo, min(hi, num))
    return replace(base, **updates)


def merge_patch(patch: Mapping[str, Any]) -> Selections:
    """An advisor patch always lands on a fresh default record, never on the current state."""
    return coerce_selections(patch, DEFAULT_SELECTIONS)


# endregion patch coercion


def changed_fields(old: Selections, new: Selections) -> FrozenSet[str]:
    attr_to_wire = {attr: wire for wire, attr in WIRE_KEYS.items()}
    return frozenset(
        attr_to_wire[f.name] for f in fields(Selections) if getattr(old, f.name) != getattr(new, f.name)
    )


def describe_scope(sel: Selections) -> List[str]:
    """Human-readable scope lines; zero/None features are left out."""
    lines = [f"Design Tier: {DESIGN_TIER_LABELS[sel.design_tier]}"]
    if sel.standard_pages > 0:
        lines.append(f"Standard Pages: {sel.standard_pages}")
    if sel.complex_pages > 0:
        lines.append(f"Complex Pages: {sel.complex_pages}")
    if sel.system_pages > 0:
        lines.append(f"System Pages: {sel.system_pages}")
    if sel.cms_tier != CmsTier.NONE:
        lines.append(f"CMS: {CMS_TIER_LABELS[sel.cms_tier]}")
    if sel.products > 0:
        lines.append(f"E-commerce Products: {sel.products}")
    features = []
    if sel.user_auth:
        features.append("User Authentication")
    if sel.payment_gateway:
        features.append("Payment Gateway")
    if features:
        lines.append(f"Additional Features: {', '.join(features)}")
    if sel.apis > 0:
        lines.append(f"API Integrations: {sel.apis}")
    return lines
