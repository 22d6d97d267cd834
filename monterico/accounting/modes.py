"""
Accounting-Mode Policy

All mode-specific behavior of the two accounting modes lives here, so
the rest of the code asks "is this feature on?" instead of branching on
the mode name.

DESIGN DECISION: One frozen config per AccountingMode member, checked
for completeness when this module is imported. Adding a third mode
without a config makes the import fail instead of silently falling back
to one of the existing modes.
"""

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from monterico.errors import ValidationError
from monterico.models.ledger import AccountingMode, ExpenseType, SplitType


# =============================================================================
# CONFIG MODELS
# =============================================================================

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ModeEndpoints(_Frozen):
    expenses: str
    income: str


class ModeFeatures(_Frozen):
    expense_splits: bool
    personal_allowances: bool
    pool_balance: bool
    reimbursements: bool
    budgets: bool
    user_ratios: bool


class ModeUI(_Frozen):
    show_split_type_selector: bool
    show_paid_from_pool_checkbox: bool
    show_balance_cards: bool
    show_pool_summary: bool
    show_reimbursement_button: bool
    expense_list_component: Literal["individual", "shared-pool"]


class ExpenseFormConfig(_Frozen):
    """Which expense fields a mode needs."""

    required_fields: tuple[str, ...] = Field(
        ...,
        description="Fields that must be present and non-empty"
    )
    required_flags: tuple[str, ...] = Field(
        default=(),
        description="Boolean fields that must be present (False is a valid answer)"
    )
    optional_fields: tuple[str, ...] = ()
    split_types: tuple[SplitType, ...] = ()


class ModeConfig(_Frozen):
    mode: AccountingMode
    display_name: str
    description: str
    route_slug: str
    endpoints: ModeEndpoints
    features: ModeFeatures
    ui: ModeUI
    expense_form: ExpenseFormConfig


class ModeValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise ValidationError("; ".join(self.errors), errors=self.errors)


# =============================================================================
# MODE CONFIGS
# =============================================================================

_COMMON_REQUIRED = ("date", "description", "category_id", "amount", "paid_by_id", "type")

INDIVIDUAL_MODE_CONFIG = ModeConfig(
    mode=AccountingMode.INDIVIDUAL,
    display_name="Individual Accounts",
    description="Track expenses with individual account splits",
    route_slug="individual",
    endpoints=ModeEndpoints(
        expenses="/api/expenses/individual",
        income="/api/income",
    ),
    features=ModeFeatures(
        expense_splits=True,
        personal_allowances=False,
        pool_balance=False,
        reimbursements=False,
        budgets=False,
        user_ratios=True,
    ),
    ui=ModeUI(
        show_split_type_selector=True,
        show_paid_from_pool_checkbox=False,
        show_balance_cards=True,
        show_pool_summary=False,
        show_reimbursement_button=False,
        expense_list_component="individual",
    ),
    expense_form=ExpenseFormConfig(
        required_fields=_COMMON_REQUIRED,
        optional_fields=("split_type", "custom_splits"),
        split_types=(SplitType.EQUAL, SplitType.RATIO, SplitType.CUSTOM),
    ),
)

SHARED_POOL_MODE_CONFIG = ModeConfig(
    mode=AccountingMode.SHARED_POOL,
    display_name="Shared Pool",
    description="Manage expenses from a shared pool with personal allowances",
    route_slug="shared-pool",
    endpoints=ModeEndpoints(
        expenses="/api/expenses/shared-pool",
        income="/api/income/shared-pool",
    ),
    features=ModeFeatures(
        expense_splits=False,
        personal_allowances=True,
        pool_balance=True,
        reimbursements=True,
        budgets=False,
        user_ratios=False,
    ),
    ui=ModeUI(
        show_split_type_selector=False,
        show_paid_from_pool_checkbox=True,
        show_balance_cards=False,
        show_pool_summary=True,
        show_reimbursement_button=True,
        expense_list_component="shared-pool",
    ),
    expense_form=ExpenseFormConfig(
        required_fields=_COMMON_REQUIRED,
        required_flags=("paid_from_pool",),
    ),
)

MODE_CONFIGS: dict[AccountingMode, ModeConfig] = {
    AccountingMode.INDIVIDUAL: INDIVIDUAL_MODE_CONFIG,
    AccountingMode.SHARED_POOL: SHARED_POOL_MODE_CONFIG,
}

_missing = [mode.value for mode in AccountingMode if mode not in MODE_CONFIGS]
if _missing:
    raise RuntimeError(f"No accounting mode config for: {', '.join(_missing)}")


# =============================================================================
# LOOKUPS
# =============================================================================

def get_mode_config(mode: AccountingMode | str) -> ModeConfig:
    try:
        return MODE_CONFIGS[AccountingMode(mode)]
    except ValueError:
        raise ValidationError(f"Unknown accounting mode: {mode}")


def is_feature_enabled(mode: AccountingMode | str, feature: str) -> bool:
    features = get_mode_config(mode).features
    if feature not in ModeFeatures.model_fields:
        raise ValidationError(f"Unknown feature: {feature}")
    return getattr(features, feature)


def get_endpoint(mode: AccountingMode | str, resource: Literal["expenses", "income"]) -> str:
    endpoints = get_mode_config(mode).endpoints
    if resource not in ModeEndpoints.model_fields:
        raise ValidationError(f"Unknown resource: {resource}")
    return getattr(endpoints, resource)


def should_show_ui_element(mode: AccountingMode | str, element: str) -> bool:
    ui = get_mode_config(mode).ui
    if element not in ModeUI.model_fields:
        raise ValidationError(f"Unknown UI element: {element}")
    return bool(getattr(ui, element))


def get_mode_route_path(
    mode: AccountingMode | str,
    base_path: Literal["expenses", "overview", "income"],
) -> str:
    """e.g. ("shared_pool", "expenses") -> "/expenses/shared-pool"."""
    return f"/{base_path}/{get_mode_config(mode).route_slug}"


def validate_expense_data(
    mode: AccountingMode | str,
    data: Mapping[str, Any],
) -> ModeValidationResult:
    """
    Check an expense payload has everything its mode needs.

    Only presence is checked here. Types and ranges are checked when
    the payload is parsed into an ExpenseCreate.
    """
    config = get_mode_config(mode)
    errors: list[str] = []

    for field in config.expense_form.required_fields:
        if not data.get(field):
            errors.append(f"{field} is required")

    for flag in config.expense_form.required_flags:
        if data.get(flag) is None:
            errors.append(f"{flag} is required")

    if config.features.expense_splits and data.get("type") == ExpenseType.SHARED.value:
        split_type = data.get("split_type")
        custom_splits = data.get("custom_splits")
        if not split_type and not custom_splits:
            errors.append("split_type or custom_splits is required for a shared expense")
        elif split_type == SplitType.CUSTOM.value and not custom_splits:
            errors.append("Custom splits are required when split type is custom")

    return ModeValidationResult(valid=not errors, errors=errors)
