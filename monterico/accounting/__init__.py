"""
Accounting Package

The split calculator, the mode policy and the two accounting engines.
"""

from monterico.accounting.individual import IndividualAccountsEngine
from monterico.accounting.modes import (
    MODE_CONFIGS,
    ModeConfig,
    ModeValidationResult,
    get_endpoint,
    get_mode_config,
    get_mode_route_path,
    is_feature_enabled,
    should_show_ui_element,
    validate_expense_data,
)
from monterico.accounting.shared_pool import SharedPoolEngine, allowance_portion
from monterico.accounting.splits import calculate_splits

__all__ = [
    "IndividualAccountsEngine",
    "SharedPoolEngine",
    "allowance_portion",
    "calculate_splits",
    # Mode policy
    "MODE_CONFIGS",
    "ModeConfig",
    "ModeValidationResult",
    "get_endpoint",
    "get_mode_config",
    "get_mode_route_path",
    "is_feature_enabled",
    "should_show_ui_element",
    "validate_expense_data",
]
