from .action_types import action_registry  # noqa: F401 (register all actions)
from .rule_engine import RuleEngine  # noqa: F401
