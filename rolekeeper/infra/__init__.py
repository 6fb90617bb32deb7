"""Infrastructure utilities for the role keeper."""
from .config import (
    BotConfig,
    RoleChoice,
    StorageConfig,
    TimedRoleConfig,
    get_config,
    parse_role_choices,
    reset_config,
    set_config,
)
from .lanes import SubjectLanes
from .logging import get_logger, log_errors, structured_log
from .retries import call_with_backoff, is_transient

__all__ = [
    # Configuration
    "BotConfig",
    "RoleChoice",
    "StorageConfig",
    "TimedRoleConfig",
    "get_config",
    "parse_role_choices",
    "reset_config",
    "set_config",
    # Concurrency
    "SubjectLanes",
    # Logging
    "get_logger",
    "log_errors",
    "structured_log",
    # Retries
    "call_with_backoff",
    "is_transient",
]
