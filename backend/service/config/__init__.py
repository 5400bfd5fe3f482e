"""
Configuration Package.

Registered dataclass configs.  Importing this package registers every
sub-config with the config registry.
"""

from service.config.base import (
    BaseConfig,
    ConfigField,
    FieldType,
    get_config,
    list_registered_configs,
    register_config,
    reset_config,
)
from service.config.sub_config.general.workflow_config import WorkflowEditorConfig

__all__ = [
    "BaseConfig",
    "ConfigField",
    "FieldType",
    "get_config",
    "list_registered_configs",
    "register_config",
    "reset_config",
    "WorkflowEditorConfig",
]
