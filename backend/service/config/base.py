"""
Config Base — registered dataclass configurations.

Each sub-config is a ``@dataclass`` deriving from ``BaseConfig`` and
decorated with ``@register_config``.  Defaults come from the
environment (see ``env_utils.read_env_defaults``); field metadata
describes how the settings page renders each value.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from logging import getLogger
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

logger = getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")


class FieldType(str, Enum):
    """How a config field is edited in the settings UI."""
    STRING = "string"
    PASSWORD = "password"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    URL = "url"
    PATH = "path"


@dataclass
class ConfigField:
    """UI / validation metadata for one config field."""
    name: str
    field_type: FieldType
    label: str
    description: str = ""
    default: Any = None
    required: bool = False
    placeholder: str = ""
    options: List[Dict[str, Any]] = field(default_factory=list)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    group: str = "general"
    secure: bool = False
    apply_change: Optional[Callable[[Any, Any], None]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.field_type.value,
            "label": self.label,
            "description": self.description,
            "default": self.default,
            "required": self.required,
            "placeholder": self.placeholder,
            "options": self.options,
            "min": self.min_value,
            "max": self.max_value,
            "group": self.group,
            "secure": self.secure,
        }


@dataclass
class BaseConfig:
    """Base class for all registered configs."""

    @classmethod
    def get_default_instance(cls: Type[T]) -> T:
        return cls()

    @classmethod
    def get_config_name(cls) -> str:
        raise NotImplementedError

    @classmethod
    def get_display_name(cls) -> str:
        return cls.get_config_name()

    @classmethod
    def get_description(cls) -> str:
        return ""

    @classmethod
    def get_category(cls) -> str:
        return "general"

    @classmethod
    def get_icon(cls) -> str:
        return "settings"

    @classmethod
    def get_i18n(cls) -> Dict[str, Dict[str, Any]]:
        return {}

    @classmethod
    def get_fields_metadata(cls) -> List[ConfigField]:
        return []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def update(self, **changes: Any) -> None:
        """Apply changes, invoking each field's ``apply_change`` hook."""
        hooks = {f.name: f.apply_change for f in self.get_fields_metadata()}
        for name, value in changes.items():
            if name not in self.__dataclass_fields__:
                raise ValueError(
                    f"Unknown field '{name}' for config '{self.get_config_name()}'"
                )
            old = getattr(self, name)
            setattr(self, name, value)
            hook = hooks.get(name)
            if hook is not None:
                hook(old, value)


# ── Registry ──

_CONFIG_CLASSES: Dict[str, Type[BaseConfig]] = {}
_CONFIG_INSTANCES: Dict[str, BaseConfig] = {}


def register_config(cls: Type[T]) -> Type[T]:
    """Class decorator adding a config class to the registry."""
    name = cls.get_config_name()
    if name in _CONFIG_CLASSES and _CONFIG_CLASSES[name] is not cls:
        logger.warning(f"Config '{name}' re-registered by {cls.__name__}")
    _CONFIG_CLASSES[name] = cls
    return cls


def get_config(cls: Type[T]) -> T:
    """Return the process-wide instance of a registered config."""
    name = cls.get_config_name()
    instance = _CONFIG_INSTANCES.get(name)
    if instance is None:
        instance = cls.get_default_instance()
        _CONFIG_INSTANCES[name] = instance
        logger.debug(f"Config '{name}' loaded from environment")
    return instance  # type: ignore[return-value]


def reset_config(cls: Optional[Type[BaseConfig]] = None) -> None:
    """Drop cached instances so the next ``get_config`` re-reads the env."""
    if cls is None:
        _CONFIG_INSTANCES.clear()
    else:
        _CONFIG_INSTANCES.pop(cls.get_config_name(), None)


def list_registered_configs() -> List[Type[BaseConfig]]:
    return list(_CONFIG_CLASSES.values())
