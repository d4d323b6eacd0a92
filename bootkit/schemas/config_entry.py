"""
ConfigEntry schema - one resolved configuration value and where it came from.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class ConfigLayer(IntEnum):
    """
    Provenance of a config value.

    Lower value wins: the ordering is the resolution precedence.
    """
    ENVIRONMENT = 0
    SESSION = 1
    FILE = 2
    DEFAULT = 3

    @property
    def label(self) -> str:
        return self.name.lower()


# Layers that may be written at runtime
WRITABLE_LAYERS = frozenset({ConfigLayer.SESSION, ConfigLayer.FILE})


@dataclass(frozen=True)
class ConfigEntry:
    """
    A config value with provenance.

    Attributes:
        key: Dotted key (section.field)
        value: Raw string value
        layer: The layer that supplied the value
    """
    key: str
    value: str
    layer: ConfigLayer

    @property
    def section(self) -> str:
        return self.key.split(".", 1)[0]

    @property
    def field(self) -> str:
        return self.key.split(".", 1)[1]

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": self.value, "layer": self.layer.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigEntry":
        return cls(
            key=data["key"],
            value=data["value"],
            layer=ConfigLayer[data["layer"].upper()],
        )
