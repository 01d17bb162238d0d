from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

class LaunchOptionType(Enum):
    STRING = "string"
    # a BOOL with several option tokens behaves as a flag-set
    BOOL = "bool"

# bool for single-token toggles, a token string to select one flag of a flag-set
OptionValue = bool | str | None

@dataclass(frozen=True)
class LaunchOptionDefinition:
    name: str
    type: LaunchOptionType
    # cli tokens, e.g. ["--port"] or ["--lowvram", "--medvram"]
    options: tuple[str, ...]
    default_value: OptionValue = None
    # either a value or a zero-arg callable evaluated on every resolve (hardware dependent defaults)
    initial_value: OptionValue | Callable[[], OptionValue] = None
    description: str = ""

    def initial(self) -> OptionValue:
        if callable(self.initial_value):
            return self.initial_value()
        return self.initial_value

    @property
    def is_extras(self) -> bool:
        return self.name == EXTRAS_NAME

EXTRAS_NAME = "Extra Launch Arguments"

# reserved free-text slot, always resolved last
EXTRAS = LaunchOptionDefinition(
    name=EXTRAS_NAME,
    type=LaunchOptionType.STRING,
    options=("",),
)

@dataclass
class LaunchOverride:
    """Persisted per-install value. For BOOL options name is the option token."""
    name: str
    value: Any = None

