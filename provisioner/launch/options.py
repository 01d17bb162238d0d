import shlex
from typing import Any, Iterable

from loguru import logger

from provisioner.launch.model import LaunchOptionDefinition, LaunchOptionType, LaunchOverride, OptionValue

logger = logger.bind(name="Launch Options")

def resolve_arguments(
    definitions: Iterable[LaunchOptionDefinition],
    overrides: Iterable[LaunchOverride] = ()
) -> list[str]:
    """
    Resolves launch option definitions into argv, in declaration order.

    Each value falls back override > default value > initial value. The extras slot is
    always emitted last regardless of where it was declared.
    """
    values = _override_map(overrides)
    args: list[str] = []
    extras: list[str] = []

    for definition in definitions:
        if definition.is_extras:
            text = _effective(definition, definition.name, values)
            if isinstance(text, str) and text.strip():
                extras = _split_user_text(text, definition.name)
            continue
        if definition.type == LaunchOptionType.BOOL:
            args.extend(_resolve_bool(definition, values))
        else:
            args.extend(_resolve_string(definition, values))

    return args + extras

def build_command_line(
    definitions: Iterable[LaunchOptionDefinition],
    overrides: Iterable[LaunchOverride] = ()
) -> str:
    return shlex.join(resolve_arguments(definitions, overrides))

def effective_values(
    definitions: Iterable[LaunchOptionDefinition],
    overrides: Iterable[LaunchOverride] = ()
) -> dict[str, OptionValue]:
    """Current value of every option key (tokens for BOOL options, names otherwise)."""
    values = _override_map(overrides)
    result: dict[str, OptionValue] = {}
    for definition in definitions:
        for key in _keys(definition):
            value = _effective(definition, key, values)
            if definition.type == LaunchOptionType.BOOL:
                result[key] = _is_on(value, key)
            else:
                result[key] = value
    return result

def overrides_to_persist(
    definitions: Iterable[LaunchOptionDefinition],
    values: dict[str, Any]
) -> list[LaunchOverride]:
    """
    Converts user chosen values to the overrides that should be saved.

    A value equal to what the default/initial tiers already produce is left out, so
    hardware dependent initial values keep being recomputed on every launch.
    """
    persisted = []
    for definition in definitions:
        for key in _keys(definition):
            if key not in values or values[key] is None:
                continue
            value = values[key]
            fallback = _fallback(definition)
            if definition.type == LaunchOptionType.BOOL:
                on = _is_on(value, key)
                if on == _is_on(fallback, key):
                    continue
                persisted.append(LaunchOverride(name=key, value=on))
            else:
                text = str(value)
                if text == ("" if fallback is None else str(fallback)):
                    continue
                persisted.append(LaunchOverride(name=key, value=text))
    return persisted

def _override_map(overrides: Iterable[LaunchOverride]) -> dict[str, Any]:
    return {o.name: o.value for o in overrides if o.value is not None}

def _keys(definition: LaunchOptionDefinition) -> list[str]:
    if definition.type == LaunchOptionType.BOOL:
        return list(definition.options)
    return [definition.name]

def _fallback(definition: LaunchOptionDefinition) -> OptionValue:
    if definition.default_value is not None:
        return definition.default_value
    return definition.initial()

def _effective(definition: LaunchOptionDefinition, key: str, values: dict[str, Any]) -> OptionValue:
    if key in values:
        return values[key]
    return _fallback(definition)

def _is_on(value: Any, token: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() in ("true", "false"):
            return value.lower() == "true"
        # flag-set selection by token
        return value == token
    return bool(value)

def _resolve_bool(definition: LaunchOptionDefinition, values: dict[str, Any]) -> list[str]:
    args = []
    for token in definition.options:
        if _is_on(_effective(definition, token, values), token):
            args.extend(shlex.split(token))
    return args

def _resolve_string(definition: LaunchOptionDefinition, values: dict[str, Any]) -> list[str]:
    value = _effective(definition, definition.name, values)
    if value is None or isinstance(value, bool):
        return []
    text = str(value).strip()
    if not text or not definition.options:
        return []
    token = definition.options[0]
    if not token:
        return _split_user_text(text, definition.name)
    return [*shlex.split(token), text]

def _split_user_text(text: str, option: str) -> list[str]:
    """Shell-style split of free text typed by the user. Unbalanced quotes fall back to whitespace."""
    try:
        return shlex.split(text)
    except ValueError as e:
        logger.warning("Splitting launch arguments on whitespace", extra={"option": option, "error": str(e)})
        return text.split()
