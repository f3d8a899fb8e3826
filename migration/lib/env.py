"""Environment variable references in migration configs.

Secrets (storage keys, SQL passwords) stay out of the YAML file and are
written as ``${AZURE_STORAGE_KEY}`` or ``$AZURE_STORAGE_KEY``. They are
filled in from the environment, which can be seeded from a ``.env`` file
through python-dotenv.

A reference to an unset variable is left in place unless ``strict`` is
set, so ``validate`` can report it with :func:`find_unset_vars`.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

__all__ = [
    "expand_env_vars",
    "expand_options",
    "find_unset_vars",
    "load_env_file",
    "get_config_value",
]

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(path: Optional[Union[str, Path]] = None, *, override: bool = False) -> bool:
    """Load a ``.env`` file into ``os.environ``.

    Without a path, python-dotenv searches the current directory and its
    parents. Variables already set win unless ``override`` is True.

    Returns:
        True if a file was found and loaded
    """
    return load_dotenv(dotenv_path=path, override=override)


def _name(match: re.Match[str]) -> str:
    return match.group(1) or match.group(2)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Replace variable references in one string.

    Example:
        >>> os.environ["AZURE_STORAGE_ACCOUNT"] = "contosoretaildw"
        >>> expand_env_vars("${AZURE_STORAGE_ACCOUNT}.blob.core.windows.net")
        'contosoretaildw.blob.core.windows.net'

    Raises:
        KeyError: If ``strict`` and a referenced variable is not set
    """

    def substitute(match: re.Match[str]) -> str:
        name = _name(match)
        if name in os.environ:
            return os.environ[name]
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return match.group(0)

    return ENV_VAR_PATTERN.sub(substitute, value)


def _expand(value: Any, strict: bool) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        return {key: _expand(item, strict) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand(item, strict) for item in value]
    return value


def expand_options(options: Dict[str, Any], *, strict: bool = False) -> Dict[str, Any]:
    """Expand references in every string of a nested config mapping.

    Keys and non-string values are left alone. Returns a new mapping.
    """
    return _expand(options, strict)


def find_unset_vars(value: Any) -> List[str]:
    """Names of variables still referenced in ``value``, in first-seen order.

    Run it on already expanded options: any reference left is unset.
    """
    found: List[str] = []

    def walk(item: Any) -> None:
        if isinstance(item, str):
            for match in ENV_VAR_PATTERN.finditer(item):
                if _name(match) not in found:
                    found.append(_name(match))
        elif isinstance(item, dict):
            for child in item.values():
                walk(child)
        elif isinstance(item, (list, tuple)):
            for child in item:
                walk(child)

    walk(value)
    return found


def get_config_value(
    options: Optional[Dict[str, Any]],
    key: str,
    env_var: str,
    default: str = "",
) -> str:
    """``options[key]`` (expanded) if set, else ``$env_var``, else ``default``.

    Used for storage credentials, which may come from the config or from
    the standard Azure variables.
    """
    if options and options.get(key):
        return expand_env_vars(str(options[key]))
    return os.environ.get(env_var, default)
