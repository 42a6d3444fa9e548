"""
Environment variable management with .env file support.

Loads ``.env`` files through python-dotenv and substitutes ``${VAR}``
references in configuration files.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([?-])([^}]*))?\}")


class EnvManager:
    """
    Manages environment variables for durasaga deployments.

    Example:
        >>> env = EnvManager()
        >>> env.load()  # Loads .env if it exists
        >>> storage_url = env.get("DURASAGA_STORAGE_URL", "memory://")
    """

    def __init__(self, project_root: Path | str | None = None, auto_load: bool = True):
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self._loaded = False

        if auto_load:
            self.load()

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self, env_file: str | Path | None = None, override: bool = False) -> bool:
        """
        Load environment variables from a .env file.

        Returns:
            True if the file existed and was loaded
        """
        env_file = Path(env_file) if env_file is not None else self.project_root / ".env"
        if not env_file.exists():
            return False

        load_dotenv(env_file, override=override)
        self._loaded = True
        return True

    def get(self, key: str, default: str | None = None, required: bool = False) -> str | None:
        """
        Get an environment variable value.

        Raises:
            ValueError: If required=True and the variable is not set
        """
        value = os.environ.get(key, default)
        if required and value is None:
            msg = f"Required environment variable not set: {key}"
            raise ValueError(msg)
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = (self.get(key) or "").lower()
        if value in ("true", "1", "yes", "on"):
            return True
        if value in ("false", "0", "no", "off"):
            return False
        return default

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, str(default)))
        except (ValueError, TypeError):
            return default

    def get_float(self, key: str, default: float | None = None) -> float | None:
        raw = self.get(key)
        if raw in (None, ""):
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def substitute(self, text: str) -> str:
        """
        Substitute environment variables in text.

        Supports:
        - ${VAR} - variable substitution (left untouched when unset)
        - ${VAR:-default} - with default value
        - ${VAR:?error} - required variable (raises ValueError if unset)

        Example:
            >>> os.environ["REDIS_HOST"] = "localhost"
            >>> env.substitute("redis://${REDIS_HOST}:6379/0")
            'redis://localhost:6379/0'
        """

        def replace(match: re.Match) -> str:
            var_name, operator, operand = match.group(1), match.group(2), match.group(3)
            value = os.environ.get(var_name)

            if operator == "-":
                return value if value is not None else operand
            if operator == "?":
                if value is None:
                    raise ValueError(operand or f"Required variable not set: {var_name}")
                return value
            return value if value is not None else match.group(0)

        return _VAR_PATTERN.sub(replace, text)

    def substitute_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Recursively substitute environment variables in dictionary values."""
        return {key: self._substitute_value(value) for key, value in data.items()}

    def _substitute_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.substitute(value)
        if isinstance(value, dict):
            return self.substitute_dict(value)
        if isinstance(value, list):
            return [self._substitute_value(item) for item in value]
        return value


# Global instance
_global_env: EnvManager | None = None


def get_env() -> EnvManager:
    """Get the global environment manager instance."""
    global _global_env
    if _global_env is None:
        _global_env = EnvManager()
    return _global_env
