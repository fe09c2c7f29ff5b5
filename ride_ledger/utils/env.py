import os
from typing import Iterable, List, Optional

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def _raw(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = _raw(name)
    if raw is None:
        return default
    try:
        return _BOOL_WORDS[raw.lower()]
    except KeyError:
        raise ValueError(f"{name} must be a boolean, got {raw!r}") from None


def env_list(name: str, *, default: Optional[Iterable[str]] = None, sep: str = ",") -> List[str]:
    """Comma separated setting; blank items are dropped."""
    raw = _raw(name)
    if raw is None:
        return list(default or ())
    return [part.strip() for part in raw.split(sep) if part.strip()]


def env_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = _raw(name)
    value = default if raw is None else int(raw)
    if minimum is not None:
        value = max(minimum, value)
    return value


__all__ = ["env_bool", "env_list", "env_int"]
