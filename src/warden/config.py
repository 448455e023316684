"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("warden.config")

_TRUTHY = ("1", "true", "yes")
_FALSY = ("0", "false", "no")


def _default_home() -> Path:
    return Path.home() / ".warden"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable engine configuration. Construct via ``from_env()`` or directly for tests.

    ``strict_conditions`` selects the policy for rules whose stored conditions
    cannot be decoded: skip the rule (default) or abort the evaluation.
    """

    warden_home: Path = field(default_factory=_default_home)
    db_path: Path | None = None
    strict_conditions: bool = False
    audit: bool = True

    @property
    def database_path(self) -> Path:
        """Return the rule database path, ``<home>/db/warden.db`` unless overridden."""
        if self.db_path is not None:
            return self.db_path
        return self.warden_home / "db" / "warden.db"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build config from ``os.environ``. Raises ``ValueError`` on unparseable flags."""
        raw_home = os.environ.get("WARDEN_HOME", "").strip()
        warden_home = Path(raw_home).expanduser().resolve() if raw_home else _default_home()

        raw_db = os.environ.get("WARDEN_DB_PATH", "").strip()
        db_path = Path(raw_db).expanduser().resolve() if raw_db else None

        strict = _parse_flag("WARDEN_STRICT_CONDITIONS", default=False)
        audit = _parse_flag("WARDEN_AUDIT", default=True)

        config = cls(
            warden_home=warden_home,
            db_path=db_path,
            strict_conditions=strict,
            audit=audit,
        )
        logger.info(
            "Config loaded: db=%s, strict_conditions=%s, audit=%s",
            config.database_path,
            strict,
            audit,
        )
        return config


def _parse_flag(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ValueError(f"{name} must be one of {_TRUTHY + _FALSY}; got {raw!r}")
