from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_BASE_DIR = PACKAGE_DIR.parent

_FALSE_VALUES = {"0", "false", "off", "no"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in _FALSE_VALUES


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser().resolve() if raw else default


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    public_dir: Path
    admin_dir: Path
    host: str = "0.0.0.0"
    port: int = 3000
    seed_sample_data: bool = True
    log_level: str = "INFO"

    @property
    def models_file(self) -> Path:
        return self.data_dir / "models.json"

    @property
    def backgrounds_file(self) -> Path:
        return self.data_dir / "backgrounds.json"

    @classmethod
    def for_base_dir(cls, base_dir: Path, **overrides) -> "Settings":
        values = {
            "base_dir": base_dir,
            "data_dir": base_dir / "data",
            "public_dir": base_dir / "public",
            "admin_dir": base_dir / "admin",
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls) -> "Settings":
        base_dir = _env_path("SHOWCASE_BASE_DIR", DEFAULT_BASE_DIR)
        try:
            port = int(os.getenv("PORT", "3000"))
        except ValueError:
            port = 3000
        return cls(
            base_dir=base_dir,
            data_dir=_env_path("SHOWCASE_DATA_DIR", base_dir / "data"),
            public_dir=_env_path("SHOWCASE_PUBLIC_DIR", base_dir / "public"),
            admin_dir=_env_path("SHOWCASE_ADMIN_DIR", base_dir / "admin"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            seed_sample_data=_env_flag("SEED_SAMPLE_DATA", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
