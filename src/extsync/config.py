from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

APP_NAME = "extsync"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_CONTENT_DIR_NAME = "Extensions"
DEFAULT_DOWNLOADS_DIR_NAME = "downloads"


def default_data_dir() -> str:
    return str(user_data_path(APP_NAME))


@dataclass(frozen=True)
class Config:
    data_dir: str | None = None  # falls back to the platform user data dir
    content_dir_name: str = DEFAULT_CONTENT_DIR_NAME
    downloads_dir_name: str = DEFAULT_DOWNLOADS_DIR_NAME
    timeout_s: float = DEFAULT_TIMEOUT_S

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir or default_data_dir()).expanduser()

    @property
    def content_root(self) -> Path:
        return self.data_path / self.content_dir_name

    @property
    def downloads_root(self) -> Path:
        return self.data_path / self.downloads_dir_name


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("EXTSYNC_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def _apply_env(cfg: Config) -> Config:
    if env := os.getenv("EXTSYNC_DATA_DIR"):
        cfg = replace(cfg, data_dir=env)
    if env := os.getenv("EXTSYNC_TIMEOUT_S"):
        try:
            cfg = replace(cfg, timeout_s=float(env))
        except ValueError:
            pass
    return cfg


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return _apply_env(Config())

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return _apply_env(Config())

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return _apply_env(Config(**filtered))  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
