from __future__ import annotations

import importlib.util
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Sequence

import yaml
from dotenv import find_dotenv, load_dotenv

from .core import Runnable
from .errors import ConfigError
from .utils import DEFAULT_SKIP_DIRS


DEFAULT_CONFIG_PATH = ".monorun/config.py"
DEFAULT_SETTINGS_PATH = "monorun.yaml"


@dataclass(frozen=True)
class Config:
    """The task tree of a repository.

    `auto` runs on a bare invocation; `manual` tasks only run when named.
    """

    auto: Runnable | None = None
    manual: Sequence[Runnable] = ()


@dataclass(frozen=True)
class Settings:
    skip_dirs: tuple[str, ...] = DEFAULT_SKIP_DIRS
    include_hidden_dirs: bool = False
    grace_period: float = 5.0
    verbose: bool = False
    log_file: str | None = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Settings":
        known = {f for f in cls.__dataclass_fields__}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown settings key(s): {', '.join(unknown)}")
        kwargs = dict(data)
        if "skip_dirs" in kwargs:
            kwargs["skip_dirs"] = tuple(kwargs["skip_dirs"] or ())
        if "grace_period" in kwargs:
            kwargs["grace_period"] = float(kwargs["grace_period"])
        return cls(**kwargs)


def _get_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(path: str | Path | None = None) -> Settings:
    """Read YAML settings, then apply MONORUN_* environment overrides.

    A missing file means defaults. `.env` in the working directory is loaded
    first so it can provide the overrides.
    """
    load_dotenv(find_dotenv(usecwd=True))
    data: dict = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                with open(p, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"invalid settings file {p}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"settings file {p} must contain a mapping")
    settings = Settings.from_dict(data)

    overrides: dict = {}
    grace = os.getenv("MONORUN_GRACE_PERIOD")
    if grace:
        try:
            overrides["grace_period"] = float(grace)
        except ValueError:
            raise ConfigError(f"MONORUN_GRACE_PERIOD must be a number, got {grace!r}") from None
    verbose = _get_bool("MONORUN_VERBOSE")
    if verbose is not None:
        overrides["verbose"] = verbose
    if overrides:
        settings = replace(settings, **overrides)
    return settings


def load_config(path: str | Path) -> Config:
    """Import a Python config module and return its `config` attribute."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config module not found: {p}")
    spec = importlib.util.spec_from_file_location("monorun_user_config", p)
    if spec is None or spec.loader is None:
        raise ConfigError(f"cannot import config module {p}")
    mod = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(mod)
    except Exception as e:
        raise ConfigError(f"failed to load {p}: {type(e).__name__}: {e}") from e
    cfg = getattr(mod, "config", None)
    if isinstance(cfg, Runnable):
        cfg = Config(auto=cfg)
    if not isinstance(cfg, Config):
        raise ConfigError(f"{p} must define `config = Config(...)`")
    return cfg
