"""
pelens Configuration Management
================================

Centralized configuration for the pelens reader using Python dataclasses
and TOML-based persistence.

Every value has a working default, so a missing configuration file is
never an error unless the caller named one explicitly.

References:
    - PEP 681 -- Data Class Transforms (2022).
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


# ---------------------------------------------------------------------------
# Default configuration file path relative to the project root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent.parent / "pelens.toml"


# ========================== Reader Settings ================================


@dataclass(frozen=False, slots=True)
class ReaderConfig:
    """Parameters for :class:`pelens.core.reader.PEReader`.

    ``read_batch_size`` is the chunk size used when scanning a source for
    a terminator byte.  ``max_string_length`` bounds NUL-terminated string
    reads through the RVA layer so an unterminated name cannot make the
    reader walk the whole image.
    """

    read_batch_size: int = 1024
    max_string_length: int = 4096
    string_encoding: str = "ascii"


# =========================== Global Settings ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Logging verbosity and log-file destination."""

    log_level: str = "INFO"
    log_file: str | None = None
    log_json: bool = False
    console_output: bool = True


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class LensConfig:
    """Master configuration aggregating global and reader settings.

    Usage:
        >>> config = LensConfig.load()                  # from default path
        >>> config = LensConfig.load("custom.toml")     # from custom path
        >>> config.reader.max_string_length
        4096
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> LensConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for ``pelens.toml`` in the
        project root.  Missing keys fall back to dataclass defaults.

        Args:
            path: Filesystem path to a TOML configuration file.

        Returns:
            A fully-populated :class:`LensConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            reader=cls._build_section(ReaderConfig, raw.get("reader", {})),
        )

    # ------------------------------------------------------------------ #
    #  Serialisation helpers
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares.

        Unknown keys in the TOML source are ignored so that newer config
        files still load.
        """
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)


# ========================= Module-level convenience ========================

def get_config(path: str | Path | None = None) -> LensConfig:
    """Module-level convenience wrapper around :meth:`LensConfig.load`.

    Caches the result so that repeated calls share one instance.
    """
    if not hasattr(get_config, "_cached") or path is not None:
        get_config._cached = LensConfig.load(path)  # type: ignore[attr-defined]
    return get_config._cached  # type: ignore[attr-defined]
