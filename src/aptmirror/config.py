"""Mirror configuration loaded from a YAML file."""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from aptmirror.constants import (
    ARCH_ALL,
    BUILD_TOOLS,
    CHROOT_TOOLS,
    DATA_DIR,
    DEFAULT_ARCHITECTURES,
    DEFAULT_PARALLEL,
    SYSTEM_KEYRINGS,
)
from aptmirror.errors import ConfigError
from aptmirror.sources import SourceLine

logger = logging.getLogger(__name__)


class DownloadSettings(BaseModel):
    parallel: int = Field(default=DEFAULT_PARALLEL, ge=1)


class MirrorConfig(BaseModel):
    """Settings of one mirror.

    Keys use the dashed spelling in YAML (`lists-directory`); relative paths
    are resolved against `base_dir`, the directory of the config file.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    base_dir: Path = Field(default=DATA_DIR, exclude=True)
    architectures: list[str] = Field(default_factory=lambda: list(DEFAULT_ARCHITECTURES))
    lists_directory: Path = Field(default=Path("lists"), alias="lists-directory")
    package_directory: Path = Field(default=Path("packages"), alias="package-directory")
    old_package_directory: Path = Field(default=Path("old-packages"), alias="old-package-directory")
    keyrings: list[Path] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    extra_packages: list[str] = Field(default_factory=list, alias="extra-packages")
    chroot_tools: list[str] = Field(default_factory=lambda: list(CHROOT_TOOLS), alias="chroot-tools")
    build_tools: list[str] = Field(default_factory=lambda: list(BUILD_TOOLS), alias="build-tools")
    verify_signatures: bool = Field(default=True, alias="verify-signatures")

    @field_validator("architectures")
    @classmethod
    def _check_architectures(cls, value: list[str]) -> list[str]:
        value = list(dict.fromkeys(arch.strip() for arch in value if arch.strip()))
        if not value:
            raise ValueError("at least one architecture is required")
        if ARCH_ALL in value:
            raise ValueError(f"{ARCH_ALL!r} is implied and must not be listed")
        return value

    @field_validator("sources")
    @classmethod
    def _check_sources(cls, value: list[str]) -> list[str]:
        for line in value:
            try:
                SourceLine.parse(line)
            except ConfigError as e:
                raise ValueError(f"{line!r}: {e}") from e
        return value

    @model_validator(mode="after")
    def _resolve_paths(self) -> "MirrorConfig":
        base = self.base_dir
        self.lists_directory = base / self.lists_directory
        self.package_directory = base / self.package_directory
        self.old_package_directory = base / self.old_package_directory
        self.keyrings = [base / keyring for keyring in self.keyrings]
        return self

    @property
    def all_architectures(self) -> list[str]:
        return [*self.architectures, ARCH_ALL]

    @property
    def source_lines(self) -> list[SourceLine]:
        return [SourceLine.parse(line) for line in self.sources]

    def trusted_keyrings(self) -> list[Path]:
        """Configured keyrings plus the readable system APT keyrings."""
        system = [path for path in SYSTEM_KEYRINGS if os.access(path, os.R_OK)]
        return list(dict.fromkeys([*self.keyrings, *system]))

    def ensure_directories(self) -> None:
        for path in (self.lists_directory, self.package_directory, self.old_package_directory):
            path.mkdir(parents=True, exist_ok=True)


def load_config(path: Path) -> MirrorConfig:
    """Read and validate a YAML mirror configuration."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Unable to read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")

    try:
        config = MirrorConfig.model_validate({**data, "base_dir": path.resolve().parent})
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e
    logger.debug(f"Loaded config {path}: {config.architectures}, {len(config.sources)} sources")
    return config
