"""Reorder configuration: validated dataclasses and a YAML loader.

A config file has two sections:

    stream:            # how the service pulls the ordering key out of an event
      timestamp_field: timestamp
      correlation_field: latency_ms
    reorder:           # fixed for the life of every buffer built from it
      batch_size: 500
      timeout: 5000

Anything missing falls back to the dataclass defaults.  Bad values are
rejected at construction time; a buffer is never built from them.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

MAX_K = 2**63 - 1          # "no ceiling"
DISABLED = -1              # sentinel for timeout and max_k
MIN_BATCH_SIZE = 15


class ConfigError(ValueError):
    """Configuration rejected before any buffer was created."""


@dataclass(frozen=True)
class ReorderConfig:
    batch_size: int = 10_000
    timeout: int = DISABLED
    max_k: int = MAX_K
    discard_late_arrivals: bool = False
    error_threshold: float = 0.03
    confidence_level: float = 0.95
    # how far back (in timestamp units) runtime coverage looks
    reference_span: int = 10_000_000_000

    def __post_init__(self):
        if self.max_k == DISABLED:
            object.__setattr__(self, "max_k", MAX_K)
        if self.batch_size < MIN_BATCH_SIZE:
            raise ConfigError(
                f"batch_size must be >= {MIN_BATCH_SIZE}, got {self.batch_size}"
            )
        if self.max_k < 0:
            raise ConfigError(f"max_k must be >= 0 or {DISABLED}, got {self.max_k}")
        if self.timeout < DISABLED:
            raise ConfigError(f"timeout must be >= 0 or {DISABLED}, got {self.timeout}")
        if not 0 < self.confidence_level < 1:
            raise ConfigError(
                f"confidence_level must be in (0, 1), got {self.confidence_level}"
            )
        if self.error_threshold <= 0:
            raise ConfigError(
                f"error_threshold must be > 0, got {self.error_threshold}"
            )
        if self.reference_span <= 0:
            raise ConfigError(
                f"reference_span must be > 0, got {self.reference_span}"
            )

    @property
    def timeout_enabled(self) -> bool:
        return self.timeout != DISABLED


@dataclass(frozen=True)
class StreamConfig:
    timestamp_field: str = "timestamp"
    correlation_field: str = "value"
    reorder: ReorderConfig = field(default_factory=ReorderConfig)


_SECTIONS = ("stream", "reorder")


def load_config(path: str | Path) -> StreamConfig:
    """Parse and validate a YAML config file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict):
        raise ConfigError(f"{path.name}: top level must be a mapping")
    for section in document:
        if section not in _SECTIONS:
            raise ConfigError(f"{path.name}: unknown section '{section}'")

    stream = _section(path, document, "stream", StreamConfig, exclude=("reorder",))
    reorder = _section(path, document, "reorder", ReorderConfig)
    return StreamConfig(reorder=ReorderConfig(**reorder), **stream)


def _section(path: Path, document: dict, name: str, cls, exclude=()) -> dict:
    values = document.get(name) or {}
    if not isinstance(values, dict):
        raise ConfigError(f"{path.name}: '{name}' must be a mapping")
    known = {f.name for f in fields(cls)} - set(exclude)
    for key in values:
        if key not in known:
            raise ConfigError(f"{path.name}: unknown field '{name}.{key}'")
    return values
