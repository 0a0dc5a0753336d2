"""Versioned checkpoint of one reorder buffer.

Buffers are stored as [timestamp, [event_id, ...]] pairs in key order; the
host decides what an event id is and how to turn it back into a payload.
to_dict() output is plain JSON.
"""

from dataclasses import asdict, dataclass, field

SNAPSHOT_VERSION = 1


@dataclass
class ReorderSnapshot:
    k: int = 0
    alpha: float = 1.0
    previous_alpha: float = 0.0
    previous_error: float = 0.0
    coverage_window: int = 0
    largest_timestamp: int | None = None
    last_emitted_timestamp: int | None = None
    last_scheduled_wake: int = -1
    needs_scheduling: bool = False
    counter: int = 0
    correlation_sample: list[float] = field(default_factory=list)
    timestamp_sample: list[int] = field(default_factory=list)
    primary: list[tuple[int, list]] = field(default_factory=list)
    secondary: list[tuple[int, list]] = field(default_factory=list)
    version: int = SNAPSHOT_VERSION

    def to_dict(self) -> dict:
        data = asdict(self)
        data["primary"] = [[key, list(ids)] for key, ids in self.primary]
        data["secondary"] = [[key, list(ids)] for key, ids in self.secondary]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ReorderSnapshot":
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(
                f"Unsupported snapshot version {version!r} (expected {SNAPSHOT_VERSION})"
            )
        values = dict(data)
        values["primary"] = [(int(key), list(ids)) for key, ids in data.get("primary", [])]
        values["secondary"] = [(int(key), list(ids)) for key, ids in data.get("secondary", [])]
        values["correlation_sample"] = list(data.get("correlation_sample", []))
        values["timestamp_sample"] = list(data.get("timestamp_sample", []))
        return cls(**values)
