"""Region data model, keyframe interpolation and the JSON config layer.

Classes:
    Region            - Named integer rectangle on the video frame
    Keyframe          - Timestamp plus the regions positioned at it
    RegionExpectation - Optional per-region content contract used for scoring
    RegionConfig      - Video path, sorted keyframes and expectation map

Functions:
    load_config / save_config - JSON (de)serialization of a RegionConfig
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Region:
    """A named rectangle tracking one instrument reading on screen."""

    name: str
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Region":
        return cls(
            name=str(data["name"]),
            x=int(data["x"]),
            y=int(data["y"]),
            width=int(data["width"]),
            height=int(data["height"]),
        )


@dataclass
class Keyframe:
    """Timestamp (seconds) at which the user positioned one or more regions."""

    timestamp: float
    regions: List[Region] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Keyframe":
        return cls(
            timestamp=float(data["timestamp"]),
            regions=[Region.from_dict(r) for r in data.get("regions", [])],
        )


@dataclass(frozen=True)
class RegionExpectation:
    """Content expectations for one region.

    Every field is optional; an unset field imposes no constraint.

    Args:
        numeric: Region is expected to hold a parseable number.
        min: Minimum acceptable value (inclusive).
        max: Maximum acceptable value (inclusive).
        decimal_places: Expected digits after the decimal point (0 = integer).
        total_digits: Expected total digit count ("37.5" -> 3).
        max_deviation: Largest allowed absolute change from the previous
            accepted value.
    """

    numeric: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    decimal_places: Optional[int] = None
    total_digits: Optional[int] = None
    max_deviation: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegionExpectation":
        def _opt(key: str, conv):
            value = data.get(key)
            return None if value is None else conv(value)

        return cls(
            numeric=bool(data.get("numeric", False)),
            min=_opt("min", float),
            max=_opt("max", float),
            decimal_places=_opt("decimal_places", int),
            total_digits=_opt("total_digits", int),
            max_deviation=_opt("max_deviation", float),
        )


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _lerp_int(a: int, b: int, t: float) -> int:
    return round_half_away(a + (b - a) * t)


def _lerp_region(a: Region, b: Region, t: float) -> Region:
    return Region(
        name=a.name,
        x=_lerp_int(a.x, b.x, t),
        y=_lerp_int(a.y, b.y, t),
        width=_lerp_int(a.width, b.width, t),
        height=_lerp_int(a.height, b.height, t),
    )


def interpolate_keyframes(a: Keyframe, b: Keyframe, t: float) -> List[Region]:
    """Interpolate all regions between two keyframes at fraction *t*.

    Regions present in both are lerped, regions only in *a* keep *a*'s
    rectangle, and regions only in *b* are appended unmodified.
    """
    b_by_name = {r.name: r for r in b.regions}
    a_names = {r.name for r in a.regions}

    result = [_lerp_region(ra, b_by_name.get(ra.name, ra), t) for ra in a.regions]
    result.extend(replace(rb) for rb in b.regions if rb.name not in a_names)
    return result


@dataclass
class RegionConfig:
    """Region layout for one video.

    ``keyframes`` must be sorted ascending by timestamp before calling
    :meth:`regions_at`; :func:`load_config` and :meth:`from_dict` do this.
    """

    video_path: str
    keyframes: List[Keyframe] = field(default_factory=list)
    expectations: Dict[str, RegionExpectation] = field(default_factory=dict)

    def sort_keyframes(self) -> None:
        """Sort keyframes ascending by timestamp (stable for equal stamps)."""
        self.keyframes.sort(key=lambda kf: kf.timestamp)

    def regions_at(self, timestamp: float) -> List[Region]:
        """Region rectangles valid at *timestamp* via clamped linear interpolation."""
        kfs = self.keyframes
        if not kfs:
            return []

        if timestamp <= kfs[0].timestamp:
            return list(kfs[0].regions)
        if timestamp >= kfs[-1].timestamp:
            return list(kfs[-1].regions)

        for a, b in zip(kfs, kfs[1:]):
            # Exact hits return the keyframe verbatim so regions that end at
            # an inner keyframe do not leak into it.
            if timestamp == a.timestamp:
                return list(a.regions)
            if timestamp == b.timestamp:
                return list(b.regions)
            if a.timestamp < timestamp < b.timestamp:
                span = b.timestamp - a.timestamp
                t = (timestamp - a.timestamp) / span if span > 0 else 0.0
                return interpolate_keyframes(a, b, t)

        return []

    def expectation_for(self, region_name: str) -> Optional[RegionExpectation]:
        return self.expectations.get(region_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegionConfig":
        """Build a config from its JSON form; ``expectations`` may be absent."""
        cfg = cls(
            video_path=str(data["video_path"]),
            keyframes=[Keyframe.from_dict(kf) for kf in data.get("keyframes", [])],
            expectations={
                name: RegionExpectation.from_dict(exp)
                for name, exp in (data.get("expectations") or {}).items()
            },
        )
        cfg.sort_keyframes()
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_path": self.video_path,
            "keyframes": [
                {"timestamp": kf.timestamp, "regions": [asdict(r) for r in kf.regions]}
                for kf in self.keyframes
            ],
            "expectations": {name: asdict(exp) for name, exp in self.expectations.items()},
        }


# ---------------------------------------------------------------------------
# JSON config file
# ---------------------------------------------------------------------------


def load_config(path: str) -> RegionConfig:
    """Load a region config from JSON, sorting its keyframes.

    Raises:
        OSError: The file cannot be read.
        ValueError: The document is malformed.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        cfg = RegionConfig.from_dict(json.loads(text))
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Parse error in {path}: {e}") from e

    log.info(
        "Loaded %s: %d keyframes, %d expectations",
        path,
        len(cfg.keyframes),
        len(cfg.expectations),
    )
    return cfg


def save_config(path: str, config: RegionConfig) -> None:
    """Write *config* as pretty-printed JSON, creating parent directories."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
