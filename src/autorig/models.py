"""Pydantic v2 models for skeletons, weights, animation clips and projects."""

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROJECT_VERSION = "1.0"

IDENTITY_ROTATION: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)

Axis = Literal["x", "y", "z"]
Interpolation = Literal["linear", "bezier", "step"]
KeyframeProperty = Literal["position", "rotation", "scale"]
RigType = Literal["auto", "humanoid", "quadruped"]
WeightMethod = Literal["envelope", "heatmap", "nearest"]
EditorMode = Literal["select", "bone", "weight-paint", "animate"]

PROPERTY_ARITY: dict[str, int] = {"position": 3, "rotation": 4, "scale": 3}


def _require_finite(values: tuple[float, ...] | list[float], what: str) -> None:
    for v in values:
        if not math.isfinite(v):
            raise ValueError(f"{what} must contain only finite numbers, got {list(values)!r}")


class RotationLimits(BaseModel):
    """Per-axis [min, max] degree pairs. Advisory only."""

    model_config = ConfigDict(extra="forbid")

    x: tuple[float, float] = (-180.0, 180.0)
    y: tuple[float, float] = (-180.0, 180.0)
    z: tuple[float, float] = (-180.0, 180.0)


class Bone(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    name: str
    parent_id: str | None = Field(default=None, alias="parentId")
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)  # world space
    rotation: tuple[float, float, float, float] = IDENTITY_ROTATION  # world space (x, y, z, w)
    scale: tuple[float, float, float] = (1.0, 1.0, 1.0)
    length: float = 1.0
    rotation_limits: RotationLimits = Field(default_factory=RotationLimits, alias="rotationLimits")

    @field_validator("position", "rotation", "scale")
    @classmethod
    def _finite_vectors(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        _require_finite(v, "Bone transform")
        return v

    @field_validator("length")
    @classmethod
    def _length_non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Bone length must be a finite number >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def _no_self_parent(self) -> Bone:
        if self.parent_id is not None and self.parent_id == self.id:
            raise ValueError(f"Bone {self.id!r} cannot be its own parent")
        return self


class Skeleton(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bones: list[Bone] = []


class Keyframe(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    frame: int
    value: list[float]
    interpolation: Interpolation = "linear"
    tangent_in: tuple[float, float] | None = Field(default=None, alias="tangentIn")
    tangent_out: tuple[float, float] | None = Field(default=None, alias="tangentOut")

    @field_validator("frame")
    @classmethod
    def _frame_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Keyframe frame must be >= 0, got {v}")
        return v

    @field_validator("value")
    @classmethod
    def _finite_value(cls, v: list[float]) -> list[float]:
        _require_finite(v, "Keyframe value")
        return v


class AnimationTrack(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    bone_id: str = Field(alias="boneId")
    property: KeyframeProperty
    keyframes: list[Keyframe] = []

    @model_validator(mode="after")
    def _check_keyframes(self) -> AnimationTrack:
        arity = PROPERTY_ARITY[self.property]
        for kf in self.keyframes:
            if len(kf.value) != arity:
                raise ValueError(
                    f"Track {self.bone_id!r}.{self.property}: keyframe at frame {kf.frame} "
                    f"has {len(kf.value)} values, expected {arity}"
                )
        self.keyframes.sort(key=lambda kf: kf.frame)
        for prev, nxt in zip(self.keyframes, self.keyframes[1:]):
            if prev.frame == nxt.frame:
                raise ValueError(
                    f"Track {self.bone_id!r}.{self.property}: duplicate keyframe at frame {prev.frame}"
                )
        return self


class AnimationClip(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    name: str
    fps: float = 30.0
    frame_count: int = Field(default=60, alias="frameCount")
    tracks: list[AnimationTrack] = []

    @field_validator("fps")
    @classmethod
    def _fps_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError(f"fps must be > 0, got {v}")
        return v

    @field_validator("frame_count")
    @classmethod
    def _frame_count_min(cls, v: int) -> int:
        if v < 2:
            raise ValueError(f"frameCount must be >= 2, got {v}")
        return v

    def find_track(self, bone_id: str, prop: str) -> AnimationTrack | None:
        for track in self.tracks:
            if track.bone_id == bone_id and track.property == prop:
                return track
        return None


class MeshWeights(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    vertex_weights: list[list[tuple[int, float]]] = Field(default=[], alias="vertexWeights")

    @field_validator("vertex_weights")
    @classmethod
    def _weights_in_range(cls, v: list[list[tuple[int, float]]]) -> list[list[tuple[int, float]]]:
        for i, pairs in enumerate(v):
            for bone_idx, w in pairs:
                if bone_idx < 0:
                    raise ValueError(f"Vertex {i}: bone index must be >= 0, got {bone_idx}")
                if not math.isfinite(w) or w < 0.0 or w > 1.0:
                    raise ValueError(f"Vertex {i}: weight must be in [0, 1], got {w}")
        return v


class ProjectData(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    version: str = PROJECT_VERSION
    model_path: str = Field(default="", alias="modelPath")
    model_hash: str = Field(default="", alias="modelHash")
    skeleton: Skeleton = Field(default_factory=Skeleton)
    weight_map: dict[str, MeshWeights] = Field(default={}, alias="weightMap")
    animations: list[AnimationClip] = []


class BoneSuggestion(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    position: tuple[float, float, float]
    name: str
    parent_index: int | None = Field(default=None, alias="parentIndex")
    confidence: float = 1.0

    @field_validator("position")
    @classmethod
    def _finite_position(cls, v: tuple[float, float, float]) -> tuple[float, float, float]:
        _require_finite(v, "Suggestion position")
        return v


# --- Settings ---


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def _clamp_int(value: float, lo: int, hi: int) -> int:
    return int(round(_clamp(value, lo, hi)))


def _round_number(v: object) -> object:
    if isinstance(v, float) and math.isfinite(v):
        return int(round(v))
    return v


class AutoBoneSettings(BaseModel):
    """Tuning knobs for the bone suggestion heuristics.

    Out-of-range values are clamped rather than rejected, and unknown
    ``rig_type``/``symmetry_axis`` values fall back to ``"auto"``.
    """

    model_config = ConfigDict(extra="forbid")

    rig_type: RigType = "auto"
    bone_spacing_factor: float = 0.2
    root_y_offset_factor: float = 0.1
    spine_min_segments: int = 2
    spine_max_segments: int = 5
    limb_min_segments: int = 2
    limb_max_segments: int = 4
    extremity_cluster_factor: float = 0.15
    extremity_top_percent: float = 0.05
    max_extremities: int = 8
    extremity_min_distance_factor: float = 0.2
    symmetry_axis: Literal["auto", "x", "y", "z"] = "auto"

    @field_validator("rig_type", mode="before")
    @classmethod
    def _coerce_rig_type(cls, v: object) -> object:
        return v if v in ("auto", "humanoid", "quadruped") else "auto"

    @field_validator("symmetry_axis", mode="before")
    @classmethod
    def _coerce_axis(cls, v: object) -> object:
        return v if v in ("auto", "x", "y", "z") else "auto"

    @field_validator(
        "spine_min_segments",
        "spine_max_segments",
        "limb_min_segments",
        "limb_max_segments",
        "max_extremities",
        mode="before",
    )
    @classmethod
    def _round_counts(cls, v: object) -> object:
        return _round_number(v)

    @model_validator(mode="after")
    def _clamp_ranges(self) -> AutoBoneSettings:
        self.spine_min_segments = _clamp_int(self.spine_min_segments, 1, 12)
        self.spine_max_segments = _clamp_int(self.spine_max_segments, self.spine_min_segments, 16)
        self.limb_min_segments = _clamp_int(self.limb_min_segments, 1, 8)
        self.limb_max_segments = _clamp_int(self.limb_max_segments, self.limb_min_segments, 10)
        self.bone_spacing_factor = _clamp(self.bone_spacing_factor, 0.05, 0.6)
        self.root_y_offset_factor = _clamp(self.root_y_offset_factor, -0.3, 0.3)
        self.extremity_cluster_factor = _clamp(self.extremity_cluster_factor, 0.05, 0.4)
        self.extremity_top_percent = _clamp(self.extremity_top_percent, 0.01, 0.2)
        self.max_extremities = _clamp_int(self.max_extremities, 2, 16)
        self.extremity_min_distance_factor = _clamp(self.extremity_min_distance_factor, 0.05, 0.5)
        return self


class AutoWeightSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: WeightMethod = "envelope"
    falloff: float = 2.5
    smooth_iterations: int = 2
    neighbor_weight: float = 0.6

    @field_validator("method", mode="before")
    @classmethod
    def _coerce_method(cls, v: object) -> object:
        return v if v in ("envelope", "heatmap", "nearest") else "envelope"

    @field_validator("smooth_iterations", mode="before")
    @classmethod
    def _round_iterations(cls, v: object) -> object:
        return _round_number(v)

    @model_validator(mode="after")
    def _clamp_ranges(self) -> AutoWeightSettings:
        self.falloff = _clamp(self.falloff, 0.1, 6.0)
        self.smooth_iterations = _clamp_int(self.smooth_iterations, 0, 10)
        self.neighbor_weight = _clamp(self.neighbor_weight, 0.0, 1.0)
        return self

    def settings_hash(self) -> str:
        return f"{self.method}:{self.falloff}:{self.smooth_iterations}:{self.neighbor_weight}"


def normalize_auto_bone_settings(overrides: dict | AutoBoneSettings | None = None) -> AutoBoneSettings:
    """Merge overrides over the defaults and clamp every field into range."""
    if isinstance(overrides, AutoBoneSettings):
        return AutoBoneSettings(**overrides.model_dump())
    return AutoBoneSettings(**(overrides or {}))
