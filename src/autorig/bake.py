"""Bake world-space animation tracks into parent-local tracks for export."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from autorig.animation import capture_rest_pose, evaluate_pose, sample_track
from autorig.hierarchy import bone_map
from autorig.models import AnimationClip, AnimationTrack, Bone
from autorig.quat import as_quat, world_to_local

DEFAULT_FPS = 30.0

# glTF target path and the conventional track-name suffix per property
TRACK_PATHS: dict[str, tuple[str, str]] = {
    "position": ("translation", "position"),
    "rotation": ("rotation", "quaternion"),
    "scale": ("scale", "scale"),
}

_CENTRAL_NAME = re.compile(r"(pelvis|hips|hip|root)$")
_SIDE_QUALIFIER = re.compile(r"(left|right)|(^|[_.])[lr]([_.]|$)")


@dataclass
class BakedTrack:
    bone_id: str
    bone_name: str
    property: str
    times: np.ndarray  # (K,) seconds
    values: np.ndarray  # (K, 3) or (K, 4), parent-local
    interpolation: str = "LINEAR"

    @property
    def name(self) -> str:
        return f"{self.bone_name}.{TRACK_PATHS[self.property][1]}"

    @property
    def target_path(self) -> str:
        return TRACK_PATHS[self.property][0]


@dataclass
class BakedClip:
    name: str
    duration: float
    tracks: list[BakedTrack]


def is_central_root_name(name: str) -> bool:
    """True for pelvis/hips/root-like names that carry no left/right qualifier."""
    normalized = re.sub(r"\s+", "_", name.strip().lower())
    if not _CENTRAL_NAME.search(normalized):
        return False
    return not _SIDE_QUALIFIER.search(normalized)


def suppresses_root_motion(bone: Bone, by_id: dict[str, Bone]) -> bool:
    is_root = bone.parent_id is None or bone.parent_id not in by_id
    return is_root or is_central_root_name(bone.name)


def needs_dense_bake(track: AnimationTrack) -> bool:
    return any(kf.interpolation in ("bezier", "step") for kf in track.keyframes)


def bake_clip(clip: AnimationClip, bones: Sequence[Bone]) -> BakedClip | None:
    """Convert a clip's tracks to parent-local values for interchange export.

    ``bones`` is the rest skeleton. Each sample is converted using the
    parent's animated world pose at that same frame, resolved through forward
    kinematics so an un-keyed parent still follows its own ancestors. Tracks
    containing bezier or step keys are sampled at every integer frame from 0
    to ``frame_count``; pure linear tracks keep their key frames. Position
    tracks of root and central pelvis-like bones are dropped. Returns None
    when nothing is left to export.
    """
    if not clip.tracks:
        return None
    by_id = bone_map(bones)
    rest = capture_rest_pose(bones)
    fps = clip.fps if clip.fps > 0 else DEFAULT_FPS
    pose_cache: dict[float, dict] = {}

    def pose_at(frame: float) -> dict:
        if frame not in pose_cache:
            pose_cache[frame] = evaluate_pose(clip, bones, rest, frame)
        return pose_cache[frame]

    baked: list[BakedTrack] = []
    for track in clip.tracks:
        bone = by_id.get(track.bone_id)
        if bone is None or not track.keyframes:
            continue
        if track.property == "position" and suppresses_root_motion(bone, by_id):
            continue

        if needs_dense_bake(track):
            frames = [float(f) for f in range(0, max(1, round(clip.frame_count)) + 1)]
        else:
            frames = [float(kf.frame) for kf in track.keyframes]

        parent_id = bone.parent_id if bone.parent_id in by_id else None
        times: list[float] = []
        values: list[np.ndarray] = []
        for frame in frames:
            world_value = sample_track(track, frame)
            if world_value is None:
                continue
            times.append(frame / fps)
            if track.property == "scale":
                values.append(np.asarray(world_value, dtype=np.float64))
                continue
            parent_pose = pose_at(frame).get(parent_id) if parent_id else None
            p_pos = parent_pose.position if parent_pose is not None else None
            p_rot = parent_pose.rotation if parent_pose is not None else None
            if track.property == "position":
                local_pos, _ = world_to_local(world_value, (0.0, 0.0, 0.0, 1.0), p_pos, p_rot)
                values.append(local_pos)
            else:
                _, local_rot = world_to_local((0.0, 0.0, 0.0), as_quat(world_value), p_pos, p_rot)
                values.append(local_rot)

        if not times:
            continue
        baked.append(
            BakedTrack(
                bone_id=bone.id,
                bone_name=bone.name,
                property=track.property,
                times=np.asarray(times, dtype=np.float64),
                values=np.asarray(values, dtype=np.float64),
            )
        )

    if not baked:
        return None
    return BakedClip(name=clip.name, duration=clip.frame_count / fps, tracks=baked)
