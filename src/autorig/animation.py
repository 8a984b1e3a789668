"""Keyframe sampling, forward kinematics and clip playback."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from autorig.hierarchy import bone_map, breadth_first
from autorig.models import AnimationClip, AnimationTrack, Bone, Keyframe
from autorig.quat import as_quat, local_to_world, quat_slerp, world_to_local

STOPPED = "stopped"
PLAYING = "playing"


def smoothstep(t: float) -> float:
    return t * t * (3.0 - 2.0 * t)


def bracket(keyframes: Sequence[Keyframe], frame: float) -> tuple[Keyframe | None, Keyframe | None]:
    """(last key at or before frame, first key at or after frame)."""
    prev: Keyframe | None = None
    nxt: Keyframe | None = None
    for kf in keyframes:
        if kf.frame <= frame:
            prev = kf
        if kf.frame >= frame and nxt is None:
            nxt = kf
    return prev, nxt


def sample_keyframes(keyframes: Sequence[Keyframe], frame: float, prop: str) -> np.ndarray | None:
    """Value of a keyframe list at a possibly fractional frame.

    Exact matches return the stored value unchanged. Before the first key the
    first value holds, after the last key the last value holds. Between keys
    the earlier key's interpolation applies: ``step`` holds, ``linear`` blends
    by t and ``bezier`` by smoothstep(t). Rotations are slerped.
    """
    if not keyframes:
        return None
    prev, nxt = bracket(keyframes, frame)
    if prev is not None and prev.frame == frame:
        return np.asarray(prev.value, dtype=np.float64)
    if prev is None:
        return np.asarray(nxt.value, dtype=np.float64)
    if nxt is None:
        return np.asarray(prev.value, dtype=np.float64)

    t = (frame - prev.frame) / (nxt.frame - prev.frame)
    if prev.interpolation == "step":
        return np.asarray(prev.value, dtype=np.float64)
    if prev.interpolation == "bezier":
        t = smoothstep(t)

    a = np.asarray(prev.value, dtype=np.float64)
    b = np.asarray(nxt.value, dtype=np.float64)
    if prop == "rotation":
        return quat_slerp(a, b, t)
    return a + (b - a) * t


def sample_track(track: AnimationTrack, frame: float) -> np.ndarray | None:
    return sample_keyframes(track.keyframes, frame, track.property)


@dataclass
class BonePose:
    position: np.ndarray
    rotation: np.ndarray
    scale: np.ndarray


@dataclass
class RestEntry:
    position: np.ndarray
    rotation: np.ndarray
    local_offset: np.ndarray  # offset from the parent in the parent's frame
    local_rotation: np.ndarray


RestPose = dict[str, RestEntry]


def capture_rest_pose(bones: Sequence[Bone]) -> RestPose:
    """Snapshot world transforms and parent-relative offsets of every bone."""
    by_id = bone_map(bones)
    rest: RestPose = {}
    for bone in bones:
        pos = np.asarray(bone.position, dtype=np.float64)
        rot = as_quat(bone.rotation)
        parent = by_id.get(bone.parent_id) if bone.parent_id else None
        offset, local_rot = world_to_local(
            pos, rot, parent.position if parent else None, parent.rotation if parent else None
        )
        rest[bone.id] = RestEntry(pos, rot, offset, local_rot)
    return rest


def sample_clip(clip: AnimationClip, frame: float, bone_ids: set[str] | None = None) -> dict[str, dict[str, np.ndarray]]:
    """Explicit track values at ``frame``: bone id -> property -> value."""
    values: dict[str, dict[str, np.ndarray]] = {}
    for track in clip.tracks:
        if bone_ids is not None and track.bone_id not in bone_ids:
            continue
        value = sample_track(track, frame)
        if value is None:
            continue
        values.setdefault(track.bone_id, {})[track.property] = value
    return values


def apply_forward_kinematics(
    bones: Sequence[Bone],
    rest: RestPose,
    explicit: dict[str, dict[str, np.ndarray]],
) -> dict[str, BonePose]:
    """World poses for every bone given explicit track values.

    Bones are visited root to leaf. A property with an explicit value is
    used as-is; otherwise the bone follows its parent's current transform
    combined with its rest offset and rest local rotation.
    """
    poses: dict[str, BonePose] = {}
    for bone in breadth_first(bones):
        entry = rest.get(bone.id)
        own = explicit.get(bone.id, {})
        if entry is None:
            entry = capture_rest_pose([bone])[bone.id]
        parent_pose = poses.get(bone.parent_id) if bone.parent_id else None

        if parent_pose is not None:
            pos, rot = local_to_world(
                entry.local_offset, entry.local_rotation, parent_pose.position, parent_pose.rotation
            )
        else:
            pos, rot = entry.position.copy(), entry.rotation.copy()
        if "position" in own:
            pos = np.asarray(own["position"], dtype=np.float64)
        if "rotation" in own:
            rot = as_quat(own["rotation"])

        scale = np.asarray(own.get("scale", bone.scale), dtype=np.float64)
        poses[bone.id] = BonePose(pos, rot, scale)

    # Bones unreachable from a root (only possible with a corrupt graph) keep their rest pose
    for bone in bones:
        if bone.id not in poses:
            entry = rest.get(bone.id) or capture_rest_pose([bone])[bone.id]
            poses[bone.id] = BonePose(entry.position.copy(), entry.rotation.copy(), np.asarray(bone.scale))
    return poses


def evaluate_pose(
    clip: AnimationClip,
    bones: Sequence[Bone],
    rest: RestPose,
    frame: float,
) -> dict[str, BonePose]:
    explicit = sample_clip(clip, frame, {b.id for b in bones})
    return apply_forward_kinematics(bones, rest, explicit)


def posed_bones(bones: Sequence[Bone], poses: dict[str, BonePose]) -> list[Bone]:
    """Copies of ``bones`` carrying the given world poses."""
    result = []
    for bone in bones:
        pose = poses.get(bone.id)
        if pose is None:
            result.append(bone)
            continue
        result.append(
            bone.model_copy(
                update={
                    "position": tuple(float(v) for v in pose.position),
                    "rotation": tuple(float(v) for v in pose.rotation),
                    "scale": tuple(float(v) for v in pose.scale),
                }
            )
        )
    return result


class AnimationPlayer:
    """Playback state for one clip.

    stopped <-> playing. While playing, ``tick`` advances the frame by
    ``delta * fps``. Reaching ``frame_count`` wraps when looping, otherwise
    clamps and stops. The rest pose is recaptured when the clip changes and
    on every stopped -> playing transition, never on a plain seek.
    """

    def __init__(self, fps: float = 30.0, loop: bool = True) -> None:
        self.fps = fps
        self.loop = loop
        self.frame = 0.0
        self.state = STOPPED
        self.clip: AnimationClip | None = None
        self.rest: RestPose | None = None

    @property
    def is_playing(self) -> bool:
        return self.state == PLAYING

    def set_clip(self, clip: AnimationClip | None) -> None:
        old_id = self.clip.id if self.clip is not None else None
        new_id = clip.id if clip is not None else None
        self.clip = clip
        if old_id != new_id:
            self.rest = None

    def play(self, bones: Sequence[Bone]) -> None:
        if self.state == STOPPED:
            self.rest = capture_rest_pose(bones)
        self.state = PLAYING

    def stop(self) -> None:
        self.state = STOPPED

    def seek(self, frame: float) -> None:
        self.frame = max(0.0, float(frame))

    def tick(self, delta: float) -> float:
        if self.state != PLAYING or self.clip is None:
            return self.frame
        frame = self.frame + delta * self.fps
        if frame >= self.clip.frame_count:
            if self.loop:
                frame = frame % self.clip.frame_count
            else:
                frame = float(self.clip.frame_count)
                self.state = STOPPED
        self.frame = frame
        return frame

    def evaluate(self, bones: Sequence[Bone]) -> dict[str, BonePose] | None:
        """Pose at the current frame, or None without a clip or tracks."""
        if self.clip is None or not self.clip.tracks:
            return None
        if self.rest is None:
            self.rest = capture_rest_pose(bones)
        return evaluate_pose(self.clip, bones, self.rest, self.frame)
