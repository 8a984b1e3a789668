"""Bone suggestion from mesh analysis.

Each rig type is a pure function ``(analysis, settings) -> suggestions``,
picked from :data:`RIG_STRATEGIES` by ``settings.rig_type``. Positions are in
world space and ``parent_index`` points into the same list.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Callable, Sequence

import numpy as np

from autorig.geometry import AXIS_INDEX, HeightBand, MeshAnalysis
from autorig.models import (
    AutoBoneSettings,
    Bone,
    BoneSuggestion,
    RotationLimits,
    normalize_auto_bone_settings,
)
from autorig.quat import IDENTITY, quat_from_unit_vectors

MIN_BONE_LENGTH = 0.01
MIRROR_CENTER_THRESHOLD = 0.1
CLAMP_MARGIN = 0.02

SuggestFn = Callable[[MeshAnalysis, AutoBoneSettings], list[BoneSuggestion]]


def suggest_bones(
    analysis: MeshAnalysis,
    settings: AutoBoneSettings | dict | None = None,
) -> list[BoneSuggestion]:
    """Propose a bone hierarchy for the analyzed mesh."""
    settings = normalize_auto_bone_settings(settings)
    return RIG_STRATEGIES[settings.rig_type](analysis, settings)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _bone_spacing(analysis: MeshAnalysis, settings: AutoBoneSettings) -> float:
    return max(analysis.avg_size * settings.bone_spacing_factor, 0.001)


def _segments(length: float, spacing: float, lo: int, hi: int) -> int:
    return max(lo, min(hi, math.ceil(length / spacing)))


def _side_front_axes(symmetry_axis: str) -> tuple[int, int]:
    """(side, front) horizontal axis indices for a symmetry axis."""
    if symmetry_axis == "z":
        return 2, 0
    return 0, 2


def _vec(p: np.ndarray | Sequence[float]) -> tuple[float, float, float]:
    return (float(p[0]), float(p[1]), float(p[2]))


class _Builder:
    """Accumulates suggestions and returns the index of each one added."""

    def __init__(self, clamp_min: np.ndarray | None = None, clamp_max: np.ndarray | None = None):
        self.items: list[BoneSuggestion] = []
        self.clamp_min = clamp_min
        self.clamp_max = clamp_max

    def add(self, name: str, position: np.ndarray, parent: int | None, confidence: float) -> int:
        pos = np.asarray(position, dtype=np.float64)
        if self.clamp_min is not None and self.clamp_max is not None:
            pos = np.clip(pos, self.clamp_min, self.clamp_max)
        self.items.append(
            BoneSuggestion(
                position=_vec(pos),
                name=name,
                parent_index=parent,
                confidence=round(max(0.1, min(1.0, confidence)), 4),
            )
        )
        return len(self.items) - 1


def _clamped_builder(analysis: MeshAnalysis) -> _Builder:
    margin = np.maximum(analysis.size * CLAMP_MARGIN, 1e-6)
    return _Builder(analysis.bbox_min - margin, analysis.bbox_max + margin)


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


def suggest_generic(analysis: MeshAnalysis, settings: AutoBoneSettings) -> list[BoneSuggestion]:
    """Root, a horizontal spine and one chain per distinct extremity."""
    center = analysis.center
    size = analysis.size
    avg_size = analysis.avg_size
    spacing = _bone_spacing(analysis, settings)
    out = _Builder()

    root_pos = center.copy()
    root_pos[1] -= size[1] * settings.root_y_offset_factor
    root = out.add("root", root_pos, None, 1.0)

    long_axis = 0 if size[0] > size[2] else 2
    spine_length = float(size[long_axis])
    spine_segments = _segments(
        spine_length, spacing, settings.spine_min_segments, settings.spine_max_segments
    )
    last_spine = root
    for i in range(1, spine_segments + 1):
        t = i / (spine_segments + 1) - 0.5
        pos = center.copy()
        pos[long_axis] += t * spine_length * 0.8
        name = "head" if i == spine_segments else f"spine_{i:02d}"
        last_spine = out.add(name, pos, last_spine, 0.9)

    side_axis, front_axis = _side_front_axes(analysis.symmetry_axis)
    for ext_index, extremity in enumerate(analysis.extremities[: settings.max_extremities]):
        direction = extremity - center
        distance = float(np.linalg.norm(direction))
        if distance < avg_size * settings.extremity_min_distance_factor or distance <= 0.0:
            continue
        direction = direction / distance
        side = float(direction[side_axis])
        front = float(direction[front_axis])

        if abs(direction[1]) > 0.7:
            base = "head" if direction[1] > 0 else "tail"
        elif abs(side) >= abs(front):
            base = "limb_right" if side > 0 else "limb_left"
        else:
            base = "limb_front" if front > 0 else "limb_back"
        base = f"{base}_{ext_index:02d}"

        chain = _segments(distance, spacing, settings.limb_min_segments, settings.limb_max_segments)
        parent = root
        for i in range(1, chain + 1):
            t = i / chain
            pos = root_pos + (extremity - root_pos) * t
            parent = out.add(f"{base}_{i:02d}", pos, parent, 0.8 - (i - 1) * 0.1)

    return out.items


# ---------------------------------------------------------------------------
# Humanoid
# ---------------------------------------------------------------------------

# (low, high) fractions of body height searched for each landmark, the band
# statistic used, and the fallback fraction when no populated band exists.
HUMANOID_WINDOWS: dict[str, tuple[float, float, str, float]] = {
    "pelvis": (0.25, 0.55, "max", 0.50),
    "chest": (0.55, 0.75, "max", 0.65),
    "shoulder": (0.70, 0.85, "max", 0.80),
    "neck": (0.78, 0.92, "min", 0.87),
}

ARM_LENGTH_FACTOR = 0.37
HAND_MIN_LATERAL_FACTOR = 0.2
FOOT_MAX_HEIGHT_FACTOR = 0.15


def _band_width(band: HeightBand, side_axis: int) -> float:
    return band.width_x if side_axis == 0 else band.width_z


def _find_landmark(
    profile: list[HeightBand],
    y0: float,
    height: float,
    side_axis: int,
    window: tuple[float, float, str, float],
) -> tuple[float, HeightBand | None]:
    lo, hi, mode, fallback = window
    best: HeightBand | None = None
    for band in profile:
        if band.count == 0 or height <= 0:
            continue
        frac = (band.y_center - y0) / height
        if frac < lo or frac > hi:
            continue
        if best is None:
            best = band
            continue
        w = _band_width(band, side_axis)
        bw = _band_width(best, side_axis)
        if (mode == "max" and w > bw) or (mode == "min" and w < bw):
            best = band
    if best is None:
        return y0 + height * fallback, None
    return best.y_center, best


def _pick_extremity(
    candidates: list[np.ndarray],
    center: np.ndarray,
    side_axis: int,
    sign: float,
    min_lateral: float,
    accept: Callable[[np.ndarray], bool],
) -> np.ndarray | None:
    """Same-side extremity with the greatest lateral offset, or None."""
    best: np.ndarray | None = None
    best_offset = min_lateral
    for ext in candidates:
        offset = sign * float(ext[side_axis] - center[side_axis])
        if offset > best_offset and accept(ext):
            best = ext
            best_offset = offset
    return best


def suggest_humanoid(analysis: MeshAnalysis, settings: AutoBoneSettings) -> list[BoneSuggestion]:
    """Standing biped layout from height-profile landmarks.

    Landmark windows are tuned for an upright rest pose; other poses get a
    best-effort layout.
    """
    center = analysis.center
    size = analysis.size
    y0 = float(analysis.bbox_min[1])
    height = float(size[1])
    side_axis, _ = _side_front_axes(analysis.symmetry_axis)
    side_size = float(size[side_axis])
    spacing = _bone_spacing(analysis, settings)
    profile = analysis.height_profile
    out = _clamped_builder(analysis)

    pelvis_y, pelvis_band = _find_landmark(profile, y0, height, side_axis, HUMANOID_WINDOWS["pelvis"])
    chest_y, chest_band = _find_landmark(profile, y0, height, side_axis, HUMANOID_WINDOWS["chest"])
    shoulder_y, _ = _find_landmark(profile, y0, height, side_axis, HUMANOID_WINDOWS["shoulder"])
    neck_y, _ = _find_landmark(profile, y0, height, side_axis, HUMANOID_WINDOWS["neck"])
    chest_y = max(chest_y, pelvis_y)
    shoulder_y = max(shoulder_y, chest_y)
    neck_y = max(neck_y, shoulder_y)
    top_y = float(analysis.bbox_max[1])
    head_y = (neck_y + top_y) / 2.0

    pelvis_width = _band_width(pelvis_band, side_axis) if pelvis_band else side_size * 0.3
    chest_width = _band_width(chest_band, side_axis) if chest_band else side_size * 0.4
    hip_half = max(pelvis_width * 0.25, side_size * 0.05)
    shoulder_half = min(max(chest_width * 0.4, side_size * 0.1), side_size / 2.0)

    def at(y: float, lateral: float = 0.0) -> np.ndarray:
        p = center.copy()
        p[1] = y
        p[side_axis] += lateral
        return p

    root = out.add("root", at(pelvis_y - height * settings.root_y_offset_factor), None, 1.0)
    pelvis = out.add("pelvis", at(pelvis_y), root, 0.9)
    spine_segments = _segments(
        chest_y - pelvis_y, spacing, settings.spine_min_segments, settings.spine_max_segments
    )
    parent = pelvis
    for i in range(1, spine_segments + 1):
        y = pelvis_y + (chest_y - pelvis_y) * i / (spine_segments + 1)
        parent = out.add(f"spine_{i:02d}", at(y), parent, 0.85)
    chest = out.add("chest", at(chest_y), parent, 0.9)
    neck = out.add("neck", at(neck_y), chest, 0.9)
    out.add("head", at(head_y), neck, 0.9)

    extremities = list(analysis.extremities)
    foot_ceiling = y0 + height * FOOT_MAX_HEIGHT_FACTOR
    arm_length = height * ARM_LENGTH_FACTOR

    for side, sign in (("l", -1.0), ("r", 1.0)):
        clavicle = out.add(f"clavicle_{side}", at(shoulder_y, sign * shoulder_half * 0.35), chest, 0.8)
        shoulder_pos = at(shoulder_y, sign * shoulder_half)
        upper_arm = out.add(f"upper_arm_{side}", shoulder_pos, clavicle, 0.8)
        hand_target = _pick_extremity(
            extremities,
            center,
            side_axis,
            sign,
            side_size * HAND_MIN_LATERAL_FACTOR,
            lambda e: float(e[1]) > foot_ceiling,
        )
        if hand_target is not None:
            hand_pos, hand_conf = hand_target.copy(), 0.85
        else:
            hand_pos, hand_conf = at(shoulder_y, sign * (shoulder_half + arm_length)), 0.6
        lower_arm = out.add(f"lower_arm_{side}", (shoulder_pos + hand_pos) / 2.0, upper_arm, 0.75)
        out.add(f"hand_{side}", hand_pos, lower_arm, hand_conf)

    for side, sign in (("l", -1.0), ("r", 1.0)):
        hip_pos = at(pelvis_y - height * 0.03, sign * hip_half)
        upper_leg = out.add(f"upper_leg_{side}", hip_pos, pelvis, 0.8)
        foot_target = _pick_extremity(
            extremities,
            center,
            side_axis,
            sign,
            0.0,
            lambda e: float(e[1]) < foot_ceiling,
        )
        if foot_target is not None:
            foot_pos, foot_conf = foot_target.copy(), 0.85
        else:
            foot_pos, foot_conf = at(y0 + height * 0.05, sign * hip_half), 0.6
        lower_leg = out.add(f"lower_leg_{side}", (hip_pos + foot_pos) / 2.0, upper_leg, 0.75)
        out.add(f"foot_{side}", foot_pos, lower_leg, foot_conf)

    return out.items


# ---------------------------------------------------------------------------
# Quadruped
# ---------------------------------------------------------------------------


def suggest_quadruped(analysis: MeshAnalysis, settings: AutoBoneSettings) -> list[BoneSuggestion]:
    """Horizontal spine along the body with neck, head, tail and four legs.

    The longer horizontal axis is the body axis. Forward is its positive
    direction unless the highest extremity lies on the negative side.
    """
    center = analysis.center
    size = analysis.size
    y0 = float(analysis.bbox_min[1])
    height = float(size[1])
    front_axis = 0 if size[0] > size[2] else 2
    side_axis = 2 if front_axis == 0 else 0
    length = float(size[front_axis])
    width = float(size[side_axis])
    spacing = _bone_spacing(analysis, settings)
    out = _clamped_builder(analysis)

    forward = 1.0
    if analysis.extremities:
        highest = max(analysis.extremities, key=lambda e: float(e[1]))
        if float(highest[front_axis] - center[front_axis]) < 0:
            forward = -1.0

    body_y = y0 + height * 0.7

    def at(along: float, y: float, lateral: float = 0.0) -> np.ndarray:
        p = center.copy()
        p[front_axis] += forward * along
        p[1] = y
        p[side_axis] += lateral
        return p

    hip_along = -length * 0.25
    shoulder_along = length * 0.25
    root = out.add("root", at(hip_along, body_y), None, 1.0)

    spine_segments = _segments(
        shoulder_along - hip_along, spacing, settings.spine_min_segments, settings.spine_max_segments
    )
    spine = root
    for i in range(1, spine_segments + 1):
        along = hip_along + (shoulder_along - hip_along) * i / spine_segments
        spine = out.add(f"spine_{i:02d}", at(along, body_y), spine, 0.9)

    neck = out.add("neck", at(length * 0.35, y0 + height * 0.8), spine, 0.85)
    head_pos = at(length * 0.45, y0 + height * 0.9)
    front_high = [
        e for e in analysis.extremities
        if forward * float(e[front_axis] - center[front_axis]) > length * 0.2 and float(e[1]) > body_y
    ]
    if front_high:
        head_pos = max(front_high, key=lambda e: float(e[1])).copy()
    out.add("head", head_pos, neck, 0.85)

    tail_tip = at(-length * 0.5, body_y)
    behind = [
        e for e in analysis.extremities
        if forward * float(e[front_axis] - center[front_axis]) < -length * 0.3
        and float(e[1]) > y0 + height * 0.3
    ]
    if behind:
        tail_tip = min(behind, key=lambda e: forward * float(e[front_axis])).copy()
    root_pos = np.asarray(out.items[root].position)
    tail_segments = _segments(
        float(np.linalg.norm(tail_tip - root_pos)),
        spacing,
        settings.limb_min_segments,
        settings.limb_max_segments,
    )
    parent = root
    for i in range(1, tail_segments + 1):
        pos = root_pos + (tail_tip - root_pos) * (i / tail_segments)
        parent = out.add(f"tail_{i:02d}", pos, parent, 0.75)

    foot_ceiling = y0 + height * 0.25
    for end, along, leg_parent in (("front", shoulder_along, spine), ("back", hip_along, root)):
        for side, sign in (("l", -1.0), ("r", 1.0)):
            lateral = sign * width * 0.25
            hip_pos = at(along, body_y - height * 0.1, lateral)
            foot_pos = at(along, y0, lateral)
            end_sign = 1.0 if end == "front" else -1.0
            target = _pick_extremity(
                list(analysis.extremities),
                center,
                side_axis,
                sign,
                0.0,
                lambda e: float(e[1]) < foot_ceiling
                and end_sign * forward * float(e[front_axis] - center[front_axis]) > 0,
            )
            if target is not None:
                foot_pos = target.copy()
            knee_pos = hip_pos + (foot_pos - hip_pos) * 0.5
            hip = out.add(f"{end}_leg_{side}_hip", hip_pos, leg_parent, 0.8)
            knee = out.add(f"{end}_leg_{side}_knee", knee_pos, hip, 0.75)
            out.add(f"{end}_leg_{side}_foot", foot_pos, knee, 0.85 if target is not None else 0.6)

    return out.items


RIG_STRATEGIES: dict[str, SuggestFn] = {
    "auto": suggest_generic,
    "humanoid": suggest_humanoid,
    "quadruped": suggest_quadruped,
}


# ---------------------------------------------------------------------------
# Bone utilities
# ---------------------------------------------------------------------------


def bones_from_suggestions(suggestions: Sequence[BoneSuggestion]) -> list[Bone]:
    """Turn suggestions into bones with fresh ids.

    A bone's length is the distance to its first child (to its parent for
    leaves), at least 0.01, and its local +Y is aimed at the first child.
    Parent indices that are out of range or self-referencing become roots.
    """
    n = len(suggestions)
    ids = [str(uuid.uuid4()) for _ in range(n)]
    parents: list[int | None] = []
    first_child: dict[int, int] = {}
    for i, s in enumerate(suggestions):
        p = s.parent_index
        if p is None or p < 0 or p >= n or p == i:
            p = None
        parents.append(p)
        if p is not None and p not in first_child:
            first_child[p] = i

    bones: list[Bone] = []
    for i, s in enumerate(suggestions):
        pos = np.asarray(s.position, dtype=np.float64)
        rotation = IDENTITY
        length = 0.0
        child = first_child.get(i)
        if child is not None:
            offset = np.asarray(suggestions[child].position, dtype=np.float64) - pos
            length = float(np.linalg.norm(offset))
            if length > 1e-9:
                rotation = quat_from_unit_vectors((0.0, 1.0, 0.0), offset)
        elif parents[i] is not None:
            length = float(np.linalg.norm(pos - np.asarray(suggestions[parents[i]].position)))
        bones.append(
            Bone(
                id=ids[i],
                name=s.name,
                parent_id=ids[parents[i]] if parents[i] is not None else None,
                position=_vec(pos),
                rotation=tuple(float(v) for v in rotation),
                length=max(length, MIN_BONE_LENGTH),
                rotation_limits=RotationLimits(),
            )
        )
    return bones


_MIRROR_PATTERNS: list[tuple[re.Pattern[str] | str, str]] = [
    (re.compile(r"_left_"), "_right_"),
    (re.compile(r"_right_"), "_left_"),
    (re.compile(r"_left$"), "_right"),
    (re.compile(r"_right$"), "_left"),
    (re.compile(r"_l_"), "_r_"),
    (re.compile(r"_r_"), "_l_"),
    (re.compile(r"_l$"), "_r"),
    (re.compile(r"_r$"), "_l"),
    ("left_", "right_"),
    ("right_", "left_"),
]


def mirror_name(name: str) -> str:
    """Swap the left/right qualifier of a bone name, else append ``_mirrored``."""
    for pattern, replacement in _MIRROR_PATTERNS:
        if isinstance(pattern, str):
            if pattern in name:
                return name.replace(pattern, replacement, 1)
        elif pattern.search(name):
            return pattern.sub(replacement, name)
    return f"{name}_mirrored"


def suggest_mirrored_bones(bones: Sequence[Bone], axis: str = "x") -> list[Bone]:
    """Mirror copies of the off-center bones across ``axis``.

    Bones within 0.1 of the mirror plane are skipped, as are bones whose
    mirror name already exists. Parents that are themselves mirrored map to
    their new copies.
    """
    ai = AXIS_INDEX[axis]
    by_id = {b.id: b for b in bones}
    existing = {b.name for b in bones}
    id_map: dict[str, str] = {}
    mirrored: list[Bone] = []

    for bone in bones:
        if abs(bone.position[ai]) < MIRROR_CENTER_THRESHOLD:
            continue
        name = mirror_name(bone.name)
        if name in existing:
            continue
        new_id = str(uuid.uuid4())
        id_map[bone.id] = new_id

        position = list(bone.position)
        position[ai] *= -1
        rotation = list(bone.rotation)
        for k in range(3):
            if k != ai:
                rotation[k] *= -1

        parent_id = bone.parent_id
        if parent_id is not None:
            parent = by_id.get(parent_id)
            if parent is not None and abs(parent.position[ai]) >= MIRROR_CENTER_THRESHOLD:
                parent_id = id_map.get(parent_id, parent_id)

        mirrored.append(
            bone.model_copy(
                update={
                    "id": new_id,
                    "name": name,
                    "parent_id": parent_id,
                    "position": tuple(position),
                    "rotation": tuple(rotation),
                    "rotation_limits": bone.rotation_limits.model_copy(),
                }
            )
        )
        existing.add(name)
    return mirrored


def suggest_bone_chain(
    start: Sequence[float],
    end: Sequence[float],
    segments: int,
    base_name: str,
) -> list[BoneSuggestion]:
    """``segments + 1`` evenly spaced joints from start to end, each parented to the previous."""
    segments = max(1, int(segments))
    a = np.asarray(start, dtype=np.float64)
    b = np.asarray(end, dtype=np.float64)
    return [
        BoneSuggestion(
            position=_vec(a + (b - a) * (i / segments)),
            name=f"{base_name}_{i:02d}",
            parent_index=None if i == 0 else i - 1,
            confidence=0.9,
        )
        for i in range(segments + 1)
    ]


def generate_bone_name(
    existing: Sequence[Bone],
    parent: Bone | None = None,
    prefix: str | None = None,
) -> str:
    base = prefix or (f"{parent.name}_child" if parent is not None else "bone")
    names = {b.name for b in existing}
    name = base
    index = 1
    while name in names:
        name = f"{base}_{index:02d}"
        index += 1
    return name
