"""Authoritative editor state with change notifications and undo history.

Consumers subscribe to ``"structure"`` events (bone ids or parents, weight
map, settings, whole-project swaps) or ``"transform"`` events (bone poses
only) and pick the cheapest invalidation for what changed: a skin binder
rebinds on structure and only refreshes matrices on transform.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from autorig.animation import AnimationPlayer, BonePose, posed_bones
from autorig.errors import HierarchyError, ValidationError
from autorig.hierarchy import bone_map, would_create_cycle
from autorig.models import (
    AnimationClip,
    AnimationTrack,
    AutoBoneSettings,
    AutoWeightSettings,
    Bone,
    BoneSuggestion,
    EditorMode,
    Keyframe,
    MeshWeights,
    ProjectData,
    Skeleton,
    normalize_auto_bone_settings,
)
from autorig.suggest import bones_from_suggestions, generate_bone_name, suggest_mirrored_bones

STRUCTURE = "structure"
TRANSFORM = "transform"
EVENTS = (STRUCTURE, TRANSFORM)

MAX_HISTORY = 50
DEFAULT_CLIP_FPS = 30.0
DEFAULT_CLIP_FRAMES = 60

_TRANSFORM_FIELDS = frozenset({"position", "rotation", "scale"})

Listener = Callable[[str], None]


@dataclass
class HistoryEntry:
    description: str
    skeleton: Skeleton
    weight_map: dict[str, MeshWeights]
    animations: list[AnimationClip]


def _revalidate(model: Any, updates: Mapping[str, Any]) -> Any:
    """Copy of ``model`` with ``updates`` applied, validated like fresh input."""
    try:
        return type(model).model_validate({**model.model_dump(), **updates})
    except ValueError as e:
        raise ValidationError(str(e)) from e


class EditorState:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {event: [] for event in EVENTS}
        self.auto_bone_settings = AutoBoneSettings()
        self.auto_weight_settings = AutoWeightSettings()
        self._reset()

    def _reset(self) -> None:
        self.model_path = ""
        self.model_hash = ""
        self.dirty = False
        self.skeleton = Skeleton()
        self.weight_map: dict[str, MeshWeights] = {}
        self.animations: list[AnimationClip] = []
        self.current_animation_id: str | None = None
        self.mode: EditorMode = "select"
        self.player = AnimationPlayer()
        self.rest_bones: list[Bone] | None = None
        self._undo: list[HistoryEntry] = []
        self._redo: list[HistoryEntry] = []

    # --- Subscriptions ---

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener(event)``; returns a function that unregisters it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown editor event {event!r} (expected one of {EVENTS})")
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def _notify(self, event: str) -> None:
        for listener in list(self._listeners[event]):
            listener(event)

    # --- Accessors ---

    @property
    def bones(self) -> list[Bone]:
        return self.skeleton.bones

    def get_bone(self, bone_id: str) -> Bone | None:
        return bone_map(self.bones).get(bone_id)

    def _require_bone(self, bone_id: str) -> int:
        for i, bone in enumerate(self.bones):
            if bone.id == bone_id:
                return i
        raise ValidationError(f"Unknown bone {bone_id!r}")

    def get_animation(self, animation_id: str) -> AnimationClip | None:
        for clip in self.animations:
            if clip.id == animation_id:
                return clip
        return None

    def _require_animation(self, animation_id: str) -> int:
        for i, clip in enumerate(self.animations):
            if clip.id == animation_id:
                return i
        raise ValidationError(f"Unknown animation {animation_id!r}")

    @property
    def current_animation(self) -> AnimationClip | None:
        if self.current_animation_id is None:
            return None
        return self.get_animation(self.current_animation_id)

    @property
    def is_animating(self) -> bool:
        return self.mode == "animate" or self.player.is_playing

    # --- Project ---

    def new_project(self) -> None:
        self._reset()
        self._notify(STRUCTURE)

    def load_project(self, project: ProjectData) -> None:
        self._reset()
        self.model_path = project.model_path
        self.model_hash = project.model_hash
        self.skeleton = project.skeleton.model_copy(deep=True)
        self.weight_map = {k: v.model_copy(deep=True) for k, v in project.weight_map.items()}
        self.animations = [clip.model_copy(deep=True) for clip in project.animations]
        self.current_animation_id = self.animations[0].id if self.animations else None
        self.rest_bones = [b.model_copy(deep=True) for b in self.bones]
        self.player.set_clip(self.current_animation)
        self._notify(STRUCTURE)

    def project_data(self) -> ProjectData:
        """Serializable project. Bones are written in their rest pose, never mid-animation."""
        return ProjectData(
            model_path=self.model_path,
            model_hash=self.model_hash,
            skeleton=Skeleton(bones=[b.model_copy(deep=True) for b in self._at_rest(self.bones)]),
            weight_map={k: v.model_copy(deep=True) for k, v in self.weight_map.items()},
            animations=[clip.model_copy(deep=True) for clip in self.animations],
        )

    def set_model(self, path: str, model_hash: str = "") -> None:
        self.model_path = path
        self.model_hash = model_hash
        self.dirty = True

    def mark_clean(self) -> None:
        self.dirty = False

    def _at_rest(self, bones: Sequence[Bone]) -> list[Bone]:
        """``bones`` with the transforms of the rest snapshot, where it has them."""
        if self.rest_bones is None:
            return list(bones)
        rest = bone_map(self.rest_bones)
        return [
            b.model_copy(
                update={
                    "position": rest[b.id].position,
                    "rotation": rest[b.id].rotation,
                    "scale": rest[b.id].scale,
                }
            )
            if b.id in rest
            else b
            for b in bones
        ]

    def _settle_rest_pose(self) -> None:
        """Put posed bones back at rest before an edit that rebuilds the rest snapshot."""
        if self.is_animating:
            self.skeleton.bones = self._at_rest(self.bones)

    def _changed(self, event: str, *, invalidate_rest: bool = False) -> None:
        self.dirty = True
        if invalidate_rest:
            self.rest_bones = None
            self.player.rest = None
            if self.is_animating:
                self.apply_current_pose()
        self._notify(event)

    # --- History ---

    def _snapshot(self, description: str) -> HistoryEntry:
        skeleton = self.skeleton.model_copy(deep=True)
        if self.is_animating:
            skeleton.bones = self._at_rest(skeleton.bones)
        return HistoryEntry(
            description=description,
            skeleton=skeleton,
            weight_map={k: v.model_copy(deep=True) for k, v in self.weight_map.items()},
            animations=[clip.model_copy(deep=True) for clip in self.animations],
        )

    def push_history(self, description: str) -> None:
        self._undo.append(self._snapshot(description))
        if len(self._undo) > MAX_HISTORY:
            del self._undo[0]
        self._redo.clear()

    def _restore(self, entry: HistoryEntry) -> None:
        self.skeleton = entry.skeleton
        self.weight_map = entry.weight_map
        self.animations = entry.animations
        if self.current_animation is None:
            self.current_animation_id = self.animations[0].id if self.animations else None
        self.player.set_clip(self.current_animation)
        self._changed(STRUCTURE, invalidate_rest=True)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        if not self._undo:
            return False
        entry = self._undo.pop()
        self._redo.append(self._snapshot(entry.description))
        self._restore(entry)
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        entry = self._redo.pop()
        self._undo.append(self._snapshot(entry.description))
        self._restore(entry)
        return True

    def clear_history(self) -> None:
        self._undo.clear()
        self._redo.clear()

    # --- Skeleton ---

    def add_bone(
        self,
        position: Sequence[float] = (0.0, 0.0, 0.0),
        parent_id: str | None = None,
        name: str | None = None,
    ) -> str:
        parent = None
        if parent_id is not None:
            parent = self.bones[self._require_bone(parent_id)]
        bone = Bone(
            id=str(uuid.uuid4()),
            name=name or generate_bone_name(self.bones, parent),
            parent_id=parent_id,
            position=tuple(float(v) for v in position),
            length=0.5,
        )
        self._settle_rest_pose()
        self.push_history(f"Add bone: {bone.name}")
        self.bones.append(bone)
        self._changed(STRUCTURE, invalidate_rest=True)
        return bone.id

    def update_bone(self, bone_id: str, **updates: Any) -> None:
        """Edit bone attributes. Reparenting goes through :meth:`set_bone_parent`.

        Transform edits outside animation redefine the rest pose, so the
        snapshot is dropped; while animating they are pose-only.
        """
        if "parent_id" in updates:
            self.set_bone_parent(bone_id, updates.pop("parent_id"))
        if not updates:
            return
        if "id" in updates:
            raise ValidationError("Bone ids cannot be changed")
        index = self._require_bone(bone_id)
        self.bones[index] = _revalidate(self.bones[index], updates)
        transform_only = set(updates) <= _TRANSFORM_FIELDS
        self._changed(
            TRANSFORM if transform_only else STRUCTURE,
            invalidate_rest=not self.is_animating and bool(set(updates) & _TRANSFORM_FIELDS),
        )

    def set_bone_poses(self, poses: Mapping[str, BonePose]) -> None:
        """Write evaluated world poses onto the bones without touching the rest pose."""
        self.skeleton.bones = posed_bones(self.bones, dict(poses))
        self._notify(TRANSFORM)

    def delete_bone(self, bone_id: str) -> None:
        """Remove a bone, reparenting its children to its parent."""
        index = self._require_bone(bone_id)
        removed = self.bones[index]
        self._settle_rest_pose()
        self.push_history(f"Delete bone: {removed.name}")
        remaining = []
        for bone in self.bones:
            if bone.id == bone_id:
                continue
            if bone.parent_id == bone_id:
                bone = bone.model_copy(update={"parent_id": removed.parent_id})
            remaining.append(bone)
        self.skeleton.bones = remaining
        for clip_index, clip in enumerate(self.animations):
            tracks = [t for t in clip.tracks if t.bone_id != bone_id]
            if len(tracks) != len(clip.tracks):
                self.animations[clip_index] = clip.model_copy(update={"tracks": tracks})
        self._changed(STRUCTURE, invalidate_rest=True)

    def set_bone_parent(self, bone_id: str, parent_id: str | None) -> None:
        """Reparent a bone. Rejects unknown parents, self-parenting and cycles."""
        index = self._require_bone(bone_id)
        if parent_id is not None:
            if parent_id == bone_id:
                raise HierarchyError(f"Bone {bone_id!r} cannot be its own parent")
            if self.get_bone(parent_id) is None:
                raise HierarchyError(f"Unknown parent bone {parent_id!r}")
            if would_create_cycle(bone_id, parent_id, self.bones):
                raise HierarchyError(
                    f"Cannot parent {bone_id!r} under its descendant {parent_id!r}"
                )
        if self.bones[index].parent_id == parent_id:
            return
        self._settle_rest_pose()
        self.push_history("Change bone parent")
        self.bones[index] = self.bones[index].model_copy(update={"parent_id": parent_id})
        self._changed(STRUCTURE, invalidate_rest=True)

    def mirror_bones(self, bone_ids: Sequence[str] | None = None, axis: str = "x") -> list[str]:
        """Add mirrored copies of the given bones (all bones when None). Returns the new ids."""
        self._settle_rest_pose()
        wanted = set(bone_ids) if bone_ids is not None else None
        selected = [b for b in self.bones if wanted is None or b.id in wanted]
        existing = {b.name for b in self.bones}
        mirrored = [b for b in suggest_mirrored_bones(selected, axis) if b.name not in existing]
        if not mirrored:
            return []
        self.push_history(f"Mirror bones ({axis}-axis)")
        self.bones.extend(mirrored)
        self._changed(STRUCTURE, invalidate_rest=True)
        return [b.id for b in mirrored]

    def apply_suggestions(self, suggestions: Sequence[BoneSuggestion]) -> list[str]:
        """Replace the skeleton with bones built from suggestions.

        The weight map is cleared since its bone indices no longer apply.
        """
        bones = bones_from_suggestions(suggestions)
        self.push_history("Apply bone suggestions")
        self.skeleton = Skeleton(bones=bones)
        self.weight_map = {}
        self.animations = [clip.model_copy(update={"tracks": []}) for clip in self.animations]
        self._changed(STRUCTURE, invalidate_rest=True)
        return [b.id for b in bones]

    # --- Weights ---

    def set_weight_map(self, weight_map: Mapping[str, MeshWeights]) -> None:
        self.push_history("Set weight map")
        self.weight_map = dict(weight_map)
        self._changed(STRUCTURE)

    def update_mesh_weights(self, mesh_name: str, vertex_weights: Sequence[Sequence[tuple[int, float]]]) -> None:
        self.push_history(f"Update weights: {mesh_name}")
        self.weight_map[mesh_name] = MeshWeights(vertex_weights=[list(v) for v in vertex_weights])
        self._changed(STRUCTURE)

    # --- Animations ---

    def add_animation(self, name: str | None = None) -> str:
        clip = AnimationClip(
            id=str(uuid.uuid4()),
            name=name or f"animation_{len(self.animations) + 1}",
            fps=DEFAULT_CLIP_FPS,
            frame_count=DEFAULT_CLIP_FRAMES,
        )
        self.animations.append(clip)
        self.set_current_animation(clip.id)
        self.dirty = True
        return clip.id

    def update_animation(self, animation_id: str, **updates: Any) -> None:
        if "id" in updates:
            raise ValidationError("Animation ids cannot be changed")
        index = self._require_animation(animation_id)
        self.animations[index] = _revalidate(self.animations[index], updates)
        if animation_id == self.current_animation_id:
            self.player.set_clip(self.animations[index])
        self.dirty = True

    def delete_animation(self, animation_id: str) -> None:
        index = self._require_animation(animation_id)
        del self.animations[index]
        if self.current_animation_id == animation_id:
            self.set_current_animation(self.animations[0].id if self.animations else None)
        self.dirty = True

    def duplicate_animation(self, animation_id: str) -> str:
        source = self.animations[self._require_animation(animation_id)]
        copy = source.model_copy(deep=True, update={"id": str(uuid.uuid4()), "name": f"{source.name}_copy"})
        self.animations.append(copy)
        self.set_current_animation(copy.id)
        self.dirty = True
        return copy.id

    def set_current_animation(self, animation_id: str | None) -> None:
        if animation_id is not None:
            self._require_animation(animation_id)
        self.current_animation_id = animation_id
        self.player.set_clip(self.current_animation)

    def _make_track(self, bone_id: str, prop: str, keyframes: list[Keyframe]) -> AnimationTrack | None:
        """Validated track for ``keyframes``; None when no keys remain."""
        if not keyframes:
            return None
        try:
            return AnimationTrack(bone_id=bone_id, property=prop, keyframes=keyframes)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _replace_track(self, animation_id: str, bone_id: str, prop: str, track: AnimationTrack | None) -> None:
        index = self._require_animation(animation_id)
        clip = self.animations[index]
        tracks = [t for t in clip.tracks if not (t.bone_id == bone_id and t.property == prop)]
        if track is not None:
            tracks.append(track)
        self.animations[index] = clip.model_copy(update={"tracks": tracks})
        if animation_id == self.current_animation_id:
            self.player.set_clip(self.animations[index])
        self.dirty = True

    def add_keyframe(
        self,
        animation_id: str,
        bone_id: str,
        prop: str,
        frame: int,
        value: Sequence[float],
        interpolation: str = "linear",
    ) -> None:
        """Insert a key, replacing any existing key at the same frame."""
        self._require_bone(bone_id)
        clip = self.animations[self._require_animation(animation_id)]
        track = clip.find_track(bone_id, prop)
        try:
            new_key = Keyframe(frame=frame, value=list(value), interpolation=interpolation)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        keys = [k for k in (track.keyframes if track else []) if k.frame != frame]
        keys.append(new_key)
        new_track = self._make_track(bone_id, prop, keys)
        self.push_history("Add keyframe")
        self._replace_track(animation_id, bone_id, prop, new_track)

    def update_keyframe(self, animation_id: str, bone_id: str, prop: str, frame: int, **updates: Any) -> None:
        clip = self.animations[self._require_animation(animation_id)]
        track = clip.find_track(bone_id, prop)
        if track is None:
            return
        keys = [_revalidate(k, updates) if k.frame == frame else k for k in track.keyframes]
        self._replace_track(animation_id, bone_id, prop, self._make_track(bone_id, prop, keys))

    def delete_keyframe(self, animation_id: str, bone_id: str, prop: str, frame: int) -> None:
        """Remove a key; the track goes away with its last key."""
        clip = self.animations[self._require_animation(animation_id)]
        track = clip.find_track(bone_id, prop)
        if track is None:
            return
        remaining = self._make_track(bone_id, prop, [k for k in track.keyframes if k.frame != frame])
        self.push_history("Delete keyframe")
        self._replace_track(animation_id, bone_id, prop, remaining)

    # --- Modes and timeline ---

    def set_mode(self, mode: EditorMode) -> None:
        """Switch editor mode. Leaving animate mode stops playback and restores the rest pose."""
        was_animate = self.mode == "animate"
        self.mode = mode
        if was_animate and mode != "animate":
            self.player.stop()
            self.restore_rest_pose()

    def restore_rest_pose(self) -> None:
        if self.rest_bones is None:
            return
        self.skeleton.bones = self._at_rest(self.bones)
        self._notify(TRANSFORM)

    def _ensure_rest_snapshot(self) -> list[Bone]:
        if self.rest_bones is None:
            self.rest_bones = [b.model_copy(deep=True) for b in self.bones]
        return self.rest_bones

    @property
    def timeline(self) -> dict[str, Any]:
        return {
            "current_frame": self.player.frame,
            "is_playing": self.player.is_playing,
            "fps": self.player.fps,
            "loop": self.player.loop,
        }

    def update_timeline(
        self,
        *,
        current_frame: float | None = None,
        is_playing: bool | None = None,
        fps: float | None = None,
        loop: bool | None = None,
    ) -> None:
        if fps is not None:
            if fps <= 0:
                raise ValidationError(f"fps must be > 0, got {fps}")
            self.player.fps = float(fps)
        if loop is not None:
            self.player.loop = bool(loop)
        if is_playing is True:
            self.play()
        elif is_playing is False:
            self.player.stop()
        if current_frame is not None:
            self.seek(current_frame)

    def play(self) -> None:
        self.player.set_clip(self.current_animation)
        self.player.play(self._ensure_rest_snapshot())

    def stop(self) -> None:
        self.player.stop()

    def seek(self, frame: float) -> None:
        self.player.seek(frame)
        if self.is_animating:
            self.apply_current_pose()

    def tick(self, delta: float) -> float:
        """Advance playback by ``delta`` seconds and pose the skeleton."""
        frame = self.player.tick(delta)
        if self.is_animating:
            self.apply_current_pose()
        return frame

    def apply_current_pose(self) -> None:
        """Sample the current clip at the current frame and write the FK pose."""
        self.player.set_clip(self.current_animation)
        poses = self.player.evaluate(self._ensure_rest_snapshot())
        if poses is not None:
            self.set_bone_poses(poses)

    # --- Settings ---

    def update_auto_weight_settings(self, **updates: Any) -> None:
        self.auto_weight_settings = AutoWeightSettings(**{**self.auto_weight_settings.model_dump(), **updates})
        self._notify(STRUCTURE)

    def update_auto_bone_settings(self, **updates: Any) -> None:
        self.auto_bone_settings = normalize_auto_bone_settings(
            {**self.auto_bone_settings.model_dump(), **updates}
        )
        self._notify(STRUCTURE)
