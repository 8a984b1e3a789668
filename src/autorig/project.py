"""Project file loading, saving, integrity checks and validation."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from autorig.errors import ParseError
from autorig.hierarchy import find_cycle
from autorig.models import PROJECT_VERSION, ProjectData
from autorig.warning_policy import (
    MODEL_HASH_MISMATCH,
    UNKNOWN_PROJECT_VERSION,
    WarningPolicy,
    emit_warning,
)

SUPPORTED_VERSIONS = frozenset({"1.0"})
_HASH_CHUNK = 1 << 16


def new_project() -> ProjectData:
    return ProjectData()


def migrate_project(data: dict, *, policy: WarningPolicy | None = None) -> dict:
    """Bring raw project JSON up to the current layout.

    A missing version is assumed to be the current one. Unknown versions are
    reported and loaded as-is.
    """
    version = data.get("version")
    if not version:
        emit_warning(
            UNKNOWN_PROJECT_VERSION,
            f"Project has no version, assuming {PROJECT_VERSION}",
            policy=policy,
        )
        data["version"] = PROJECT_VERSION
    elif str(version) not in SUPPORTED_VERSIONS:
        emit_warning(UNKNOWN_PROJECT_VERSION, f"Unknown project version: {version}", policy=policy)
    return data


def load_project(path: Path, *, policy: WarningPolicy | None = None) -> ProjectData:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"Cannot read project file: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid project JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Project file must contain a JSON object")

    data = migrate_project(data, policy=policy)
    try:
        return ProjectData.model_validate(data)
    except PydanticValidationError as e:
        raise ParseError(f"Project schema validation failed:\n{e}") from e


def dump_project(project: ProjectData) -> str:
    return json.dumps(project.model_dump(mode="json", by_alias=True), indent=2)


def save_project(project: ProjectData, path: Path) -> None:
    Path(path).write_text(dump_project(project) + "\n", encoding="utf-8")


def calculate_model_hash(path: Path) -> str:
    """Hex SHA-256 of the model file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_model_integrity(
    path: Path,
    expected_hash: str,
    *,
    policy: WarningPolicy | None = None,
) -> bool:
    """True when the file still hashes to ``expected_hash``.

    An empty expected hash means none was recorded and always passes. A
    mismatch or unreadable file emits W04 and returns False.
    """
    if not expected_hash:
        return True
    try:
        actual = calculate_model_hash(path)
    except OSError as e:
        emit_warning(MODEL_HASH_MISMATCH, f"Cannot hash model {path}: {e}", policy=policy)
        return False
    if actual != expected_hash:
        emit_warning(
            MODEL_HASH_MISMATCH,
            f"Model {path} has changed since the project was saved "
            f"(expected {expected_hash[:12]}..., got {actual[:12]}...)",
            policy=policy,
        )
        return False
    return True


def resolve_model_path(project: ProjectData, project_path: Path) -> Path:
    """Model path of the project; relative paths are taken from the project file's directory."""
    model = Path(project.model_path)
    if not model.is_absolute():
        model = Path(project_path).parent / model
    return model


def validate_project(project: ProjectData) -> list[str]:
    """Human-readable problems with a loaded project. Empty when valid."""
    errors: list[str] = []
    if not project.version:
        errors.append("Missing project version")

    bones = project.skeleton.bones
    ids: set[str] = set()
    for index, bone in enumerate(bones):
        if not bone.id:
            errors.append(f"Bone at index {index} has no ID")
        elif bone.id in ids:
            errors.append(f"Duplicate bone ID {bone.id!r}")
        ids.add(bone.id)
        if not bone.name:
            errors.append(f"Bone {bone.id!r} has no name")
    for bone in bones:
        if bone.parent_id is not None and bone.parent_id not in ids:
            errors.append(f"Bone {bone.name!r} references non-existent parent {bone.parent_id!r}")
    cycle = find_cycle(bones)
    if cycle:
        errors.append(f"Bone hierarchy contains a cycle: {' -> '.join(cycle)}")

    for name, entry in project.weight_map.items():
        for v, pairs in enumerate(entry.vertex_weights):
            bad = [b for b, _ in pairs if b >= len(bones)]
            if bad:
                errors.append(f"Weight map {name!r}, vertex {v}: bone index {bad[0]} out of range")
                break

    clip_ids: set[str] = set()
    for clip in project.animations:
        if not clip.id:
            errors.append("Animation has no ID")
        elif clip.id in clip_ids:
            errors.append(f"Duplicate animation ID {clip.id!r}")
        clip_ids.add(clip.id)
        if not clip.name:
            errors.append(f"Animation {clip.id!r} has no name")
        for track in clip.tracks:
            if track.bone_id not in ids:
                errors.append(
                    f"Animation {clip.name!r} has a {track.property} track for unknown bone {track.bone_id!r}"
                )
            if track.keyframes and track.keyframes[-1].frame > clip.frame_count:
                errors.append(
                    f"Animation {clip.name!r}: {track.property} track of {track.bone_id!r} "
                    f"has a keyframe beyond frame count {clip.frame_count}"
                )
    return errors
