"""Skin binding: parent-local joint hierarchy plus per-vertex JOINTS/WEIGHTS."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import numpy as np

from autorig.hierarchy import bone_map, root_bones, structure_hash
from autorig.mesh import MeshData
from autorig.models import AutoWeightSettings, Bone, MeshWeights
from autorig.quat import IDENTITY, as_quat, compose_matrix, world_to_local
from autorig.warning_policy import (
    INFLUENCES_CAPPED,
    WEIGHTS_INCOMPLETE,
    WarningPolicy,
    emit_warning,
)
from autorig.weights import calculate_automatic_weights

SYNTHETIC_ROOT_NAME = "Root"
MAX_INFLUENCES = 4

INACTIVE = "inactive"
ACTIVE = "active"


@dataclass
class BindHierarchy:
    """Joints in skin-index order with parent-local rest transforms.

    When the skeleton has several roots, joint 0 is a synthetic identity root
    parenting all of them and every skeleton bone index is shifted by
    ``index_offset``.
    """

    names: list[str]
    bone_ids: list[str | None]  # None for the synthetic root
    parents: list[int | None]
    local_positions: np.ndarray  # (J, 3)
    local_rotations: np.ndarray  # (J, 4) xyzw
    local_scales: np.ndarray  # (J, 3)
    inverse_bind_matrices: np.ndarray  # (J, 4, 4)
    index_offset: int = 0

    @property
    def joint_count(self) -> int:
        return len(self.names)

    @property
    def root_index(self) -> int | None:
        for i, p in enumerate(self.parents):
            if p is None:
                return i
        return None


@dataclass
class SkinBinding:
    hierarchy: BindHierarchy
    joints: dict[str, np.ndarray] = field(default_factory=dict)  # mesh name -> (N, 4) uint16
    weights: dict[str, np.ndarray] = field(default_factory=dict)  # mesh name -> (N, 4) float32
    structure_hash: str = ""
    settings_hash: str = ""


def bone_world_matrix(bone: Bone) -> np.ndarray:
    return compose_matrix(bone.position, bone.rotation, bone.scale)


def build_bind_hierarchy(bones: Sequence[Bone]) -> BindHierarchy:
    """Convert world-space bones into a single-rooted, parent-local hierarchy."""
    by_id = bone_map(bones)
    roots = root_bones(bones)
    offset = 1 if len(roots) > 1 else 0
    index_of = {b.id: i + offset for i, b in enumerate(bones)}

    names: list[str] = []
    ids: list[str | None] = []
    parents: list[int | None] = []
    local_pos: list[np.ndarray] = []
    local_rot: list[np.ndarray] = []
    scales: list[np.ndarray] = []
    ibms: list[np.ndarray] = []

    if offset:
        names.append(SYNTHETIC_ROOT_NAME)
        ids.append(None)
        parents.append(None)
        local_pos.append(np.zeros(3))
        local_rot.append(IDENTITY.copy())
        scales.append(np.ones(3))
        ibms.append(np.eye(4))

    for bone in bones:
        parent = by_id.get(bone.parent_id) if bone.parent_id else None
        if parent is not None:
            pos, rot = world_to_local(bone.position, bone.rotation, parent.position, parent.rotation)
            parents.append(index_of[parent.id])
        else:
            pos, rot = world_to_local(bone.position, bone.rotation, None, None)
            parents.append(0 if offset else None)
        names.append(bone.name)
        ids.append(bone.id)
        local_pos.append(pos)
        local_rot.append(rot)
        scales.append(np.asarray(bone.scale, dtype=np.float64))
        ibms.append(np.linalg.inv(bone_world_matrix(bone)))

    n = len(names)
    return BindHierarchy(
        names=names,
        bone_ids=ids,
        parents=parents,
        local_positions=np.array(local_pos, dtype=np.float64).reshape(n, 3),
        local_rotations=np.array(local_rot, dtype=np.float64).reshape(n, 4),
        local_scales=np.array(scales, dtype=np.float64).reshape(n, 3),
        inverse_bind_matrices=np.array(ibms, dtype=np.float64).reshape(n, 4, 4),
        index_offset=offset,
    )


def resolve_vertex_weights(
    mesh: MeshData,
    bones: Sequence[Bone],
    stored: Sequence[Sequence[tuple[int, float]]] | None,
    settings: AutoWeightSettings | None = None,
    *,
    index_offset: int = 0,
    policy: WarningPolicy | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-vertex top-4 (joint, weight) arrays for one mesh.

    Source order per vertex: the stored list if non-empty, then automatic
    weights when the stored map is missing or incomplete, then the bone whose
    joint is nearest the vertex in world space. Never raises on missing data.
    """
    n = mesh.vertex_count
    n_bones = len(bones)
    joints = np.zeros((n, MAX_INFLUENCES), dtype=np.uint16)
    weights = np.zeros((n, MAX_INFLUENCES), dtype=np.float32)
    if n == 0:
        return joints, weights

    if stored is not None and 0 < len(stored) < n:
        emit_warning(
            WEIGHTS_INCOMPLETE,
            f"Mesh {mesh.name!r}: stored weights cover {len(stored)} of {n} vertices; "
            f"filling the rest with automatic weights",
            policy=policy,
        )
    needs_auto = stored is None or len(stored) < n or any(not w for w in stored)

    auto: list[list[tuple[int, float]]] | None = None
    world: np.ndarray | None = None
    joint_positions = np.array([b.position for b in bones], dtype=np.float64).reshape(-1, 3)
    capped = 0

    for v in range(n):
        pairs: list[tuple[int, float]] = []
        if stored is not None and v < len(stored) and stored[v]:
            pairs = [(b, w) for b, w in stored[v] if 0 <= b < n_bones]
        elif needs_auto and n_bones:
            if auto is None:
                auto = calculate_automatic_weights(mesh, bones, settings)
            pairs = list(auto[v]) if v < len(auto) else []

        if not pairs and n_bones:
            if world is None:
                world = mesh.world_positions()
            nearest = int(np.argmin(np.linalg.norm(joint_positions - world[v], axis=1)))
            pairs = [(nearest, 1.0)]

        if len(pairs) > MAX_INFLUENCES:
            capped += 1
        ranked = sorted(pairs, key=lambda p: -p[1])[:MAX_INFLUENCES]
        total = sum(w for _, w in ranked)
        if total > 0:
            ranked = [(b + index_offset, w / total) for b, w in ranked]
        else:
            ranked = [(0, 1.0)]
        while len(ranked) < MAX_INFLUENCES:
            ranked.append((0, 0.0))
        for k, (b, w) in enumerate(ranked):
            joints[v, k] = b
            weights[v, k] = w

    if capped:
        emit_warning(
            INFLUENCES_CAPPED,
            f"Mesh {mesh.name!r}: {capped} vertices had more than {MAX_INFLUENCES} "
            f"influences; kept the strongest {MAX_INFLUENCES}",
            policy=policy,
        )
    return joints, weights


def bind_skeleton(
    bones: Sequence[Bone],
    meshes: Sequence[MeshData],
    weight_map: Mapping[str, MeshWeights] | None = None,
    settings: AutoWeightSettings | None = None,
    *,
    policy: WarningPolicy | None = None,
) -> SkinBinding:
    """Build the hierarchy and resolve skin weights for every mesh."""
    settings = settings or AutoWeightSettings()
    weight_map = weight_map or {}
    hierarchy = build_bind_hierarchy(bones)
    binding = SkinBinding(
        hierarchy=hierarchy,
        structure_hash=structure_hash(bones),
        settings_hash=settings.settings_hash(),
    )
    for mesh in meshes:
        entry = weight_map.get(mesh.name)
        stored = entry.vertex_weights if entry is not None else None
        j, w = resolve_vertex_weights(
            mesh,
            bones,
            stored,
            settings,
            index_offset=hierarchy.index_offset,
            policy=policy,
        )
        binding.joints[mesh.name] = j
        binding.weights[mesh.name] = w
    return binding


def joint_matrices(hierarchy: BindHierarchy, bones: Sequence[Bone]) -> np.ndarray:
    """Current world matrices (J, 4, 4) of the joints from the bones' world transforms."""
    by_id = bone_map(bones)
    mats = np.empty((hierarchy.joint_count, 4, 4), dtype=np.float64)
    for j, bone_id in enumerate(hierarchy.bone_ids):
        bone = by_id.get(bone_id) if bone_id is not None else None
        mats[j] = bone_world_matrix(bone) if bone is not None else np.eye(4)
    return mats


def deform_vertices(
    binding: SkinBinding,
    mesh_name: str,
    bones: Sequence[Bone],
    positions: np.ndarray,
) -> np.ndarray:
    """Linear blend skinning of world-space bind positions for the current bone pose."""
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    skin = joint_matrices(binding.hierarchy, bones) @ binding.hierarchy.inverse_bind_matrices
    joints = binding.joints[mesh_name].astype(np.int64)
    weights = binding.weights[mesh_name].astype(np.float64)

    p_h = np.hstack([positions, np.ones((len(positions), 1))])
    out = np.zeros_like(p_h)
    for k in range(MAX_INFLUENCES):
        m = skin[joints[:, k]]  # (N, 4, 4)
        out += weights[:, k, None] * np.einsum("nij,nj->ni", m, p_h)
    return out[:, :3]


class SkeletonBinder:
    """Keeps the skin binding in sync with editor state.

    INACTIVE outside animation (no binding, mesh shown un-skinned). ACTIVE in
    animate mode or while playing. A full rebind happens on activation or when
    the bone id/parent structure or the auto-weight settings change; otherwise
    only the joint matrices are refreshed. Each refresh publishes new arrays so
    readers always see a consistent snapshot.
    """

    def __init__(self, policy: WarningPolicy | None = None) -> None:
        self.policy = policy
        self.state = INACTIVE
        self.binding: SkinBinding | None = None
        self.matrices: np.ndarray | None = None
        self.version = 0
        self.rebuilds = 0

    @staticmethod
    def should_be_active(mode: str, is_playing: bool) -> bool:
        return mode == "animate" or is_playing

    def update(
        self,
        bones: Sequence[Bone],
        meshes: Sequence[MeshData],
        weight_map: Mapping[str, MeshWeights] | None,
        settings: AutoWeightSettings,
        *,
        mode: str,
        is_playing: bool,
    ) -> None:
        if not self.should_be_active(mode, is_playing):
            if self.state == ACTIVE:
                self.deactivate()
            return

        if (
            self.binding is None
            or self.binding.structure_hash != structure_hash(bones)
            or self.binding.settings_hash != settings.settings_hash()
        ):
            self.binding = bind_skeleton(bones, meshes, weight_map, settings, policy=self.policy)
            self.rebuilds += 1
        self.state = ACTIVE
        self.refresh(bones)

    def refresh(self, bones: Sequence[Bone]) -> None:
        if self.binding is None:
            return
        self.matrices = joint_matrices(self.binding.hierarchy, bones)
        self.version += 1

    def deactivate(self) -> None:
        self.state = INACTIVE
        self.binding = None
        self.matrices = None
        self.version += 1

    def local_transform(self, bone_id: str) -> tuple[np.ndarray, np.ndarray] | None:
        """Rest (position, rotation) of a bone relative to its bind parent."""
        if self.binding is None:
            return None
        h = self.binding.hierarchy
        for j, bid in enumerate(h.bone_ids):
            if bid == bone_id:
                return h.local_positions[j].copy(), as_quat(h.local_rotations[j])
        return None
