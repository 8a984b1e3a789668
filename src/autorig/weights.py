"""Automatic vertex weights, smoothing, mirroring and brush painting.

Weights are sparse per-vertex lists of ``(bone_index, weight)`` pairs where
``bone_index`` is the bone's position in the skeleton list.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

import numpy as np

from autorig.geometry import AXIS_INDEX
from autorig.mesh import MeshData
from autorig.models import AutoWeightSettings, Bone
from autorig.quat import as_quat, quat_rotate
from autorig.suggest import mirror_name

VertexWeights = list[tuple[int, float]]

MIN_WEIGHT = 0.001
MIN_SEGMENT_LENGTH = 0.001
ENVELOPE_RADIUS_FACTOR = 2.0
HEATMAP_SIGMA_FACTOR = 1.5
RADIUS_FLOOR = 0.05
MIRROR_MATCH_TOLERANCE = 0.01

BrushMode = Literal["add", "subtract", "smooth"]


def bone_segment(bone: Bone) -> tuple[np.ndarray, np.ndarray]:
    """Start and end of the bone: from its position along local +Y for its length."""
    start = np.asarray(bone.position, dtype=np.float64)
    length = max(bone.length, MIN_SEGMENT_LENGTH)
    direction = quat_rotate(as_quat(bone.rotation), (0.0, 1.0, 0.0))
    n = float(np.linalg.norm(direction))
    if n > 0:
        direction = direction / n
    return start, start + direction * length


def distance_to_segment(points: np.ndarray, start: np.ndarray, end: np.ndarray) -> np.ndarray:
    """Distances from points (N, 3) to the segment start-end."""
    seg = end - start
    length_sq = float(np.dot(seg, seg))
    rel = points - start
    if length_sq == 0.0:
        return np.linalg.norm(rel, axis=1)
    t = np.clip(rel @ seg / length_sq, 0.0, 1.0)
    closest = start + t[:, None] * seg
    return np.linalg.norm(points - closest, axis=1)


def _segment_distances(points: np.ndarray, bones: Sequence[Bone]) -> np.ndarray:
    dist = np.empty((len(points), len(bones)), dtype=np.float64)
    for j, bone in enumerate(bones):
        start, end = bone_segment(bone)
        dist[:, j] = distance_to_segment(points, start, end)
    return dist


def envelope_weights(points: np.ndarray, bones: Sequence[Bone], falloff: float) -> np.ndarray:
    """Raw (N, B) envelope weights: ``(1 - d/r)^falloff`` inside radius r."""
    dist = _segment_distances(points, bones)
    radius = np.array(
        [max(b.length * ENVELOPE_RADIUS_FACTOR, RADIUS_FLOOR) for b in bones], dtype=np.float64
    )
    inside = dist < radius
    w = np.where(inside, np.power(np.clip(1.0 - dist / radius, 0.0, 1.0), falloff), 0.0)
    return np.where(w > MIN_WEIGHT, w, 0.0)


def heatmap_weights(points: np.ndarray, bones: Sequence[Bone]) -> np.ndarray:
    """Raw (N, B) Gaussian weights ``exp(-d^2 / 2 sigma^2)``."""
    dist = _segment_distances(points, bones)
    sigma = np.array(
        [max(b.length * HEATMAP_SIGMA_FACTOR, RADIUS_FLOOR) for b in bones], dtype=np.float64
    )
    w = np.exp(-(dist * dist) / (2.0 * sigma * sigma))
    return np.where(w > MIN_WEIGHT, w, 0.0)


def nearest_weights(points: np.ndarray, bones: Sequence[Bone]) -> np.ndarray:
    """One-hot (N, B) weights on the bone whose joint is closest."""
    joints = np.array([b.position for b in bones], dtype=np.float64)
    dist = np.linalg.norm(points[:, None, :] - joints[None, :, :], axis=2)
    w = np.zeros_like(dist)
    w[np.arange(len(points)), np.argmin(dist, axis=1)] = 1.0
    return w


def normalize_weights(pairs: VertexWeights) -> VertexWeights:
    total = sum(w for _, w in pairs)
    if total <= 0:
        return []
    return [(b, w / total) for b, w in pairs]


def _rows_to_lists(w: np.ndarray) -> list[VertexWeights]:
    result: list[VertexWeights] = []
    for row in w:
        nz = np.nonzero(row)[0]
        result.append(normalize_weights([(int(j), float(row[j])) for j in nz]))
    return result


def compute_vertex_weights(
    points: np.ndarray,
    bones: Sequence[Bone],
    settings: AutoWeightSettings | None = None,
) -> list[VertexWeights]:
    """Normalized weights for world-space points, without smoothing."""
    settings = settings or AutoWeightSettings()
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(bones) == 0:
        return [[] for _ in range(len(points))]
    if len(points) == 0:
        return []
    if settings.method == "heatmap":
        raw = heatmap_weights(points, bones)
    elif settings.method == "nearest":
        raw = nearest_weights(points, bones)
    else:
        raw = envelope_weights(points, bones, settings.falloff)
    return _rows_to_lists(raw)


def calculate_automatic_weights(
    mesh: MeshData,
    bones: Sequence[Bone],
    settings: AutoWeightSettings | None = None,
) -> list[VertexWeights]:
    """Weights for every vertex of ``mesh`` (evaluated in world space), smoothed per settings."""
    settings = settings or AutoWeightSettings()
    weights = compute_vertex_weights(mesh.world_positions(), bones, settings)
    if settings.smooth_iterations > 0 and weights:
        adjacency = build_vertex_adjacency(mesh.vertex_count, mesh.indices)
        weights = smooth_weights(weights, adjacency, settings.smooth_iterations, settings.neighbor_weight)
    return weights


def build_vertex_adjacency(vertex_count: int, indices: np.ndarray | Sequence[int] | None = None) -> list[list[int]]:
    """Neighbor lists from triangle edges; unindexed meshes are read as sequential triples."""
    adjacency: list[set[int]] = [set() for _ in range(vertex_count)]

    def add_edge(a: int, b: int) -> None:
        if a == b or a >= vertex_count or b >= vertex_count:
            return
        adjacency[a].add(b)
        adjacency[b].add(a)

    if indices is not None and len(indices) >= 3:
        tri = np.asarray(indices, dtype=np.int64)
        for i in range(0, len(tri) - 2, 3):
            a, b, c = int(tri[i]), int(tri[i + 1]), int(tri[i + 2])
            add_edge(a, b)
            add_edge(b, c)
            add_edge(c, a)
    else:
        for a in range(0, vertex_count - 2, 3):
            add_edge(a, a + 1)
            add_edge(a + 1, a + 2)
            add_edge(a + 2, a)
    return [sorted(s) for s in adjacency]


def smooth_weights(
    weights: Sequence[VertexWeights],
    adjacency: Sequence[Sequence[int]],
    iterations: int = 1,
    neighbor_weight: float = 0.5,
) -> list[VertexWeights]:
    """Discrete diffusion over the vertex graph.

    Each bone's new weight at a vertex is the mean of the vertex's own weight
    and its neighbors' weights scaled by ``neighbor_weight``, averaged over
    the entries that mention that bone. Means at or below 0.001 are dropped
    and the vertex renormalized.
    """
    result = [list(w) for w in weights]
    for _ in range(iterations):
        new: list[VertexWeights] = []
        for i, own in enumerate(result):
            collected: dict[int, list[float]] = {}
            for bone_idx, w in own:
                collected.setdefault(bone_idx, []).append(w)
            for n in adjacency[i] if i < len(adjacency) else ():
                if n >= len(result):
                    continue
                for bone_idx, w in result[n]:
                    collected.setdefault(bone_idx, []).append(w * neighbor_weight)
            averaged = []
            for bone_idx in sorted(collected):
                values = collected[bone_idx]
                avg = sum(values) / len(values)
                if avg > MIN_WEIGHT:
                    averaged.append((bone_idx, avg))
            new.append(normalize_weights(averaged))
        result = new
    return result


def mirror_weights(
    weights: Sequence[VertexWeights],
    vertices: np.ndarray,
    bones: Sequence[Bone],
    axis: str = "x",
) -> list[VertexWeights]:
    """Copy positive-side weights onto their mirrored vertices.

    A vertex on the positive side (coordinate > 0.01) is matched to the
    closest other vertex within 0.01 of its reflection. Bone indices are
    remapped to their left/right counterpart by name when one exists.
    """
    ai = AXIS_INDEX[axis]
    verts = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    result = [list(w) for w in weights]
    name_to_index = {b.name: i for i, b in enumerate(bones)}

    def mirror_index(bone_idx: int) -> int:
        if bone_idx < 0 or bone_idx >= len(bones):
            return bone_idx
        return name_to_index.get(mirror_name(bones[bone_idx].name), bone_idx)

    for i, v in enumerate(verts):
        if v[ai] <= MIRROR_MATCH_TOLERANCE or i >= len(weights):
            continue
        target = v.copy()
        target[ai] = -target[ai]
        dist = np.linalg.norm(verts - target, axis=1)
        dist[i] = np.inf
        j = int(np.argmin(dist))
        if dist[j] < MIRROR_MATCH_TOLERANCE and j < len(result):
            result[j] = [(mirror_index(b), w) for b, w in weights[i]]
    return result


def paint_weights(
    weights: Sequence[VertexWeights],
    adjacency: Sequence[Sequence[int]] | None,
    vertices: np.ndarray,
    bone_index: int,
    mode: BrushMode,
    strength: float,
    center: Sequence[float],
    radius: float,
) -> list[VertexWeights]:
    """Apply one brush dab centered at ``center`` (world space).

    Brush strength falls off linearly to zero at ``radius``. ``add`` and
    ``subtract`` move the bone's weight by the local strength; ``smooth``
    blends it toward the mean of that bone's weight over the vertex's
    neighbors, read from the weights as they were before the dab. Every
    touched vertex is renormalized.
    """
    verts = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    result = [list(w) for w in weights]
    result.extend([] for _ in range(len(verts) - len(result)))
    if radius <= 0:
        return result
    before = [dict(w) for w in result]
    dist = np.linalg.norm(verts - np.asarray(center, dtype=np.float64), axis=1)

    for i in np.nonzero(dist <= radius)[0]:
        i = int(i)
        local = (1.0 - float(dist[i]) / radius) * strength
        current = before[i].get(bone_index)

        if mode == "add":
            updated = local if current is None else min(1.0, current + local)
        elif mode == "subtract":
            if current is None:
                continue
            updated = max(0.0, current - local)
        else:
            neighbors = adjacency[i] if adjacency is not None and i < len(adjacency) else []
            if not neighbors:
                continue
            avg = sum(before[n].get(bone_index, 0.0) for n in neighbors) / len(neighbors)
            base = current or 0.0
            updated = base + (avg - base) * min(1.0, local)

        pairs = [(b, w) for b, w in result[i] if b != bone_index]
        if updated > MIN_WEIGHT:
            pairs.append((bone_index, updated))
        pairs.sort(key=lambda p: p[0])
        result[i] = normalize_weights(pairs)
    return result
