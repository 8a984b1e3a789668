"""Geometry analysis of world-space vertex clouds.

Produces the bounding volume, a horizontal-band height profile, the most
likely symmetry axis and clustered extremity points that seed bone
suggestion.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from autorig.models import AutoBoneSettings, normalize_auto_bone_settings

HEIGHT_BANDS = 24
SYMMETRY_SAMPLES = 500
SYMMETRY_TOLERANCE_FACTOR = 0.05
SYMMETRY_MIN_RATIO = 0.6
MIN_EXTREMITY_CANDIDATES = 20

AXES = ("x", "y", "z")
AXIS_INDEX = {"x": 0, "y": 1, "z": 2}


@dataclass
class HeightBand:
    """Cross-section extents of the vertices falling into one Y band."""

    y_min: float
    y_max: float
    min_x: float
    max_x: float
    min_z: float
    max_z: float
    count: int

    @property
    def y_center(self) -> float:
        return (self.y_min + self.y_max) / 2.0

    @property
    def width_x(self) -> float:
        return self.max_x - self.min_x

    @property
    def width_z(self) -> float:
        return self.max_z - self.min_z


@dataclass
class MeshAnalysis:
    center: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray
    size: np.ndarray
    symmetry_axis: str
    extremities: list[np.ndarray] = field(default_factory=list)
    height_profile: list[HeightBand] = field(default_factory=list)
    vertex_count: int = 0

    @property
    def avg_size(self) -> float:
        return float(np.sum(self.size)) / 3.0


def analyze_vertices(
    vertices: np.ndarray | Sequence[Sequence[float]],
    settings: AutoBoneSettings | dict | None = None,
    bounds: tuple[Sequence[float], Sequence[float]] | None = None,
) -> MeshAnalysis:
    """Analyze world-space vertices (N, 3).

    With zero vertices the result is derived from ``bounds`` (min, max) when
    given, else from the origin; it has no extremities and a flat profile.
    """
    settings = normalize_auto_bone_settings(settings)
    verts = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    verts = verts[np.all(np.isfinite(verts), axis=1)]

    if len(verts) == 0:
        return _degenerate_analysis(settings, bounds)

    bbox_min = verts.min(axis=0)
    bbox_max = verts.max(axis=0)
    center = (bbox_min + bbox_max) / 2.0
    size = bbox_max - bbox_min

    if settings.symmetry_axis == "auto":
        axis = detect_symmetry_axis(verts, center, size)
    else:
        axis = settings.symmetry_axis

    return MeshAnalysis(
        center=center,
        bbox_min=bbox_min,
        bbox_max=bbox_max,
        size=size,
        symmetry_axis=axis,
        extremities=find_extremities(verts, center, size, settings),
        height_profile=build_height_profile(verts, center, bbox_min, bbox_max),
        vertex_count=len(verts),
    )


def _degenerate_analysis(
    settings: AutoBoneSettings,
    bounds: tuple[Sequence[float], Sequence[float]] | None,
) -> MeshAnalysis:
    if bounds is not None:
        bbox_min = np.asarray(bounds[0], dtype=np.float64)
        bbox_max = np.asarray(bounds[1], dtype=np.float64)
        if not (np.all(np.isfinite(bbox_min)) and np.all(np.isfinite(bbox_max))):
            bbox_min = bbox_max = np.zeros(3)
    else:
        bbox_min = np.zeros(3)
        bbox_max = np.zeros(3)
    center = (bbox_min + bbox_max) / 2.0
    size = np.maximum(bbox_max - bbox_min, 0.0)
    axis = "x" if settings.symmetry_axis == "auto" else settings.symmetry_axis
    band = HeightBand(
        y_min=float(bbox_min[1]),
        y_max=float(bbox_max[1]),
        min_x=float(center[0]),
        max_x=float(center[0]),
        min_z=float(center[2]),
        max_z=float(center[2]),
        count=0,
    )
    return MeshAnalysis(
        center=center,
        bbox_min=bbox_min,
        bbox_max=bbox_max,
        size=size,
        symmetry_axis=axis,
        extremities=[],
        height_profile=[band],
        vertex_count=0,
    )


def build_height_profile(
    verts: np.ndarray,
    center: np.ndarray,
    bbox_min: np.ndarray,
    bbox_max: np.ndarray,
    bands: int = HEIGHT_BANDS,
) -> list[HeightBand]:
    """Bucket vertices into horizontal bands between min-Y and max-Y."""
    y0 = float(bbox_min[1])
    height = float(bbox_max[1] - bbox_min[1])
    if height > 0:
        idx = np.floor((verts[:, 1] - y0) / height * bands).astype(np.int64)
        idx = np.clip(idx, 0, bands - 1)
    else:
        idx = np.zeros(len(verts), dtype=np.int64)

    profile: list[HeightBand] = []
    step = height / bands
    for b in range(bands):
        members = verts[idx == b]
        if len(members) == 0:
            # Empty bands collapse onto the center
            min_x = max_x = float(center[0])
            min_z = max_z = float(center[2])
        else:
            min_x = float(members[:, 0].min())
            max_x = float(members[:, 0].max())
            min_z = float(members[:, 2].min())
            max_z = float(members[:, 2].max())
        profile.append(
            HeightBand(
                y_min=y0 + b * step,
                y_max=y0 + (b + 1) * step,
                min_x=min_x,
                max_x=max_x,
                min_z=min_z,
                max_z=max_z,
                count=int(len(members)),
            )
        )
    return profile


def detect_symmetry_axis(verts: np.ndarray, center: np.ndarray, size: np.ndarray) -> str:
    """Pick the axis whose mirror image best matches the vertex cloud.

    A uniformly strided subsample (at most 500 points) is reflected about the
    center on each axis; a reflected point matches when some sample lies within
    5% of the average bounding size. The first axis with the highest match
    ratio above 0.6 wins; ``"x"`` when none qualifies.
    """
    step = max(1, -(-len(verts) // SYMMETRY_SAMPLES))
    samples = verts[::step]
    tolerance = float(np.sum(size)) / 3.0 * SYMMETRY_TOLERANCE_FACTOR

    best_axis: str | None = None
    best_score = 0.0
    for axis in AXES:
        ai = AXIS_INDEX[axis]
        mirrored = samples.copy()
        mirrored[:, ai] = 2.0 * center[ai] - samples[:, ai]
        diff = mirrored[:, None, :] - samples[None, :, :]
        dist = np.sqrt(np.sum(diff * diff, axis=2))
        matches = int(np.count_nonzero(np.any(dist < tolerance, axis=1)))
        score = matches / len(samples)
        if score > best_score and score > SYMMETRY_MIN_RATIO:
            best_score = score
            best_axis = axis
    return best_axis or "x"


def find_extremities(
    verts: np.ndarray,
    center: np.ndarray,
    size: np.ndarray,
    settings: AutoBoneSettings,
) -> list[np.ndarray]:
    """Centroids of clusters among the vertices farthest from the center."""
    avg_size = float(np.sum(size)) / 3.0
    threshold = avg_size * settings.extremity_cluster_factor

    distances = np.linalg.norm(verts - center, axis=1)
    order = np.argsort(-distances, kind="stable")
    top_count = max(MIN_EXTREMITY_CANDIDATES, int(len(verts) * settings.extremity_top_percent))
    candidates = verts[order[:top_count]]

    clusters = cluster_points(candidates, threshold)
    return [c.mean(axis=0) for c in clusters[: settings.max_extremities]]


def cluster_points(points: np.ndarray, threshold: float) -> list[np.ndarray]:
    """Greedy single-pass clustering, largest clusters first.

    Each unused point seeds a cluster; later points join it when they are
    within ``threshold`` of any member already in it. Singletons are dropped.
    """
    n = len(points)
    used = np.zeros(n, dtype=bool)
    clusters: list[np.ndarray] = []
    for i in range(n):
        if used[i]:
            continue
        used[i] = True
        members = [i]
        near = np.linalg.norm(points - points[i], axis=1) < threshold
        for j in range(i + 1, n):
            if used[j] or not near[j]:
                continue
            used[j] = True
            members.append(j)
            near |= np.linalg.norm(points - points[j], axis=1) < threshold
        if len(members) >= 2:
            clusters.append(points[members])
    clusters.sort(key=len, reverse=True)
    return clusters


def summarize_analysis(analysis: MeshAnalysis) -> dict:
    """JSON-friendly summary, also used as the oracle's model description."""
    return {
        "center": [float(v) for v in analysis.center],
        "size": [float(v) for v in analysis.size],
        "boundingBox": {
            "min": [float(v) for v in analysis.bbox_min],
            "max": [float(v) for v in analysis.bbox_max],
        },
        "extremities": [[float(v) for v in e] for e in analysis.extremities],
        "symmetryAxis": analysis.symmetry_axis,
        "vertexCount": analysis.vertex_count,
    }
