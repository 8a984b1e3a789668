"""Shared fixtures for autorig tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pygltflib
import pytest

from autorig.mesh import MeshData
from autorig.models import AnimationClip, AnimationTrack, Bone, Keyframe
from autorig.quat import quat_from_axis_angle


def _box(center, half) -> np.ndarray:
    """Corner points plus a 5x5x5 lattice of a box."""
    c = np.asarray(center, dtype=np.float64)
    h = np.asarray(half, dtype=np.float64)
    t = np.linspace(-1.0, 1.0, 5)
    grid = np.stack(np.meshgrid(t, t, t, indexing="ij"), axis=-1).reshape(-1, 3)
    return c + grid * h


def _glb_bytes(positions: np.ndarray, indices: np.ndarray | None, translation=None) -> bytes:
    positions = np.asarray(positions, dtype=np.float32)
    blob = bytearray(positions.tobytes())
    buffer_views = [pygltflib.BufferView(buffer=0, byteOffset=0, byteLength=len(blob))]
    accessors = [
        pygltflib.Accessor(
            bufferView=0,
            componentType=pygltflib.FLOAT,
            count=len(positions),
            type=pygltflib.VEC3,
            min=positions.min(axis=0).tolist(),
            max=positions.max(axis=0).tolist(),
        )
    ]
    primitive = pygltflib.Primitive(attributes=pygltflib.Attributes(POSITION=0))
    if indices is not None:
        idx = np.asarray(indices, dtype=np.uint32)
        offset = len(blob)
        blob.extend(idx.tobytes())
        buffer_views.append(pygltflib.BufferView(buffer=0, byteOffset=offset, byteLength=idx.nbytes))
        accessors.append(
            pygltflib.Accessor(
                bufferView=1,
                componentType=pygltflib.UNSIGNED_INT,
                count=len(idx),
                type=pygltflib.SCALAR,
            )
        )
        primitive.indices = 1

    node = pygltflib.Node(name="body", mesh=0)
    if translation is not None:
        node.translation = [float(v) for v in translation]
    gltf = pygltflib.GLTF2(
        scene=0,
        scenes=[pygltflib.Scene(nodes=[0])],
        nodes=[node],
        meshes=[pygltflib.Mesh(name="body_mesh", primitives=[primitive])],
        accessors=accessors,
        bufferViews=buffer_views,
        buffers=[pygltflib.Buffer(byteLength=len(blob))],
    )
    gltf.set_binary_blob(bytes(blob))
    return b"".join(gltf.save_to_bytes())


@pytest.fixture
def humanoid_vertices() -> np.ndarray:
    """Standing figure, 2 units tall, symmetric about x = 0."""
    parts = [
        _box((0.0, 1.2, 0.0), (0.2, 0.35, 0.1)),  # torso
        _box((0.0, 1.8, 0.0), (0.1, 0.12, 0.1)),  # head
        _box((-0.55, 1.45, 0.0), (0.3, 0.05, 0.05)),  # left arm
        _box((0.55, 1.45, 0.0), (0.3, 0.05, 0.05)),  # right arm
        _box((-0.12, 0.45, 0.0), (0.06, 0.45, 0.06)),  # left leg
        _box((0.12, 0.45, 0.0), (0.06, 0.45, 0.06)),  # right leg
    ]
    return np.vstack(parts)


@pytest.fixture
def quadruped_vertices() -> np.ndarray:
    """Four-legged body, longer along z, head raised at +z."""
    parts = [
        _box((0.0, 0.8, 0.0), (0.2, 0.15, 0.6)),  # body
        _box((0.0, 1.15, 0.75), (0.1, 0.12, 0.12)),  # head
        _box((-0.15, 0.35, 0.45), (0.05, 0.35, 0.05)),
        _box((0.15, 0.35, 0.45), (0.05, 0.35, 0.05)),
        _box((-0.15, 0.35, -0.45), (0.05, 0.35, 0.05)),
        _box((0.15, 0.35, -0.45), (0.05, 0.35, 0.05)),
    ]
    return np.vstack(parts)


@pytest.fixture
def column_mesh() -> MeshData:
    """Two-unit tall strip of quads along +Y, indexed."""
    rows = 9
    ys = np.linspace(0.0, 2.0, rows)
    positions = np.array([[x, y, 0.0] for y in ys for x in (-0.1, 0.1)], dtype=np.float64)
    indices = []
    for r in range(rows - 1):
        a, b, c, d = 2 * r, 2 * r + 1, 2 * r + 2, 2 * r + 3
        indices.extend([a, b, c, b, d, c])
    return MeshData(name="column", positions=positions, indices=np.array(indices, dtype=np.uint32))


@pytest.fixture
def two_bone_chain() -> list[Bone]:
    """Root at the origin with a child one unit up, both pointing +Y."""
    return [
        Bone(id="root", name="root", position=(0.0, 0.0, 0.0), length=1.0),
        Bone(id="child", name="child", parent_id="root", position=(0.0, 1.0, 0.0), length=1.0),
    ]


@pytest.fixture
def quarter_turn_y() -> list[float]:
    return [float(v) for v in quat_from_axis_angle((0.0, 1.0, 0.0), np.pi / 2)]


@pytest.fixture
def rotation_clip(quarter_turn_y) -> AnimationClip:
    """Root turns 90 degrees about Y over ten frames."""
    return AnimationClip(
        id="clip-1",
        name="turn",
        fps=10.0,
        frame_count=10,
        tracks=[
            AnimationTrack(
                bone_id="root",
                property="rotation",
                keyframes=[
                    Keyframe(frame=0, value=[0.0, 0.0, 0.0, 1.0]),
                    Keyframe(frame=10, value=quarter_turn_y),
                ],
            )
        ],
    )


@pytest.fixture
def make_glb(tmp_path):
    """Factory writing a single-mesh GLB and returning its path."""

    def _make(
        positions,
        indices=None,
        *,
        name: str = "model.glb",
        translation=None,
    ) -> Path:
        path = tmp_path / name
        path.write_bytes(_glb_bytes(np.asarray(positions), indices, translation))
        return path

    return _make


@pytest.fixture
def column_glb(make_glb, column_mesh) -> Path:
    return make_glb(column_mesh.positions, column_mesh.indices)
