"""Mesh import from glTF/GLB via pygltflib."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pygltflib

from autorig.errors import ParseError
from autorig.quat import compose_matrix

_COMPONENT_DTYPES: dict[int, type] = {
    pygltflib.BYTE: np.int8,
    pygltflib.UNSIGNED_BYTE: np.uint8,
    pygltflib.SHORT: np.int16,
    pygltflib.UNSIGNED_SHORT: np.uint16,
    pygltflib.UNSIGNED_INT: np.uint32,
    pygltflib.FLOAT: np.float32,
}

_TYPE_WIDTHS: dict[str, int] = {
    pygltflib.SCALAR: 1,
    pygltflib.VEC2: 2,
    pygltflib.VEC3: 3,
    pygltflib.VEC4: 4,
    pygltflib.MAT4: 16,
}


@dataclass
class MeshData:
    """One triangle primitive: local positions plus its node's world matrix."""

    name: str
    positions: np.ndarray  # (N, 3) float64, mesh-local
    indices: np.ndarray | None = None  # (M,) triangle list, or None if unindexed
    world_matrix: np.ndarray = field(default_factory=lambda: np.eye(4))

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    def world_positions(self) -> np.ndarray:
        if len(self.positions) == 0:
            return np.zeros((0, 3), dtype=np.float64)
        homo = np.hstack([self.positions, np.ones((len(self.positions), 1))])
        return (homo @ self.world_matrix.T)[:, :3]


def load_glb_meshes(path: Path) -> list[MeshData]:
    """Load every triangle primitive of the default scene.

    Node transforms (TRS or matrix) are composed down the scene graph so each
    MeshData carries its world matrix.
    """
    path = Path(path)
    try:
        gltf = pygltflib.GLTF2().load(str(path))
    except Exception as e:
        raise ParseError(f"Failed to read {path}: {e}") from e
    if gltf is None:
        raise ParseError(f"Failed to read {path}: not a glTF file")

    blobs: dict[int, bytes] = {}
    meshes: list[MeshData] = []
    used_names: set[str] = set()

    for node_idx, world in _walk_scene(gltf):
        node = gltf.nodes[node_idx]
        if node.mesh is None:
            continue
        gmesh = gltf.meshes[node.mesh]
        base = node.name or gmesh.name or f"mesh_{node.mesh}"
        for p_idx, prim in enumerate(gmesh.primitives):
            if prim.mode not in (None, pygltflib.TRIANGLES):
                continue
            if prim.attributes.POSITION is None:
                continue
            positions = _read_accessor(gltf, prim.attributes.POSITION, path.parent, blobs)
            indices = None
            if prim.indices is not None:
                indices = _read_accessor(gltf, prim.indices, path.parent, blobs).reshape(-1)
                indices = indices.astype(np.int64)
            name = base if len(gmesh.primitives) == 1 else f"{base}_{p_idx}"
            name = _unique_name(name, used_names)
            meshes.append(
                MeshData(
                    name=name,
                    positions=positions.reshape(-1, 3).astype(np.float64),
                    indices=indices,
                    world_matrix=world,
                )
            )
    return meshes


def _unique_name(name: str, used: set[str]) -> str:
    candidate = name
    n = 1
    while candidate in used:
        candidate = f"{name}_{n:02d}"
        n += 1
    used.add(candidate)
    return candidate


def _node_matrix(node: pygltflib.Node) -> np.ndarray:
    if node.matrix is not None:
        # glTF stores matrices column-major
        return np.array(node.matrix, dtype=np.float64).reshape(4, 4).T
    return compose_matrix(
        node.translation or (0.0, 0.0, 0.0),
        node.rotation or (0.0, 0.0, 0.0, 1.0),
        node.scale or (1.0, 1.0, 1.0),
    )


def _walk_scene(gltf: pygltflib.GLTF2) -> list[tuple[int, np.ndarray]]:
    """(node index, world matrix) for every node reachable from the scene roots."""
    if gltf.scenes:
        scene = gltf.scenes[gltf.scene or 0]
        roots = list(scene.nodes or [])
    else:
        children = {c for n in gltf.nodes for c in (n.children or [])}
        roots = [i for i in range(len(gltf.nodes)) if i not in children]

    result: list[tuple[int, np.ndarray]] = []
    stack = [(i, np.eye(4)) for i in reversed(roots)]
    visited: set[int] = set()
    while stack:
        idx, parent_world = stack.pop()
        if idx in visited:
            continue
        visited.add(idx)
        node = gltf.nodes[idx]
        world = parent_world @ _node_matrix(node)
        result.append((idx, world))
        for child in reversed(node.children or []):
            stack.append((child, world))
    return result


def _buffer_bytes(gltf: pygltflib.GLTF2, buffer_idx: int, base_dir: Path, cache: dict[int, bytes]) -> bytes:
    if buffer_idx in cache:
        return cache[buffer_idx]
    buf = gltf.buffers[buffer_idx]
    if buf.uri is None:
        data = gltf.binary_blob()
    elif buf.uri.startswith("data:"):
        data = gltf.get_data_from_buffer_uri(buf.uri)
    else:
        data = (base_dir / buf.uri).read_bytes()
    if data is None:
        raise ParseError(f"Buffer {buffer_idx} has no data")
    cache[buffer_idx] = data
    return data


def _read_accessor(
    gltf: pygltflib.GLTF2,
    accessor_idx: int,
    base_dir: Path,
    cache: dict[int, bytes],
) -> np.ndarray:
    accessor = gltf.accessors[accessor_idx]
    dtype = np.dtype(_COMPONENT_DTYPES[accessor.componentType])
    width = _TYPE_WIDTHS[accessor.type]
    count = accessor.count
    if accessor.bufferView is None:
        return np.zeros((count, width), dtype=dtype)

    view = gltf.bufferViews[accessor.bufferView]
    data = _buffer_bytes(gltf, view.buffer, base_dir, cache)
    start = (view.byteOffset or 0) + (accessor.byteOffset or 0)
    elem_size = dtype.itemsize * width
    stride = view.byteStride or elem_size
    if stride == elem_size:
        arr = np.frombuffer(data, dtype=dtype, count=count * width, offset=start)
        return arr.reshape(count, width).copy()
    rows = [
        np.frombuffer(data, dtype=dtype, count=width, offset=start + i * stride)
        for i in range(count)
    ]
    return np.array(rows, dtype=dtype).reshape(count, width)
