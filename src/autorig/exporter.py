"""Skinned, animated GLB assembly via pygltflib."""

from __future__ import annotations

import struct
from collections.abc import Mapping, Sequence
from pathlib import Path

import numpy as np
import pygltflib

from autorig.bake import BakedClip, bake_clip
from autorig.binder import SkinBinding, bind_skeleton
from autorig.errors import AutorigError, ExportError
from autorig.mesh import MeshData
from autorig.models import AnimationClip, AutoWeightSettings, Bone, MeshWeights
from autorig.warning_policy import WarningPolicy


def export_glb(
    meshes: Sequence[MeshData],
    bones: Sequence[Bone],
    output_path: Path,
    *,
    weight_map: Mapping[str, MeshWeights] | None = None,
    animations: Sequence[AnimationClip] = (),
    settings: AutoWeightSettings | None = None,
    warning_policy: WarningPolicy | None = None,
) -> None:
    """Write meshes, skeleton, skin and baked animations to a GLB file.

    Pipeline: bind -> bake -> build glTF scene -> write GLB. ``bones`` must be
    the rest pose.
    """
    try:
        binding = bind_skeleton(bones, meshes, weight_map, settings, policy=warning_policy) if bones else None
        baked = [c for c in (bake_clip(clip, bones) for clip in animations) if c is not None]
        gltf = build_gltf(meshes, binding, baked)
        _save_glb(gltf, Path(output_path))
    except Exception as e:
        if isinstance(e, AutorigError):
            raise
        raise ExportError(f"Failed to export GLB: {e}") from e


def _save_glb(gltf: pygltflib.GLTF2, output_path: Path) -> None:
    glb_bytes = b"".join(gltf.save_to_bytes())
    _magic, _version, length = struct.unpack_from("<III", glb_bytes, 0)
    if length != len(glb_bytes):
        raise ExportError(f"GLB length mismatch: header says {length}, got {len(glb_bytes)}")
    output_path.write_bytes(glb_bytes)


def build_gltf(
    meshes: Sequence[MeshData],
    binding: SkinBinding | None,
    clips: Sequence[BakedClip] = (),
) -> pygltflib.GLTF2:
    gltf = pygltflib.GLTF2(
        scene=0,
        scenes=[pygltflib.Scene(nodes=[])],
        nodes=[],
        meshes=[],
        accessors=[],
        bufferViews=[],
        buffers=[],
        skins=[],
        animations=[],
    )
    blob_data = bytearray()
    scene_nodes: list[int] = []

    skin_idx: int | None = None
    joint_nodes: list[int] = []
    if binding is not None and binding.hierarchy.joint_count:
        skin_idx, joint_nodes = _build_skeleton(gltf, blob_data, binding)
        root = binding.hierarchy.root_index
        if root is not None:
            scene_nodes.append(joint_nodes[root])

    for mesh in meshes:
        if mesh.vertex_count == 0:
            continue
        # Skinned vertices live in the bind space of the inverse bind matrices, i.e. world space
        positions = mesh.world_positions().astype(np.float32)
        pos_acc = _write_buffer_view_and_accessor(
            gltf, blob_data, positions, pygltflib.FLOAT, pygltflib.VEC3,
            pygltflib.ARRAY_BUFFER, include_min_max=True,
        )
        attributes = pygltflib.Attributes(POSITION=pos_acc)

        indices_acc = None
        if mesh.indices is not None and len(mesh.indices):
            indices_acc = _write_buffer_view_and_accessor(
                gltf, blob_data, mesh.indices.astype(np.uint32), pygltflib.UNSIGNED_INT,
                pygltflib.SCALAR, pygltflib.ELEMENT_ARRAY_BUFFER,
            )

        if skin_idx is not None and mesh.name in binding.joints:
            attributes.JOINTS_0 = _write_buffer_view_and_accessor(
                gltf, blob_data, binding.joints[mesh.name].astype(np.uint16),
                pygltflib.UNSIGNED_SHORT, pygltflib.VEC4, pygltflib.ARRAY_BUFFER,
            )
            attributes.WEIGHTS_0 = _write_buffer_view_and_accessor(
                gltf, blob_data, binding.weights[mesh.name].astype(np.float32),
                pygltflib.FLOAT, pygltflib.VEC4, pygltflib.ARRAY_BUFFER,
            )

        mesh_idx = len(gltf.meshes)
        gltf.meshes.append(
            pygltflib.Mesh(
                name=mesh.name,
                primitives=[pygltflib.Primitive(attributes=attributes, indices=indices_acc)],
            )
        )
        node_idx = len(gltf.nodes)
        node = pygltflib.Node(name=mesh.name, mesh=mesh_idx)
        if skin_idx is not None and mesh.name in binding.joints:
            node.skin = skin_idx
        gltf.nodes.append(node)
        scene_nodes.append(node_idx)

    if binding is not None and joint_nodes:
        node_by_bone = {
            bone_id: joint_nodes[j]
            for j, bone_id in enumerate(binding.hierarchy.bone_ids)
            if bone_id is not None
        }
        for clip in clips:
            _build_animation(gltf, blob_data, clip, node_by_bone)

    gltf.scenes[0].nodes = scene_nodes
    gltf.buffers = [pygltflib.Buffer(byteLength=len(blob_data))]
    gltf.set_binary_blob(bytes(blob_data))
    return gltf


def _build_skeleton(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    binding: SkinBinding,
) -> tuple[int, list[int]]:
    """Append joint nodes and the skin. Returns (skin index, joint node indices)."""
    h = binding.hierarchy
    base = len(gltf.nodes)
    joint_nodes = [base + j for j in range(h.joint_count)]

    for j in range(h.joint_count):
        gltf.nodes.append(
            pygltflib.Node(
                name=h.names[j],
                translation=[float(v) for v in h.local_positions[j]],
                rotation=[float(v) for v in h.local_rotations[j]],
                scale=[float(v) for v in h.local_scales[j]],
            )
        )
    for j, parent in enumerate(h.parents):
        if parent is None:
            continue
        parent_node = gltf.nodes[joint_nodes[parent]]
        if parent_node.children is None:
            parent_node.children = []
        parent_node.children.append(joint_nodes[j])

    # glTF matrices are column-major; numpy is row-major
    ibm_col_major = np.ascontiguousarray(h.inverse_bind_matrices.transpose(0, 2, 1)).astype(np.float32)
    ibm_acc = _write_buffer_view_and_accessor(
        gltf, blob_data, ibm_col_major, pygltflib.FLOAT, pygltflib.MAT4,
    )

    root = h.root_index
    skin_idx = len(gltf.skins)
    gltf.skins.append(
        pygltflib.Skin(
            name="Armature",
            joints=joint_nodes,
            skeleton=joint_nodes[root] if root is not None else None,
            inverseBindMatrices=ibm_acc,
        )
    )
    return skin_idx, joint_nodes


def _build_animation(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    clip: BakedClip,
    node_by_bone: dict[str, int],
) -> None:
    samplers: list[pygltflib.AnimationSampler] = []
    channels: list[pygltflib.AnimationChannel] = []
    for track in clip.tracks:
        node = node_by_bone.get(track.bone_id)
        if node is None:
            continue
        input_acc = _write_buffer_view_and_accessor(
            gltf, blob_data, track.times.astype(np.float32), pygltflib.FLOAT,
            pygltflib.SCALAR, include_min_max=True,
        )
        accessor_type = pygltflib.VEC4 if track.property == "rotation" else pygltflib.VEC3
        output_acc = _write_buffer_view_and_accessor(
            gltf, blob_data, track.values.astype(np.float32), pygltflib.FLOAT, accessor_type,
        )
        channels.append(
            pygltflib.AnimationChannel(
                sampler=len(samplers),
                target=pygltflib.AnimationChannelTarget(node=node, path=track.target_path),
            )
        )
        samplers.append(
            pygltflib.AnimationSampler(
                input=input_acc,
                output=output_acc,
                interpolation=track.interpolation,
            )
        )
    if channels:
        gltf.animations.append(
            pygltflib.Animation(name=clip.name, samplers=samplers, channels=channels)
        )


def _write_buffer_view_and_accessor(
    gltf: pygltflib.GLTF2,
    blob_data: bytearray,
    data_array: np.ndarray,
    component_type: int,
    accessor_type: str,
    target: int | None = None,
    *,
    include_min_max: bool = False,
) -> int:
    """Write a 4-byte aligned buffer view and accessor, returning the accessor index."""
    blob_data.extend(b"\x00" * ((4 - len(blob_data) % 4) % 4))
    offset = len(blob_data)
    data_bytes = data_array.tobytes()
    blob_data.extend(data_bytes)

    bv_idx = len(gltf.bufferViews)
    bv = pygltflib.BufferView(
        buffer=0,
        byteOffset=offset,
        byteLength=len(data_bytes),
    )
    if target is not None:
        bv.target = target
    gltf.bufferViews.append(bv)

    acc_kwargs: dict = {
        "bufferView": bv_idx,
        "byteOffset": 0,
        "componentType": component_type,
        "count": len(data_array),
        "type": accessor_type,
    }
    if include_min_max:
        if data_array.ndim == 1:
            acc_kwargs["min"] = [float(data_array.min())]
            acc_kwargs["max"] = [float(data_array.max())]
        else:
            acc_kwargs["min"] = data_array.min(axis=0).tolist()
            acc_kwargs["max"] = data_array.max(axis=0).tolist()

    acc_idx = len(gltf.accessors)
    gltf.accessors.append(pygltflib.Accessor(**acc_kwargs))
    return acc_idx
