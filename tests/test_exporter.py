"""Tests for skinned, animated GLB export."""

import struct

import numpy as np
import numpy.testing as npt
import pygltflib
import pytest

from autorig.errors import ExportError, ValidationError
from autorig.exporter import export_glb
from autorig.models import Bone, MeshWeights
from autorig.warning_policy import WarningPolicy


def _accessor_array(gltf, index, dtype, width):
    accessor = gltf.accessors[index]
    view = gltf.bufferViews[accessor.bufferView]
    offset = (view.byteOffset or 0) + (accessor.byteOffset or 0)
    data = np.frombuffer(gltf.binary_blob(), dtype=dtype, count=accessor.count * width, offset=offset)
    return data.reshape(accessor.count, width)


@pytest.fixture
def exported(tmp_path, column_mesh, two_bone_chain, rotation_clip):
    out = tmp_path / "rig.glb"
    export_glb([column_mesh], two_bone_chain, out, animations=[rotation_clip])
    return out


class TestExportGlb:
    def test_glb_header(self, exported):
        data = exported.read_bytes()
        magic, version, length = struct.unpack_from("<III", data, 0)
        assert data[:4] == b"glTF"
        assert version == 2
        assert length == len(data)

    def test_mesh_and_joint_nodes(self, exported):
        gltf = pygltflib.GLTF2().load(str(exported))
        assert [m.name for m in gltf.meshes] == ["column"]
        names = [n.name for n in gltf.nodes]
        assert names[:2] == ["root", "child"]
        root = gltf.nodes[0]
        assert root.children == [1]
        npt.assert_allclose(gltf.nodes[1].translation, (0.0, 1.0, 0.0))
        assert set(gltf.scenes[0].nodes) == {0, names.index("column")}

    def test_skin_and_vertex_attributes(self, exported, column_mesh):
        gltf = pygltflib.GLTF2().load(str(exported))
        assert len(gltf.skins) == 1
        skin = gltf.skins[0]
        assert skin.joints == [0, 1]
        mesh_node = next(n for n in gltf.nodes if n.mesh is not None)
        assert mesh_node.skin == 0

        attrs = gltf.meshes[0].primitives[0].attributes
        assert gltf.accessors[attrs.JOINTS_0].componentType == pygltflib.UNSIGNED_SHORT
        assert gltf.accessors[attrs.WEIGHTS_0].type == pygltflib.VEC4
        weights = _accessor_array(gltf, attrs.WEIGHTS_0, np.float32, 4)
        npt.assert_allclose(weights.sum(axis=1), 1.0, rtol=1e-6)
        positions = _accessor_array(gltf, attrs.POSITION, np.float32, 3)
        npt.assert_allclose(positions, column_mesh.world_positions(), atol=1e-6)

    def test_inverse_bind_matrices_column_major(self, exported):
        gltf = pygltflib.GLTF2().load(str(exported))
        ibm = _accessor_array(gltf, gltf.skins[0].inverseBindMatrices, np.float32, 16)
        npt.assert_allclose(ibm[1][12:15], (0.0, -1.0, 0.0))
        npt.assert_allclose(ibm[0], np.eye(4).reshape(16))

    def test_animation_channels(self, exported, quarter_turn_y):
        gltf = pygltflib.GLTF2().load(str(exported))
        assert len(gltf.animations) == 1
        anim = gltf.animations[0]
        assert anim.name == "turn"
        (channel,) = anim.channels
        assert channel.target.node == 0
        assert channel.target.path == "rotation"
        sampler = anim.samplers[channel.sampler]
        assert sampler.interpolation == "LINEAR"
        assert gltf.accessors[sampler.input].max == [pytest.approx(1.0)]
        values = _accessor_array(gltf, sampler.output, np.float32, 4)
        npt.assert_allclose(values[-1], quarter_turn_y, atol=1e-6)

    def test_no_animations(self, tmp_path, column_mesh, two_bone_chain):
        out = tmp_path / "still.glb"
        export_glb([column_mesh], two_bone_chain, out)
        assert pygltflib.GLTF2().load(str(out)).animations == []

    def test_mesh_without_bones(self, tmp_path, column_mesh):
        out = tmp_path / "plain.glb"
        export_glb([column_mesh], [], out)
        gltf = pygltflib.GLTF2().load(str(out))
        assert gltf.skins == []
        assert gltf.meshes[0].primitives[0].attributes.JOINTS_0 is None

    def test_synthetic_root_for_several_roots(self, tmp_path, column_mesh):
        bones = [
            Bone(id="a", name="left", position=(-0.1, 0.0, 0.0)),
            Bone(id="b", name="right", position=(0.1, 0.0, 0.0)),
        ]
        out = tmp_path / "two.glb"
        export_glb([column_mesh], bones, out)
        gltf = pygltflib.GLTF2().load(str(out))
        assert gltf.nodes[0].name == "Root"
        assert gltf.nodes[0].children == [1, 2]
        assert gltf.skins[0].skeleton == 0

    def test_warning_escalation_propagates(self, tmp_path, column_mesh):
        bones = [Bone(id=str(i), name=f"b{i}", position=(0.0, float(i) * 0.4, 0.0)) for i in range(5)]
        weights = MeshWeights(vertex_weights=[[(i, 0.2) for i in range(5)]] * column_mesh.vertex_count)
        policy = WarningPolicy(warn_as_error=frozenset({"W03"}))
        with pytest.raises(ValidationError, match=r"\[W03\]"):
            export_glb(
                [column_mesh],
                bones,
                tmp_path / "x.glb",
                weight_map={"column": weights},
                warning_policy=policy,
            )

    def test_unwritable_path(self, tmp_path, column_mesh):
        with pytest.raises(ExportError, match="Failed to export GLB"):
            export_glb([column_mesh], [], tmp_path / "missing" / "out.glb")
