"""Tests for the pydantic data models and settings normalization."""

import math

import pytest
from pydantic import ValidationError

from autorig.models import (
    AnimationClip,
    AnimationTrack,
    AutoBoneSettings,
    AutoWeightSettings,
    Bone,
    Keyframe,
    MeshWeights,
    ProjectData,
    normalize_auto_bone_settings,
)


class TestBone:
    def test_defaults(self):
        bone = Bone(id="a", name="a")
        assert bone.parent_id is None
        assert bone.rotation == (0.0, 0.0, 0.0, 1.0)
        assert bone.rotation_limits.x == (-180.0, 180.0)

    def test_alias_round_trip(self):
        bone = Bone.model_validate({"id": "b", "name": "b", "parentId": "a", "rotationLimits": {"x": [-10, 10]}})
        assert bone.parent_id == "a"
        dumped = bone.model_dump(by_alias=True)
        assert dumped["parentId"] == "a"
        assert dumped["rotationLimits"]["x"] == (-10.0, 10.0)

    def test_self_parent_rejected(self):
        with pytest.raises(ValidationError, match="own parent"):
            Bone(id="a", name="a", parent_id="a")

    @pytest.mark.parametrize("field,value", [("position", (0, math.nan, 0)), ("length", -1.0), ("length", math.inf)])
    def test_bad_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Bone(id="a", name="a", **{field: value})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            Bone(id="a", name="a", colour="red")


class TestAnimation:
    def test_keyframes_sorted(self):
        track = AnimationTrack(
            bone_id="a",
            property="position",
            keyframes=[Keyframe(frame=5, value=[1, 1, 1]), Keyframe(frame=0, value=[0, 0, 0])],
        )
        assert [k.frame for k in track.keyframes] == [0, 5]

    def test_value_arity_checked(self):
        with pytest.raises(ValidationError, match="expected 4"):
            AnimationTrack(bone_id="a", property="rotation", keyframes=[Keyframe(frame=0, value=[0, 0, 0])])

    def test_duplicate_frames_rejected(self):
        with pytest.raises(ValidationError, match="duplicate keyframe"):
            AnimationTrack(
                bone_id="a",
                property="scale",
                keyframes=[Keyframe(frame=1, value=[1, 1, 1]), Keyframe(frame=1, value=[2, 2, 2])],
            )

    def test_negative_frame_rejected(self):
        with pytest.raises(ValidationError):
            Keyframe(frame=-1, value=[0, 0, 0])

    @pytest.mark.parametrize("kwargs", [{"fps": 0}, {"fps": -5}, {"frame_count": 1}])
    def test_clip_limits(self, kwargs):
        with pytest.raises(ValidationError):
            AnimationClip(id="c", name="c", **kwargs)

    def test_find_track(self, rotation_clip):
        assert rotation_clip.find_track("root", "rotation") is rotation_clip.tracks[0]
        assert rotation_clip.find_track("root", "position") is None

    def test_interpolation_names(self):
        with pytest.raises(ValidationError):
            Keyframe(frame=0, value=[0, 0, 0], interpolation="cubic")


class TestWeightsAndProject:
    def test_weight_range(self):
        with pytest.raises(ValidationError, match=r"\[0, 1\]"):
            MeshWeights(vertex_weights=[[(0, 1.5)]])
        with pytest.raises(ValidationError, match=">= 0"):
            MeshWeights(vertex_weights=[[(-1, 0.5)]])

    def test_project_aliases(self):
        project = ProjectData.model_validate(
            {"version": "1.0", "modelPath": "m.glb", "weightMap": {"body": {"vertexWeights": [[[0, 1.0]]]}}}
        )
        assert project.model_path == "m.glb"
        assert project.weight_map["body"].vertex_weights == [[(0, 1.0)]]
        dumped = project.model_dump(mode="json", by_alias=True)
        assert set(dumped) == {"version", "modelPath", "modelHash", "skeleton", "weightMap", "animations"}


class TestSettings:
    def test_auto_bone_clamping(self):
        s = AutoBoneSettings(
            spine_min_segments=0,
            spine_max_segments=40,
            bone_spacing_factor=5.0,
            max_extremities=1,
            extremity_top_percent=0.0,
        )
        assert s.spine_min_segments == 1
        assert s.spine_max_segments == 16
        assert s.bone_spacing_factor == 0.6
        assert s.max_extremities == 2
        assert s.extremity_top_percent == 0.01

    def test_max_not_below_min(self):
        s = AutoBoneSettings(limb_min_segments=5, limb_max_segments=2)
        assert s.limb_max_segments == 5

    def test_counts_rounded(self):
        assert AutoBoneSettings(spine_max_segments=4.6).spine_max_segments == 5

    def test_unknown_choices_fall_back(self):
        s = AutoBoneSettings(rig_type="centaur", symmetry_axis="w")
        assert s.rig_type == "auto"
        assert s.symmetry_axis == "auto"

    def test_normalize_merges_overrides(self):
        s = normalize_auto_bone_settings({"rig_type": "quadruped"})
        assert s.rig_type == "quadruped"
        assert s.spine_max_segments == 5
        assert normalize_auto_bone_settings(None) == AutoBoneSettings()

    def test_auto_weight_clamping(self):
        s = AutoWeightSettings(method="magic", falloff=100.0, smooth_iterations=20, neighbor_weight=-1.0)
        assert s.method == "envelope"
        assert s.falloff == 6.0
        assert s.smooth_iterations == 10
        assert s.neighbor_weight == 0.0

    def test_settings_hash_tracks_changes(self):
        assert AutoWeightSettings().settings_hash() == AutoWeightSettings().settings_hash()
        assert AutoWeightSettings(falloff=1.0).settings_hash() != AutoWeightSettings().settings_hash()
