"""Tests for keyframe sampling, forward kinematics and playback."""

import math

import numpy as np
import numpy.testing as npt
import pytest

from autorig.animation import (
    PLAYING,
    STOPPED,
    AnimationPlayer,
    apply_forward_kinematics,
    capture_rest_pose,
    evaluate_pose,
    posed_bones,
    sample_keyframes,
    smoothstep,
)
from autorig.models import AnimationClip, AnimationTrack, Keyframe
from autorig.quat import IDENTITY, quat_from_axis_angle, world_to_local


def _keys(interpolation="linear"):
    return [
        Keyframe(frame=0, value=[0.0, 0.0, 0.0], interpolation=interpolation),
        Keyframe(frame=10, value=[10.0, 0.0, 0.0], interpolation=interpolation),
    ]


def _z_turn_clip():
    turn = quat_from_axis_angle((0, 0, 1), math.pi / 2)
    return AnimationClip(
        id="z",
        name="z-turn",
        fps=10.0,
        frame_count=10,
        tracks=[
            AnimationTrack(
                bone_id="root",
                property="rotation",
                keyframes=[
                    Keyframe(frame=0, value=[0.0, 0.0, 0.0, 1.0]),
                    Keyframe(frame=10, value=[float(v) for v in turn]),
                ],
            )
        ],
    )


class TestSampling:
    @pytest.mark.parametrize("interpolation", ["linear", "bezier", "step"])
    def test_exact_frames_return_stored_values(self, interpolation):
        keys = _keys(interpolation)
        npt.assert_array_equal(sample_keyframes(keys, 0, "position"), (0, 0, 0))
        npt.assert_array_equal(sample_keyframes(keys, 10, "position"), (10, 0, 0))

    def test_linear(self):
        npt.assert_allclose(sample_keyframes(_keys(), 2.5, "position"), (2.5, 0, 0))

    def test_step_holds_previous(self):
        npt.assert_allclose(sample_keyframes(_keys("step"), 9.9, "position"), (0, 0, 0))

    def test_bezier_eases(self):
        assert smoothstep(0.25) == pytest.approx(0.15625)
        npt.assert_allclose(sample_keyframes(_keys("bezier"), 2.5, "position"), (1.5625, 0, 0))
        npt.assert_allclose(sample_keyframes(_keys("bezier"), 5, "position"), (5, 0, 0))

    def test_clamps_outside_key_range(self):
        keys = [Keyframe(frame=2, value=[1.0, 1.0, 1.0]), Keyframe(frame=4, value=[3.0, 3.0, 3.0])]
        npt.assert_allclose(sample_keyframes(keys, 0, "scale"), (1, 1, 1))
        npt.assert_allclose(sample_keyframes(keys, 9, "scale"), (3, 3, 3))

    def test_no_keys(self):
        assert sample_keyframes([], 3, "position") is None

    def test_rotation_slerps(self, rotation_clip):
        track = rotation_clip.tracks[0]
        q = sample_keyframes(track.keyframes, 5, "rotation")
        npt.assert_allclose(q, quat_from_axis_angle((0, 1, 0), math.pi / 4), atol=1e-12)


class TestForwardKinematics:
    def test_child_follows_rotated_root(self, two_bone_chain):
        poses = evaluate_pose(_z_turn_clip(), two_bone_chain, capture_rest_pose(two_bone_chain), 10)
        npt.assert_allclose(poses["root"].position, (0, 0, 0), atol=1e-12)
        npt.assert_allclose(poses["child"].position, (-1, 0, 0), atol=1e-12)
        npt.assert_allclose(poses["child"].rotation, poses["root"].rotation, atol=1e-12)

    def test_explicit_value_overrides_inheritance(self, two_bone_chain):
        rest = capture_rest_pose(two_bone_chain)
        explicit = {
            "root": {"rotation": quat_from_axis_angle((0, 0, 1), math.pi / 2)},
            "child": {"position": np.array([3.0, 3.0, 3.0])},
        }
        poses = apply_forward_kinematics(two_bone_chain, rest, explicit)
        npt.assert_allclose(poses["child"].position, (3, 3, 3))

    def test_untracked_skeleton_stays_at_rest(self, two_bone_chain):
        poses = apply_forward_kinematics(two_bone_chain, capture_rest_pose(two_bone_chain), {})
        npt.assert_allclose(poses["child"].position, (0, 1, 0))
        npt.assert_allclose(poses["child"].rotation, IDENTITY)

    def test_rest_offsets_match_parent_local_transform(self, two_bone_chain):
        turn = quat_from_axis_angle((0, 0, 1), math.pi / 2)
        bones = [
            two_bone_chain[0].model_copy(update={"position": (1.0, 0.0, 0.0), "rotation": tuple(turn)}),
            two_bone_chain[1].model_copy(update={"position": (1.0, 2.0, 0.0)}),
        ]
        rest = capture_rest_pose(bones)
        local_pos, local_rot = world_to_local(bones[1].position, bones[1].rotation, bones[0].position, turn)
        npt.assert_allclose(rest["child"].local_offset, local_pos, atol=1e-12)
        npt.assert_allclose(rest["child"].local_offset, (2.0, 0.0, 0.0), atol=1e-12)
        npt.assert_allclose(rest["child"].local_rotation, local_rot, atol=1e-12)
        poses = apply_forward_kinematics(bones, rest, {})
        npt.assert_allclose(poses["child"].position, (1.0, 2.0, 0.0), atol=1e-12)

    def test_deterministic(self, two_bone_chain):
        rest = capture_rest_pose(two_bone_chain)
        a = evaluate_pose(_z_turn_clip(), two_bone_chain, rest, 3.7)
        b = evaluate_pose(_z_turn_clip(), two_bone_chain, rest, 3.7)
        for bone_id in a:
            npt.assert_array_equal(a[bone_id].position, b[bone_id].position)
            npt.assert_array_equal(a[bone_id].rotation, b[bone_id].rotation)

    def test_posed_bones_copies(self, two_bone_chain):
        poses = evaluate_pose(_z_turn_clip(), two_bone_chain, capture_rest_pose(two_bone_chain), 10)
        posed = posed_bones(two_bone_chain, poses)
        npt.assert_allclose(posed[1].position, (-1, 0, 0), atol=1e-12)
        assert two_bone_chain[1].position == (0.0, 1.0, 0.0)


class TestPlayer:
    @pytest.fixture
    def player(self, rotation_clip):
        p = AnimationPlayer(fps=10.0)
        p.set_clip(rotation_clip)
        return p

    def test_tick_advances_and_loops(self, player, two_bone_chain):
        player.play(two_bone_chain)
        assert player.state == PLAYING
        assert player.tick(0.5) == pytest.approx(5.0)
        assert player.tick(0.7) == pytest.approx(2.0)
        assert player.is_playing

    def test_clamps_and_stops_without_loop(self, player, two_bone_chain):
        player.loop = False
        player.play(two_bone_chain)
        assert player.tick(2.0) == 10.0
        assert player.state == STOPPED

    def test_tick_while_stopped_is_noop(self, player):
        player.seek(3)
        assert player.tick(1.0) == 3.0

    def test_rest_captured_on_play_not_on_seek(self, player, two_bone_chain):
        player.play(two_bone_chain)
        rest = player.rest
        player.seek(4)
        assert player.rest is rest
        player.set_clip(_z_turn_clip())
        assert player.rest is None

    def test_seek_clamps_negative(self, player):
        player.seek(-5)
        assert player.frame == 0.0

    def test_evaluate(self, player, two_bone_chain):
        player.seek(10)
        poses = player.evaluate(two_bone_chain)
        npt.assert_allclose(poses["root"].rotation, quat_from_axis_angle((0, 1, 0), math.pi / 2), atol=1e-12)
        player.set_clip(None)
        assert player.evaluate(two_bone_chain) is None
