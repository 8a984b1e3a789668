"""Tests for oracle request building, response parsing and the request session."""

from __future__ import annotations

import json
import threading
from types import SimpleNamespace

import numpy.testing as npt
import pytest

from autorig.errors import (
    OracleCancelledError,
    OracleResponseError,
    OracleUnavailableError,
)
from autorig.models import BoneSuggestion
from autorig.oracle import (
    DEFAULT_ANIMATION_NAME,
    MAX_SUGGESTIONS,
    ORACLE_CONFIDENCE,
    NullOracle,
    OpenAIOracle,
    OracleSession,
    build_animation_request,
    build_bone_request,
    extract_json_object,
    parse_animation_response,
    parse_bone_suggestions,
)
from autorig.warning_policy import AutorigWarning


class FakeOracle:
    def __init__(self, reply: str = "{}", on_call=None):
        self.reply = reply
        self.on_call = on_call
        self.calls: list[tuple[str, str, float]] = []

    def complete(self, system_prompt: str, user_message: str, timeout: float) -> str:
        self.calls.append((system_prompt, user_message, timeout))
        if self.on_call is not None:
            self.on_call()
        return self.reply


def _bones_reply(entries) -> str:
    return json.dumps({"bones": entries})


class TestRequests:
    def test_bone_request_payload(self):
        baseline = [BoneSuggestion(position=(0, 0, 0), name="root"), BoneSuggestion(position=(0, 1, 0), name="spine", parent_index=0)]
        payload = json.loads(build_bone_request({"vertexCount": 3}, baseline, hint="  a dragon "))
        assert payload["modelSummary"] == {"vertexCount": 3}
        assert payload["ruleBasedBaseline"][1] == {"index": 1, "name": "spine", "position": [0.0, 1.0, 0.0], "parentIndex": 0}
        assert payload["rigSettings"]["rig_type"] == "auto"
        assert payload["freeTextHint"] == "a dragon"

    def test_empty_hint(self):
        assert json.loads(build_bone_request({}, []))["freeTextHint"] == "none"

    def test_animation_request_lists_bones(self, two_bone_chain):
        text = build_animation_request(two_bone_chain, "wave")
        assert "Skeleton has 2 bones" in text
        assert '"child" (parent: root' in text
        assert text.endswith('Create an animation for: "wave"')

    def test_animation_request_without_bones(self):
        assert build_animation_request([], "jump").startswith("No bones defined yet.")


class TestExtractJson:
    def test_ignores_surrounding_prose(self):
        assert extract_json_object('Sure! {"a": {"b": 1}} Hope this helps.') == {"a": {"b": 1}}

    @pytest.mark.parametrize("content", ["no json here", "{broken", '{"a": 1'])
    def test_failures(self, content):
        with pytest.raises(OracleResponseError):
            extract_json_object(content)


class TestParseBoneSuggestions:
    def test_valid_entries(self):
        reply = _bones_reply(
            [
                {"name": "root", "position": [0, 0, 0], "parentIndex": None},
                {"name": "upper arm", "position": [0.5, 1, 0], "parentIndex": 0},
                {"position": [1, 1, 0], "parentIndex": 1.0},
            ]
        )
        out = parse_bone_suggestions(reply)
        assert [s.name for s in out] == ["root", "upper_arm", "bone_03"]
        assert [s.parent_index for s in out] == [None, 0, 1]
        assert all(s.confidence == ORACLE_CONFIDENCE for s in out)
        npt.assert_allclose(out[1].position, (0.5, 1.0, 0.0))

    def test_invalid_entries_dropped_and_parents_remapped(self):
        reply = _bones_reply(
            [
                {"name": "root", "position": [0, 0, 0]},
                {"name": "bad", "position": [0, "x", 0], "parentIndex": 0},
                {"name": "root", "position": [0, 2, 0], "parentIndex": 1},
                {"name": "leaf", "position": [0, 3, 0], "parentIndex": 2},
            ]
        )
        with pytest.warns(AutorigWarning, match=r"\[W02\].*invalid position"):
            out = parse_bone_suggestions(reply)
        assert [s.name for s in out] == ["root", "root_02", "leaf"]
        assert [s.parent_index for s in out] == [None, None, 1]

    def test_out_of_range_and_self_parent_dropped(self):
        reply = _bones_reply(
            [
                {"name": "a", "position": [0, 0, 0]},
                {"name": "b", "position": [0, 1, 0], "parentIndex": 1},
                {"name": "c", "position": [0, 2, 0], "parentIndex": 9},
            ]
        )
        with pytest.warns(AutorigWarning, match="invalid parent index"):
            out = parse_bone_suggestions(reply)
        assert [s.name for s in out] == ["a"]

    def test_loops_broken(self):
        reply = _bones_reply(
            [
                {"name": "a", "position": [0, 0, 0], "parentIndex": 1},
                {"name": "b", "position": [0, 1, 0], "parentIndex": 0},
            ]
        )
        out = parse_bone_suggestions(reply)
        assert [s.parent_index for s in out] == [None, 0]

    def test_alternative_list_key(self):
        out = parse_bone_suggestions(json.dumps({"suggestions": [{"name": "x", "position": [1, 2, 3]}]}))
        assert out[0].name == "x"

    @pytest.mark.parametrize(
        "reply",
        [
            json.dumps({"bones": []}),
            json.dumps({"other": 1}),
            _bones_reply([{"name": "x", "position": [0, 0, 0]}] * (MAX_SUGGESTIONS + 1)),
        ],
    )
    def test_unusable_replies(self, reply):
        with pytest.raises(OracleResponseError):
            parse_bone_suggestions(reply)

    def test_nothing_valid(self):
        with pytest.warns(AutorigWarning):
            with pytest.raises(OracleResponseError, match="No valid bone suggestions"):
                parse_bone_suggestions(_bones_reply([{"name": "x", "position": [0, 0]}]))


class TestParseAnimation:
    def test_tracks_built_and_normalized(self, two_bone_chain):
        reply = json.dumps(
            {
                "animationName": "Wave",
                "frameCount": 8,
                "fps": 500,
                "bones": [
                    {
                        "boneName": "ROOT",
                        "keyframes": [
                            {"frame": 5, "rotation": [0, 0, 0, 2], "interpolation": "bezier"},
                            {"frame": 10, "rotation": [0, 0, 1, 0], "position": [0, 1, 0]},
                        ],
                    }
                ],
            }
        )
        clip = parse_animation_response(reply, two_bone_chain)
        assert clip.name == "Wave"
        assert clip.fps == 120.0
        assert clip.frame_count == 11
        rotation = clip.find_track("root", "rotation")
        assert [k.frame for k in rotation.keyframes] == [0, 5, 10]
        assert rotation.keyframes[0].value == [0.0, 0.0, 0.0, 1.0]
        assert rotation.keyframes[1].value == [0.0, 0.0, 0.0, 1.0]
        assert rotation.keyframes[1].interpolation == "bezier"
        position = clip.find_track("root", "position")
        assert [k.frame for k in position.keyframes] == [0, 10]

    def test_unknown_bones_and_bad_keys_warn(self, two_bone_chain):
        reply = json.dumps(
            {
                "bones": [
                    {"boneName": "tail", "keyframes": [{"frame": 0, "rotation": [0, 0, 0, 1]}]},
                    {
                        "boneName": "child",
                        "keyframes": [
                            {"frame": "soon", "rotation": [0, 0, 0, 1]},
                            {"frame": 3, "rotation": [0, 0, 0, 1]},
                            {"frame": 3, "rotation": [0, 1, 0, 0], "interpolation": "cubic"},
                        ],
                    },
                ]
            }
        )
        with pytest.warns(AutorigWarning) as record:
            clip = parse_animation_response(reply, two_bone_chain)
        codes = sorted(w.message.code for w in record if isinstance(w.message, AutorigWarning))
        assert codes == ["W01", "W02"]
        assert clip.name == DEFAULT_ANIMATION_NAME
        (track,) = clip.tracks
        assert track.keyframes[-1].value == [0.0, 1.0, 0.0, 0.0]
        assert track.keyframes[-1].interpolation == "linear"
        assert clip.fps == 30.0

    def test_no_tracks(self, two_bone_chain):
        with pytest.raises(OracleResponseError, match="No valid animation tracks"):
            parse_animation_response(json.dumps({"bones": []}), two_bone_chain)


class TestOracleSession:
    def test_suggest_bones(self):
        oracle = FakeOracle(_bones_reply([{"name": "root", "position": [0, 0, 0]}]))
        with OracleSession(oracle) as session:
            out = session.suggest_bones({"vertexCount": 1}, [], timeout=5.0)
        assert [s.name for s in out] == ["root"]
        (system_prompt, user_message, timeout) = oracle.calls[0]
        assert "expert rigger" in system_prompt
        assert "ruleBasedBaseline" in user_message
        assert timeout == 5.0

    def test_generate_animation(self, two_bone_chain):
        reply = json.dumps({"bones": [{"boneName": "child", "keyframes": [{"frame": 0, "rotation": [0, 0, 0, 1]}]}]})
        with OracleSession(FakeOracle(reply)) as session:
            clip = session.generate_animation(two_bone_chain, "nod", timeout=5.0)
        assert clip.tracks[0].bone_id == "child"

    def test_generate_animation_needs_bones(self):
        with OracleSession(FakeOracle()) as session:
            with pytest.raises(OracleResponseError, match="Add bones first"):
                session.generate_animation([], "nod")

    def test_null_oracle_unavailable(self):
        with OracleSession() as session:
            with pytest.raises(OracleUnavailableError) as info:
                session.suggest_bones({}, [], timeout=5.0)
        assert info.value.retryable

    def test_cancel_discards_result(self):
        session = OracleSession()
        session.oracle = FakeOracle(_bones_reply([{"name": "root", "position": [0, 0, 0]}]), on_call=session.cancel)
        with session:
            with pytest.raises(OracleCancelledError):
                session.suggest_bones({}, [], timeout=5.0)

    def test_timeout(self):
        release = threading.Event()
        oracle = FakeOracle("{}", on_call=lambda: release.wait(5.0))
        session = OracleSession(oracle)
        try:
            with pytest.raises(OracleUnavailableError, match="timed out"):
                session.suggest_bones({}, [], timeout=0.05)
        finally:
            release.set()
            session.close()

    def test_retry_after_timeout_is_not_blocked_by_stale_call(self):
        release = threading.Event()
        reply = _bones_reply([{"name": "root", "position": [0, 0, 0]}])
        oracle = FakeOracle(reply)
        oracle.on_call = lambda: release.wait(5.0) if len(oracle.calls) == 1 else None
        session = OracleSession(oracle)
        try:
            with pytest.raises(OracleUnavailableError, match="timed out"):
                session.suggest_bones({}, [], timeout=0.05)
            out = session.suggest_bones({}, [], timeout=2.0)
            assert [s.name for s in out] == ["root"]
            assert len(oracle.calls) == 2
        finally:
            release.set()
            session.close()

    def test_unexpected_failure_is_unavailable(self):
        def boom():
            raise RuntimeError("socket closed")

        with OracleSession(FakeOracle(on_call=boom)) as session:
            with pytest.raises(OracleUnavailableError, match="socket closed"):
                session.suggest_bones({}, [], timeout=5.0)


class TestOpenAIOracle:
    @staticmethod
    def _client(content):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            message = SimpleNamespace(content=content)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        return client, calls

    def test_returns_content(self):
        client, calls = self._client('{"bones": []}')
        oracle = OpenAIOracle(model="test-model", client=client)
        assert oracle.complete("sys", "user", 12.0) == '{"bones": []}'
        assert calls[0]["model"] == "test-model"
        assert calls[0]["timeout"] == 12.0
        assert calls[0]["messages"][0] == {"role": "system", "content": "sys"}

    def test_empty_content(self):
        client, _ = self._client("")
        with pytest.raises(OracleResponseError):
            OpenAIOracle(client=client).complete("sys", "user", 1.0)

    def test_null_oracle(self):
        with pytest.raises(OracleUnavailableError):
            NullOracle().complete("a", "b", 1.0)
