"""Optional external suggestion oracle: prompts, transport and reply validation.

The oracle is any object with a ``complete(system_prompt, user_message,
timeout)`` method returning the raw response text. Responses are parsed in
full before anything is returned, so a failed, cancelled or timed-out call
never leaves partially applied results behind.
"""

from __future__ import annotations

import json
import math
import re
import threading
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from typing import Any, Protocol, TypeVar

import numpy as np
import openai

from autorig.errors import (
    OracleCancelledError,
    OracleError,
    OracleResponseError,
    OracleUnavailableError,
)
from autorig.hierarchy import bone_map
from autorig.models import (
    PROPERTY_ARITY,
    AnimationClip,
    AnimationTrack,
    AutoBoneSettings,
    Bone,
    BoneSuggestion,
    Keyframe,
)
from autorig.warning_policy import INVALID_ENTRY, UNKNOWN_BONE, WarningPolicy, emit_warning

T = TypeVar("T")

BONE_TIMEOUT = 120.0
ANIMATION_TIMEOUT = 600.0
MAX_SUGGESTIONS = 128
ORACLE_CONFIDENCE = 0.85
DEFAULT_ANIMATION_NAME = "AI Generated Animation"
DEFAULT_MODEL = "gpt-4o"

BONE_SYSTEM_PROMPT = """You are an expert rigger. Propose a clean, well-named bone layout for a 3D creature model.

You will receive a model summary, rig settings and a baseline list of rule-based suggestions. Improve naming and placement where needed, but keep the bone count reasonable.

Return ONLY a JSON object with this structure:
{
  "bones": [
    {"name": "string", "position": [x, y, z], "parentIndex": number | null}
  ]
}

Rules:
1. Use unique ASCII names (letters, numbers, underscores).
2. parentIndex refers to an index in the returned array.
3. Keep positions within the model bounding box.
4. Root first, then pelvis/spine, then neck/head, then limbs.
5. If unsure, stay close to the baseline suggestions.
6. Output JSON only."""

ANIMATION_SYSTEM_PROMPT = """You are an expert 3D animator. Generate keyframe animation data for a skeleton rig.

You will receive the skeleton (bone names, parents, rest positions and rotations) and a description of the animation.

Return ONLY a JSON object with this structure:
{
  "animationName": "string",
  "frameCount": number,
  "fps": 30,
  "bones": [
    {
      "boneName": "exact bone name from input",
      "keyframes": [
        {"frame": 0, "rotation": [x, y, z, w], "interpolation": "linear"}
      ]
    }
  ]
}

Rules:
1. Use ONLY bone names from the provided skeleton.
2. Rotations are absolute world-space quaternions [x, y, z, w].
3. Treat the rest rotation as the neutral pose and apply small deltas around it.
4. Prefer rotation keys. Include "position" or "scale" keys only when asked.
5. Include frame 0 for every animated bone and keep frames within [0, frameCount - 1].
6. Output JSON only."""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class SuggestionOracle(Protocol):
    def complete(self, system_prompt: str, user_message: str, timeout: float) -> str: ...


class NullOracle:
    """Oracle that is never available."""

    def complete(self, system_prompt: str, user_message: str, timeout: float) -> str:
        raise OracleUnavailableError("No suggestion oracle is configured")


class OpenAIOracle:
    """Chat-completions oracle backed by the openai client."""

    def __init__(self, model: str = DEFAULT_MODEL, api_key: str | None = None, client: Any = None) -> None:
        self.model = model
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = openai.OpenAI(api_key=self._api_key)
            except openai.OpenAIError as e:
                raise OracleError(f"Cannot create OpenAI client: {e}") from e
        return self._client

    def complete(self, system_prompt: str, user_message: str, timeout: float) -> str:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                timeout=timeout,
            )
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as e:
            raise OracleUnavailableError(f"Oracle request failed: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise OracleUnavailableError(f"Oracle service error: {e}") from e
            raise OracleError(f"Oracle rejected the request: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise OracleResponseError("No content found in oracle response")
        return content


# --- Requests ---


def build_bone_request(
    model_summary: dict,
    baseline: Sequence[BoneSuggestion],
    settings: AutoBoneSettings | None = None,
    hint: str = "",
) -> str:
    payload = {
        "modelSummary": model_summary,
        "rigSettings": (settings or AutoBoneSettings()).model_dump(),
        "ruleBasedBaseline": [
            {
                "index": i,
                "name": s.name,
                "position": list(s.position),
                "parentIndex": s.parent_index,
            }
            for i, s in enumerate(baseline)
        ],
        "freeTextHint": hint.strip() or "none",
    }
    return json.dumps(payload, indent=2)


def describe_skeleton(bones: Sequence[Bone]) -> str:
    if not bones:
        return "No bones defined yet."
    by_id = bone_map(bones)
    lines = [f"Skeleton has {len(bones)} bones:"]
    for bone in bones:
        parent = by_id.get(bone.parent_id) if bone.parent_id else None
        parent_name = parent.name if parent is not None else "none (root)"
        pos = ", ".join(f"{v:.2f}" for v in bone.position)
        rot = ", ".join(f"{v:.3f}" for v in bone.rotation)
        lines.append(
            f'- "{bone.name}" (parent: {parent_name}, position: [{pos}], '
            f"rotation: [{rot}], length: {bone.length:.2f})"
        )
    return "\n".join(lines)


def build_animation_request(bones: Sequence[Bone], prompt: str) -> str:
    return f'{describe_skeleton(bones)}\n\nCreate an animation for: "{prompt}"'


# --- Response parsing ---


def extract_json_object(content: str) -> dict:
    """The outermost ``{...}`` in the text, parsed. Surrounding prose is ignored."""
    match = _JSON_OBJECT.search(content or "")
    if match is None:
        raise OracleResponseError("No JSON object found in oracle response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise OracleResponseError(f"Malformed JSON in oracle response: {e}") from e
    if not isinstance(data, dict):
        raise OracleResponseError("Oracle response is not a JSON object")
    return data


def _finite_vector(raw: object, arity: int) -> list[float] | None:
    if not isinstance(raw, (list, tuple)) or len(raw) != arity:
        return None
    try:
        values = [float(v) for v in raw]
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) for v in values):
        return None
    return values


def _sanitize_name(raw: object, index: int, used: dict[str, int]) -> str:
    name = raw.strip() if isinstance(raw, str) else ""
    base = re.sub(r"\s+", "_", name) or f"bone_{index + 1:02d}"
    count = used.get(base, 0)
    used[base] = count + 1
    if count == 0:
        return base
    return f"{base}_{count + 1:02d}"


def _parent_index(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def parse_bone_suggestions(content: str, *, policy: WarningPolicy | None = None) -> list[BoneSuggestion]:
    """Suggestions from an oracle reply.

    Accepts the list under ``bones``, ``suggestions`` or ``boneSuggestions``.
    Entries with a malformed or non-finite position, or a parent index that is
    out of range or points at itself, are dropped with W02. Parents that
    referred to a dropped entry, or that would close a loop, become roots.
    Raises OracleResponseError when nothing usable remains.
    """
    data = extract_json_object(content)
    raw = data.get("bones") or data.get("suggestions") or data.get("boneSuggestions")
    if not isinstance(raw, list) or not raw:
        raise OracleResponseError("Oracle response contains no bone list")
    if len(raw) > MAX_SUGGESTIONS:
        raise OracleResponseError(f"Oracle returned {len(raw)} bones (limit {MAX_SUGGESTIONS})")

    used_names: dict[str, int] = {}
    kept: list[tuple[int, str, list[float], int | None]] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            emit_warning(INVALID_ENTRY, f"Bone entry {index} is not an object; dropped", policy=policy)
            continue
        position = _finite_vector(entry.get("position"), 3)
        if position is None:
            emit_warning(
                INVALID_ENTRY,
                f"Bone entry {index} has an invalid position {entry.get('position')!r}; dropped",
                policy=policy,
            )
            continue
        parent = _parent_index(entry.get("parentIndex"))
        if parent is not None and parent < 0:
            parent = None
        if parent is not None and (parent >= len(raw) or parent == index):
            emit_warning(
                INVALID_ENTRY,
                f"Bone entry {index} has an invalid parent index {parent}; dropped",
                policy=policy,
            )
            continue
        kept.append((index, _sanitize_name(entry.get("name"), index, used_names), position, parent))

    if not kept:
        raise OracleResponseError("No valid bone suggestions in oracle response")

    new_index = {orig: i for i, (orig, _, _, _) in enumerate(kept)}
    parents: list[int | None] = [
        new_index.get(parent) if parent is not None else None for _, _, _, parent in kept
    ]
    for start in range(len(parents)):
        seen = {start}
        current = parents[start]
        while current is not None:
            if current in seen:
                parents[start] = None
                break
            seen.add(current)
            current = parents[current]

    return [
        BoneSuggestion(
            position=tuple(position),
            name=name,
            parent_index=parents[i],
            confidence=ORACLE_CONFIDENCE,
        )
        for i, (_, name, position, _) in enumerate(kept)
    ]


def _interpolation(raw: object) -> str:
    return raw if raw in ("linear", "bezier", "step") else "linear"


def _frame(raw: object) -> int | None:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return max(0, int(round(value)))


def parse_animation_response(
    content: str,
    bones: Sequence[Bone],
    *,
    policy: WarningPolicy | None = None,
) -> AnimationClip:
    """Build a clip from an oracle reply, matching bone names case-insensitively.

    Unknown bones are dropped with W01 and malformed keys with W02. Rotations
    are normalized, frame 0 is filled from the rest pose when missing, fps is
    clamped to [1, 120] and the frame count grows to cover the last key.
    """
    data = extract_json_object(content)
    by_name = {b.name.lower(): b for b in bones}

    try:
        fps = float(data.get("fps", 30))
    except (TypeError, ValueError):
        fps = 30.0
    fps = min(120.0, max(1.0, fps)) if math.isfinite(fps) else 30.0
    try:
        frame_count = float(data.get("frameCount", 60))
    except (TypeError, ValueError):
        frame_count = 60.0
    frame_count = max(2, int(round(frame_count))) if math.isfinite(frame_count) else 60

    raw_bones = data.get("bones")
    if not isinstance(raw_bones, list):
        raise OracleResponseError("Oracle response contains no bone animation list")

    tracks: list[AnimationTrack] = []
    max_frame = 0
    for entry in raw_bones:
        if not isinstance(entry, dict):
            emit_warning(INVALID_ENTRY, "Animation entry is not an object; dropped", policy=policy)
            continue
        raw_name = entry.get("boneName")
        bone = by_name.get(raw_name.lower()) if isinstance(raw_name, str) else None
        if bone is None:
            emit_warning(UNKNOWN_BONE, f"Bone not found in skeleton: {raw_name!r}", policy=policy)
            continue

        for prop in ("rotation", "position", "scale"):
            keys: dict[int, Keyframe] = {}
            for kf in entry.get("keyframes") or []:
                if not isinstance(kf, dict) or prop not in kf:
                    continue
                frame = _frame(kf.get("frame"))
                value = _finite_vector(kf.get(prop), PROPERTY_ARITY[prop])
                if frame is None or value is None:
                    emit_warning(
                        INVALID_ENTRY,
                        f"Invalid {prop} key for bone {bone.name!r}: {kf!r}; dropped",
                        policy=policy,
                    )
                    continue
                if prop == "rotation":
                    norm = float(np.linalg.norm(value))
                    value = [v / norm for v in value] if norm > 0 else [0.0, 0.0, 0.0, 1.0]
                max_frame = max(max_frame, frame)
                keys[frame] = Keyframe(frame=frame, value=value, interpolation=_interpolation(kf.get("interpolation")))
            if not keys:
                continue
            if 0 not in keys:
                rest = {"rotation": bone.rotation, "position": bone.position, "scale": bone.scale}[prop]
                keys[0] = Keyframe(frame=0, value=list(rest))
            tracks.append(AnimationTrack(bone_id=bone.id, property=prop, keyframes=list(keys.values())))

    if not tracks:
        raise OracleResponseError("No valid animation tracks in oracle response")

    name = data.get("animationName")
    return AnimationClip(
        id=str(uuid.uuid4()),
        name=name.strip() if isinstance(name, str) and name.strip() else DEFAULT_ANIMATION_NAME,
        fps=fps,
        frame_count=max(frame_count, max_frame + 1),
        tracks=tracks,
    )


# --- Session ---


class OracleSession:
    """Runs each oracle call on its own daemon thread with timeouts and cancellation.

    Every request takes a generation token. ``cancel()`` or a newer request
    makes older tokens stale; a stale request raises OracleCancelledError
    instead of returning, so callers only ever apply current results.
    """

    def __init__(self, oracle: SuggestionOracle | None = None, *, policy: WarningPolicy | None = None) -> None:
        self.oracle: SuggestionOracle = oracle or NullOracle()
        self.policy = policy
        self._lock = threading.Lock()
        self._generation = 0
        self._wakeup: threading.Event | None = None

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._wakeup is not None:
                self._wakeup.set()

    def close(self) -> None:
        self.cancel()

    def __enter__(self) -> OracleSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _run(self, future: Future[str], system_prompt: str, user_message: str, timeout: float) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self.oracle.complete(system_prompt, user_message, timeout))
        except BaseException as e:
            future.set_exception(e)

    def request(
        self,
        system_prompt: str,
        user_message: str,
        timeout: float,
        parse: Callable[[str], T],
    ) -> T:
        wakeup = threading.Event()
        with self._lock:
            if self._wakeup is not None:
                self._wakeup.set()
            self._generation += 1
            token = self._generation
            self._wakeup = wakeup

        # One thread per call: a stale call keeps running and must not queue ahead of this one.
        future: Future[str] = Future()
        future.add_done_callback(lambda _f: wakeup.set())
        worker = threading.Thread(
            target=self._run,
            args=(future, system_prompt, user_message, timeout),
            name=f"autorig-oracle-{token}",
            daemon=True,
        )
        worker.start()
        finished = wakeup.wait(timeout)

        if not self.is_current(token):
            raise OracleCancelledError("Oracle request was cancelled")
        if not finished or not future.done():
            raise OracleUnavailableError(f"Oracle request timed out after {timeout:g}s")

        try:
            content = future.result()
        except OracleError:
            raise
        except Exception as e:
            raise OracleUnavailableError(f"Oracle request failed: {e}") from e

        result = parse(content)
        if not self.is_current(token):
            raise OracleCancelledError("Oracle request was superseded")
        return result

    def suggest_bones(
        self,
        model_summary: dict,
        baseline: Sequence[BoneSuggestion],
        settings: AutoBoneSettings | None = None,
        hint: str = "",
        *,
        timeout: float = BONE_TIMEOUT,
    ) -> list[BoneSuggestion]:
        return self.request(
            BONE_SYSTEM_PROMPT,
            build_bone_request(model_summary, baseline, settings, hint),
            timeout,
            lambda content: parse_bone_suggestions(content, policy=self.policy),
        )

    def generate_animation(
        self,
        bones: Sequence[Bone],
        prompt: str,
        *,
        timeout: float = ANIMATION_TIMEOUT,
    ) -> AnimationClip:
        if not bones:
            raise OracleResponseError("No bones in skeleton. Add bones first.")
        return self.request(
            ANIMATION_SYSTEM_PROMPT,
            build_animation_request(bones, prompt),
            timeout,
            lambda content: parse_animation_response(content, bones, policy=self.policy),
        )
