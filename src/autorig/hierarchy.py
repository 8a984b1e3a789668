"""Parent-graph queries over flat bone lists."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence

from autorig.models import Bone


def bone_map(bones: Iterable[Bone]) -> dict[str, Bone]:
    return {b.id: b for b in bones}


def children_map(bones: Sequence[Bone]) -> dict[str | None, list[Bone]]:
    """Map parent id (None for roots) to children, in skeleton order.

    Bones whose parent id is dangling are treated as roots.
    """
    ids = {b.id for b in bones}
    result: dict[str | None, list[Bone]] = {}
    for b in bones:
        parent = b.parent_id if b.parent_id in ids else None
        result.setdefault(parent, []).append(b)
    return result


def root_bones(bones: Sequence[Bone]) -> list[Bone]:
    return children_map(bones).get(None, [])


def breadth_first(bones: Sequence[Bone]) -> list[Bone]:
    """Bones ordered root-to-leaf so parents always precede their children."""
    children = children_map(bones)
    order: list[Bone] = []
    seen: set[str] = set()
    queue: deque[Bone] = deque(children.get(None, []))
    while queue:
        bone = queue.popleft()
        if bone.id in seen:
            continue
        seen.add(bone.id)
        order.append(bone)
        queue.extend(children.get(bone.id, []))
    return order


def ancestors(bone_id: str, bones: Sequence[Bone]) -> list[str]:
    """Ancestor ids of bone_id, nearest first. Stops at a repeated id."""
    by_id = bone_map(bones)
    result: list[str] = []
    seen = {bone_id}
    current = by_id.get(bone_id)
    while current is not None and current.parent_id is not None:
        pid = current.parent_id
        if pid in seen or pid not in by_id:
            break
        seen.add(pid)
        result.append(pid)
        current = by_id[pid]
    return result


def would_create_cycle(bone_id: str, new_parent_id: str | None, bones: Sequence[Bone]) -> bool:
    """True if parenting bone_id under new_parent_id would close a loop."""
    if new_parent_id is None:
        return False
    if new_parent_id == bone_id:
        return True
    return bone_id in ancestors(new_parent_id, bones)


def find_cycle(bones: Sequence[Bone]) -> list[str] | None:
    """Return the ids of one parent cycle, or None if the graph is a forest."""
    by_id = bone_map(bones)
    for start in bones:
        path: list[str] = []
        on_path: set[str] = set()
        current: Bone | None = start
        while current is not None:
            if current.id in on_path:
                return path[path.index(current.id):]
            on_path.add(current.id)
            path.append(current.id)
            current = by_id.get(current.parent_id) if current.parent_id else None
    return None


def structure_hash(bones: Sequence[Bone]) -> str:
    """Signature of ids and parent links; transforms are not part of it."""
    return "|".join(f"{b.id}:{b.parent_id or ''}" for b in bones)
