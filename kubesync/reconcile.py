"""Pairing desired (target) objects with the objects live in the cluster."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import MutableMapping, Protocol

from . import hooks
from .objects import KubeObject, ResourceKey, first_non_empty, get_resource_key


class _ResourceInfoProvider(Protocol):
    def is_namespaced(self, group: str, kind: str) -> bool: ...


@dataclass
class ReconciliationResult:
    """Target and live objects aligned by position, plus the hooks."""

    live: list[KubeObject | None] = field(default_factory=list)
    target: list[KubeObject | None] = field(default_factory=list)
    hooks: list[KubeObject] = field(default_factory=list)


def split_hooks(target: list[KubeObject | None]) -> tuple[list[KubeObject], list[KubeObject]]:
    """Separate hooks from ordinary objects, dropping missing and ignored ones."""
    target_objs: list[KubeObject] = []
    hook_objs: list[KubeObject] = []
    for obj in target:
        if obj is None or hooks.ignore(obj):
            continue
        (hook_objs if hooks.is_hook(obj) else target_objs).append(obj)
    return target_objs, hook_objs


def dedup_live_resources(
    target_objs: list[KubeObject],
    live_objs_by_key: MutableMapping[ResourceKey, KubeObject | None],
) -> None:
    """Remove live objects that share a UID with another, in place.

    The same object may be reported under several API groups. Copies not
    present among the targets are removed; at least one copy always stays.
    """
    target_keys = {get_resource_key(obj) for obj in target_objs}
    by_uid: dict[str, list[KubeObject]] = defaultdict(list)
    for obj in live_objs_by_key.values():
        if obj is not None:
            by_uid[obj.uid].append(obj)
    for objs in by_uid.values():
        if len(objs) <= 1:
            continue
        duplicates_left = len(objs)
        for obj in objs:
            key = get_resource_key(obj)
            if key in target_keys:
                continue
            live_objs_by_key.pop(key, None)
            duplicates_left -= 1
            if duplicates_left == 1:
                break


def reconcile(
    target_objs: list[KubeObject | None],
    live_obj_by_key: MutableMapping[ResourceKey, KubeObject | None],
    namespace: str,
    res_info: _ResourceInfoProvider,
) -> ReconciliationResult:
    """Match each target with its live object; unmatched live objects follow.

    ``res_info.is_namespaced`` may raise when the scope of a kind is unknown;
    both the namespaced and the cluster-scoped key are then tried. The given
    mapping is left unchanged.
    """
    targets, hook_objs = split_hooks(target_objs)
    live = dict(live_obj_by_key)
    dedup_live_resources(targets, live)

    managed_live: list[KubeObject | None] = []
    for obj in targets:
        ns = first_non_empty(obj.namespace, namespace)
        try:
            namespaced = res_info.is_namespaced(obj.group, obj.kind)
            unknown_scope = False
        except Exception:
            namespaced = False
            unknown_scope = True

        keys_to_check: list[ResourceKey] = []
        if namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(obj.group, obj.kind, ns, obj.name))
        if not namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(obj.group, obj.kind, "", obj.name))

        found = next((key for key in keys_to_check if key in live), None)
        managed_live.append(live.pop(found) if found is not None else None)

    remaining = list(live.values())
    return ReconciliationResult(
        live=managed_live + remaining,
        target=[*targets, *([None] * len(remaining))],
        hooks=hook_objs,
    )