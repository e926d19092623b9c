"""Mapping resources to the sync phases they take part in."""

from __future__ import annotations

from . import hooks
from .common import HookType, SyncPhase
from .objects import KubeObject

_HOOK_PHASES = {
    HookType.PRE_SYNC: SyncPhase.PRE_SYNC,
    HookType.SYNC: SyncPhase.SYNC,
    HookType.POST_SYNC: SyncPhase.POST_SYNC,
    HookType.SYNC_FAIL: SyncPhase.SYNC_FAIL,
}


def sync_phases(obj: KubeObject) -> list[SyncPhase]:
    """Return the distinct phases ``obj`` runs in.

    Skipped objects and hooks with no recognised type run in no phase;
    ordinary resources run in the Sync phase.
    """
    if hooks.skip(obj):
        return []
    if hooks.is_hook(obj):
        phases = (_HOOK_PHASES.get(hook_type) for hook_type in hooks.types(obj))
        return list(dict.fromkeys(phase for phase in phases if phase is not None))
    return [SyncPhase.SYNC]