"""Recognition of hook resources and their delete policies."""

from __future__ import annotations

from . import helm
from .annotations import get_annotation_csvs
from .common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    HookDeletePolicy,
    HookType,
    parse_hook_delete_policy,
    parse_hook_type,
)
from .objects import KubeObject

HOOK_FINALIZER = "argocd.argoproj.io/hook-finalizer"
"""Finalizer added to hooks so they are deleted only after their phase completes."""


def has_hook_finalizer(obj: KubeObject) -> bool:
    """Whether ``obj`` carries the hook finalizer."""
    return HOOK_FINALIZER in obj.finalizers


def is_hook(obj: KubeObject) -> bool:
    """Whether ``obj`` is a hook, by hook annotation or Helm hook annotation."""
    if ANNOTATION_KEY_HOOK in obj.annotations:
        return not skip(obj)
    return helm.is_hook(obj)


def skip(obj: KubeObject) -> bool:
    """Whether ``obj`` is marked to be skipped and has no other hook type."""
    hook_types = types(obj)
    return HookType.SKIP in hook_types and len(hook_types) == 1


def types(obj: KubeObject) -> list[HookType]:
    """Return the hook types of ``obj``; Helm types count only without our own."""
    parsed = (parse_hook_type(text) for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK))
    result = [t for t in parsed if t is not None]
    if not result:
        result = [t.hook_type() for t in helm.types(obj)]
    return result


def delete_policies(obj: KubeObject) -> list[HookDeletePolicy]:
    """Return the delete policies of ``obj``, defaulting to BeforeHookCreation."""
    parsed = (
        parse_hook_delete_policy(text)
        for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK_DELETE_POLICY)
    )
    policies = [p for p in parsed if p is not None]
    policies.extend(p.delete_policy() for p in helm.delete_policies(obj))
    return policies or [HookDeletePolicy.BEFORE_HOOK_CREATION]


def ignore(obj: KubeObject) -> bool:
    """Whether ``obj`` is a hook without any recognised hook type."""
    return is_hook(obj) and not types(obj)