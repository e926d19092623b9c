"""Recognition of Helm hook annotations."""

from __future__ import annotations

import re
from enum import Enum

from .annotations import get_annotation_csvs
from .common import HookDeletePolicy, HookType
from .objects import KubeObject

HELM_HOOK_ANNOTATION = "helm.sh/hook"
HELM_HOOK_DELETE_POLICY_ANNOTATION = "helm.sh/hook-delete-policy"
HELM_HOOK_WEIGHT_ANNOTATION = "helm.sh/hook-weight"

_INTEGER = re.compile(r"[+-]?[0-9]+")


class HelmType(str, Enum):
    """Helm hook types that have a sync phase counterpart."""

    PRE_INSTALL = "pre-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    POST_INSTALL = "post-install"

    def __str__(self) -> str:
        return self.value

    def hook_type(self) -> HookType:
        if self in (HelmType.PRE_INSTALL, HelmType.PRE_UPGRADE):
            return HookType.PRE_SYNC
        return HookType.POST_SYNC


class HelmDeletePolicy(str, Enum):
    """Helm hook delete policies."""

    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"

    def __str__(self) -> str:
        return self.value

    def delete_policy(self) -> HookDeletePolicy:
        return _DELETE_POLICIES[self]


_DELETE_POLICIES = {
    HelmDeletePolicy.BEFORE_HOOK_CREATION: HookDeletePolicy.BEFORE_HOOK_CREATION,
    HelmDeletePolicy.HOOK_SUCCEEDED: HookDeletePolicy.HOOK_SUCCEEDED,
    HelmDeletePolicy.HOOK_FAILED: HookDeletePolicy.HOOK_FAILED,
}


def parse_helm_type(text: str) -> HelmType | None:
    """Return the Helm hook type named by ``text``, or None if unsupported."""
    try:
        return HelmType(text)
    except ValueError:
        return None


def parse_helm_delete_policy(text: str) -> HelmDeletePolicy | None:
    """Return the Helm delete policy named by ``text``, or None if unknown."""
    try:
        return HelmDeletePolicy(text)
    except ValueError:
        return None


def is_hook(obj: KubeObject) -> bool:
    """Whether ``obj`` carries a Helm hook annotation other than crd-install."""
    annotations = obj.annotations
    return HELM_HOOK_ANNOTATION in annotations and annotations[HELM_HOOK_ANNOTATION] != "crd-install"


def types(obj: KubeObject) -> list[HelmType]:
    """Return the supported Helm hook types listed on ``obj``."""
    parsed = (parse_helm_type(text) for text in get_annotation_csvs(obj, HELM_HOOK_ANNOTATION))
    return [t for t in parsed if t is not None]


def delete_policies(obj: KubeObject) -> list[HelmDeletePolicy]:
    """Return the Helm delete policies listed on ``obj``."""
    parsed = (
        parse_helm_delete_policy(text)
        for text in get_annotation_csvs(obj, HELM_HOOK_DELETE_POLICY_ANNOTATION)
    )
    return [p for p in parsed if p is not None]


def weight(obj: KubeObject) -> int:
    """Return the Helm hook weight of ``obj``, or 0 when absent or invalid."""
    text = obj.annotations.get(HELM_HOOK_WEIGHT_ANNOTATION)
    if text is not None and _INTEGER.fullmatch(text):
        return int(text)
    return 0