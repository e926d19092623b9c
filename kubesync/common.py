"""Shared enumerations and annotation constants used by the sync engine."""

from __future__ import annotations

from enum import Enum


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


ANNOTATION_KEY_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_KEY_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"

SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE = "SkipDryRunOnMissingResource=true"
SYNC_OPTION_DISABLE_PRUNE = "Prune=false"
SYNC_OPTIONS_DISABLE_VALIDATION = "Validate=false"
SYNC_OPTION_REPLACE = "Replace=true"
SYNC_OPTION_FORCE = "Force=true"
SYNC_OPTION_SERVER_SIDE_APPLY = "ServerSideApply=true"
SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY = "ServerSideApply=false"
SYNC_OPTION_PRUNE_LAST = "PruneLast=true"
SYNC_OPTION_PRUNE_REQUIRE_CONFIRM = "Prune=confirm"


class HookType(_StrEnum):
    """The phase annotation value a hook resource may carry."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"
    SKIP = "Skip"


class HookDeletePolicy(_StrEnum):
    """When a hook resource is deleted."""

    HOOK_SUCCEEDED = "HookSucceeded"
    HOOK_FAILED = "HookFailed"
    BEFORE_HOOK_CREATION = "BeforeHookCreation"


class SyncPhase(_StrEnum):
    """The phases of a sync operation."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class OperationPhase(_StrEnum):
    """The state of an operation or of a single resource within it."""

    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"

    def running(self) -> bool:
        return self in (OperationPhase.RUNNING, OperationPhase.TERMINATING)

    def completed(self) -> bool:
        return self in (OperationPhase.FAILED, OperationPhase.ERROR, OperationPhase.SUCCEEDED)

    def successful(self) -> bool:
        return self is OperationPhase.SUCCEEDED


class ResultCode(_StrEnum):
    """The outcome of applying or pruning one resource."""

    SYNCED = "Synced"
    SYNC_FAILED = "SyncFailed"
    PRUNED = "Pruned"
    PRUNE_SKIPPED = "PruneSkipped"


def parse_hook_type(text: str) -> HookType | None:
    """Return the hook type named by ``text``, or None if it names none."""
    try:
        return HookType(text)
    except ValueError:
        return None


def parse_hook_delete_policy(text: str) -> HookDeletePolicy | None:
    """Return the delete policy named by ``text``, or None if it names none."""
    try:
        return HookDeletePolicy(text)
    except ValueError:
        return None