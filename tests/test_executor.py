from datetime import datetime, timezone

import pytest

from kubesync import hooks
from kubesync.cluster import (
    APIResource,
    ApiError,
    ClusterClient,
    ConflictError,
    DeletePropagation,
    DryRunStrategy,
    Kubectl,
    NotFoundError,
    ResourceOperations,
)
from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_OPTIONS,
    OperationPhase,
    ResultCode,
    SyncPhase,
)
from kubesync.executor import TaskExecutor
from kubesync.objects import KubeObject, get_resource_key
from kubesync.state import RunState
from kubesync.tasks import SyncTask

NS = "fake-argocd-ns"


def make_obj(kind="Pod", name="my-pod", api_version="v1", annotations=None, namespace=NS):
    obj = KubeObject({"apiVersion": api_version, "kind": kind, "metadata": {"name": name}})
    if namespace:
        obj.namespace = namespace
    if annotations:
        obj.annotations = annotations
    return obj


def make_crd(name="testcrds.argoproj.io", annotations=None):
    return make_obj(
        kind="CustomResourceDefinition",
        name=name,
        api_version="apiextensions.k8s.io/v1",
        annotations=annotations,
        namespace="",
    )


class FakeOps(ResourceOperations):
    def __init__(self, errors=None):
        self.errors = errors or {}
        self.commands = {}
        self.last = {}
        self.updated = []

    def _record(self, obj, command, **kwargs):
        self.commands[get_resource_key(obj)] = command
        self.last = dict(kwargs, command=command)
        err = self.errors.get(obj.name)
        if err is not None:
            raise err

    def apply_resource(self, obj, dry_run, force, validate, server_side, manager):
        self._record(
            obj, "apply", dry_run=dry_run, force=force, validate=validate,
            server_side=server_side, manager=manager,
        )
        return ""

    def replace_resource(self, obj, dry_run, force):
        self._record(obj, "replace", dry_run=dry_run, force=force)
        return "replaced"

    def create_resource(self, obj, dry_run, validate):
        self._record(obj, "create", dry_run=dry_run, validate=validate)
        return "created"

    def update_resource(self, obj, dry_run):
        self._record(obj, "update", dry_run=dry_run)
        self.updated.append(obj)
        return obj


class FakeKubectl(Kubectl):
    def __init__(self, errors=None):
        self.errors = errors or {}
        self.deleted = []

    def get_resource(self, group, version, kind, name, namespace):
        raise NotFoundError(name)

    def delete_resource(self, group, version, kind, name, namespace, propagation):
        err = self.errors.get(name)
        if err is not None:
            raise err
        self.deleted.append((kind, name, namespace, propagation))


class FakeCluster(ClusterClient):
    def __init__(self, update_errors=None, delete_error=None, fresh=None, established=True):
        self.update_errors = list(update_errors or [])
        self.delete_error = delete_error
        self.fresh = fresh
        self.established = established
        self.updates = []
        self.deleted = []
        self.gets = 0
        self.crd_checks = []

    def server_resource(self, group, version, kind, verb):
        return APIResource(group=group, version=version, kind=kind, namespaced=True)

    def get_resource(self, api_resource, namespace, name):
        self.gets += 1
        if self.fresh is None:
            raise NotFoundError(name)
        return self.fresh.deep_copy()

    def update_resource(self, api_resource, obj):
        self.updates.append(obj.deep_copy())
        if self.update_errors:
            raise self.update_errors.pop(0)
        return obj

    def delete_resource(self, api_resource, namespace, name, propagation):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((name, namespace, propagation))

    def crd_established(self, name):
        self.crd_checks.append(name)
        return self.established


def executor(**kwargs):
    kwargs.setdefault("resource_ops", FakeOps())
    kwargs.setdefault("kubectl", FakeKubectl())
    kwargs.setdefault("cluster", FakeCluster())
    return TaskExecutor(**kwargs)


# prune_object


def test_prune_requires_pruning():
    ex = executor()
    assert ex.prune_object(make_obj(), False, False) == (
        ResultCode.PRUNE_SKIPPED,
        "ignored (requires pruning)",
    )
    assert ex.kubectl.deleted == []


def test_prune_false_annotation():
    ex = executor()
    pod = make_obj(annotations={ANNOTATION_SYNC_OPTIONS: "Prune=false"})
    assert ex.prune_object(pod, True, False) == (ResultCode.PRUNE_SKIPPED, "ignored (no prune)")


def test_prune_dry_run():
    ex = executor()
    assert ex.prune_object(make_obj(), True, True) == (ResultCode.PRUNED, "pruned (dry run)")
    assert ex.kubectl.deleted == []


def test_prune_deletes_with_foreground_policy():
    ex = executor()
    assert ex.prune_object(make_obj(), True, False) == (ResultCode.PRUNED, "pruned")
    assert ex.kubectl.deleted == [("Pod", "my-pod", NS, DeletePropagation.FOREGROUND)]


def test_prune_skips_delete_when_already_deleting():
    ex = executor()
    pod = make_obj()
    pod.deletion_timestamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert ex.prune_object(pod, True, False) == (ResultCode.PRUNED, "pruned")
    assert ex.kubectl.deleted == []


def test_prune_failure():
    ex = executor(kubectl=FakeKubectl(errors={"my-pod": ApiError("foo")}))
    assert ex.prune_object(make_obj(), True, False) == (ResultCode.SYNC_FAILED, "foo")


def test_delete_options_default():
    assert executor().delete_options() is DeletePropagation.FOREGROUND


def test_delete_options_with_prune_propagation_policy():
    ex = executor(prune_propagation_policy=DeletePropagation.BACKGROUND)
    assert ex.delete_options() is DeletePropagation.BACKGROUND


# apply_object


@pytest.mark.parametrize(
    "annotation, live, command",
    [
        (None, True, "apply"),
        ("Replace=true", True, "replace"),
        ("Replace=true", False, "create"),
    ],
)
def test_apply_replace(annotation, live, command):
    ex = executor()
    annotations = {ANNOTATION_SYNC_OPTIONS: annotation} if annotation else None
    target = make_obj(annotations=annotations)
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=target, live_obj=make_obj() if live else None)
    result, _ = ex.apply_object(task, False, True)
    assert result is ResultCode.SYNCED
    assert ex.resource_ops.commands[get_resource_key(target)] == command


def test_apply_namespace_with_replace_updates():
    ex = executor()
    target = make_obj(
        kind="Namespace", name="ns", namespace="",
        annotations={ANNOTATION_SYNC_OPTIONS: "Replace=true,ServerSideApply=true"},
    )
    live = make_obj(kind="Namespace", name="ns", namespace="")
    live.resource_version = "42"
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=target, live_obj=live)
    assert ex.apply_object(task, False, True) == (ResultCode.SYNCED, "Namespace/ns updated")
    assert ex.resource_ops.commands[get_resource_key(target)] == "update"
    assert ex.resource_ops.updated[0].resource_version == "42"
    assert target.resource_version == ""


@pytest.mark.parametrize(
    "annotation, command, force",
    [
        (None, "apply", False),
        ("Force=true", "apply", True),
        ("Force=true,Replace=true", "replace", True),
    ],
)
def test_apply_force(annotation, command, force):
    ex = executor()
    annotations = {ANNOTATION_SYNC_OPTIONS: annotation} if annotation else None
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(annotations=annotations), live_obj=make_obj())
    ex.apply_object(task, False, True)
    assert ex.resource_ops.last["command"] == command
    assert ex.resource_ops.last["force"] is force


@pytest.mark.parametrize(
    "annotation, global_ssa, expected",
    [
        (None, False, False),
        ("ServerSideApply=true", False, True),
        ("ServerSideApply=false", True, False),
        (None, True, True),
    ],
)
def test_apply_server_side(annotation, global_ssa, expected):
    ex = executor(server_side_apply=global_ssa, server_side_apply_manager="managerB")
    annotations = {ANNOTATION_SYNC_OPTIONS: annotation} if annotation else None
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(annotations=annotations), live_obj=make_obj())
    ex.apply_object(task, False, True)
    assert ex.resource_ops.last["server_side"] is expected
    assert ex.resource_ops.last["manager"] == "managerB"


def test_apply_dry_run_is_client_side_without_server_side_apply():
    ex = executor(dry_run=True, server_side_apply=True)
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj())
    ex.apply_object(task, True, True)
    assert ex.resource_ops.last["dry_run"] is DryRunStrategy.CLIENT
    assert ex.resource_ops.last["server_side"] is False


def test_apply_failure():
    ex = executor(resource_ops=FakeOps(errors={"my-pod": ApiError("foo")}))
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj())
    assert ex.apply_object(task, False, True) == (ResultCode.SYNC_FAILED, "foo")


def test_apply_crd_waits_for_establishment():
    ex = executor()
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_crd())
    assert ex.apply_object(task, False, True)[0] is ResultCode.SYNCED
    assert ex.cluster.crd_checks == ["testcrds.argoproj.io"]


def test_apply_crd_not_established_still_synced():
    ex = executor(cluster=FakeCluster(established=False), crd_readiness_timeout=0.05)
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_crd())
    assert ex.apply_object(task, False, True)[0] is ResultCode.SYNCED
    assert len(ex.cluster.crd_checks) >= 2


def test_apply_crd_dry_run_does_not_wait():
    ex = executor()
    ex.apply_object(SyncTask(phase=SyncPhase.SYNC, target_obj=make_crd()), True, True)
    assert ex.cluster.crd_checks == []


# run_tasks


def test_run_tasks_creates_resources():
    ex = executor()
    tasks = [
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(name="pod-1")),
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(kind="Service", name="svc")),
    ]
    assert ex.run_tasks(tasks, False) is RunState.SUCCESSFUL
    _, _, results = ex.state.get_state()
    assert len(results) == 2
    assert {r.status for r in results} == {ResultCode.SYNCED}
    assert {r.hook_phase for r in results} == {OperationPhase.RUNNING}


def test_run_tasks_dry_run_records_nothing():
    ex = executor()
    tasks = [SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj())]
    assert ex.run_tasks(tasks, True) is RunState.SUCCESSFUL
    assert ex.state.results == {}
    assert ex.resource_ops.last["dry_run"] is DryRunStrategy.CLIENT


def test_run_tasks_dry_run_operation_succeeds():
    ex = executor(dry_run=True, prune=True)
    tasks = [
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(name="pod-1")),
        SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(name="pod-2")),
    ]
    assert ex.run_tasks(tasks, False) is RunState.SUCCESSFUL
    by_name = {r.resource_key.name: r for r in ex.state.get_state()[2]}
    assert by_name["pod-1"].hook_phase is OperationPhase.SUCCEEDED
    assert by_name["pod-2"].status is ResultCode.PRUNED
    assert by_name["pod-2"].message == "pruned (dry run)"
    assert ex.kubectl.deleted == []


@pytest.mark.parametrize("annotation, expected", [("", True), ("Validate=true", True), ("Validate=false", False)])
def test_run_tasks_validate_option(annotation, expected):
    ex = executor()
    pod = make_obj(annotations={ANNOTATION_SYNC_OPTIONS: annotation} if annotation else None)
    ex.run_tasks([SyncTask(phase=SyncPhase.SYNC, target_obj=pod, live_obj=pod)], False)
    assert ex.resource_ops.last["validate"] is expected


def test_run_tasks_validation_disabled_globally():
    ex = executor(validate=False)
    ex.run_tasks([SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj())], False)
    assert ex.resource_ops.last["validate"] is False


def test_run_tasks_prune_requires_confirmation():
    ex = executor(prune=True)
    confirm = {ANNOTATION_SYNC_OPTIONS: "Prune=confirm"}
    tasks = [
        SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(name="pod-1", annotations=confirm)),
        SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(name="pod-2", annotations=confirm)),
    ]
    assert ex.run_tasks(tasks, False) is RunState.PENDING
    assert ex.state.message == "Waiting for pruning confirmation of v1/Pod/pod-1 and 1 more resources"
    assert ex.kubectl.deleted == []


def test_run_tasks_prune_confirmed():
    ex = executor(prune=True, prune_confirmed=True)
    confirm = {ANNOTATION_SYNC_OPTIONS: "Prune=confirm"}
    tasks = [SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(annotations=confirm))]
    assert ex.run_tasks(tasks, False) is RunState.SUCCESSFUL
    assert [d[1] for d in ex.kubectl.deleted] == ["my-pod"]


def test_run_tasks_prune_failure_stops_creation():
    ex = executor(prune=True, kubectl=FakeKubectl(errors={"test-service": ApiError("foo")}))
    tasks = [
        SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(kind="Service", name="test-service")),
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(name="pod-1")),
    ]
    assert ex.run_tasks(tasks, False) is RunState.FAILED
    _, _, results = ex.state.get_state()
    assert len(results) == 1
    assert results[0].status is ResultCode.SYNC_FAILED
    assert results[0].message == "foo"
    assert ex.resource_ops.commands == {}


def test_run_tasks_apply_failure_continues_other_kinds():
    ex = executor(resource_ops=FakeOps(errors={"svc": ApiError("foo")}))
    tasks = [
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(kind="Service", name="svc")),
        SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(name="pod-1")),
    ]
    assert ex.run_tasks(tasks, False) is RunState.FAILED
    assert len(ex.resource_ops.commands) == 2
    by_name = {r.resource_key.name: r for r in ex.state.get_state()[2]}
    assert by_name["svc"].status is ResultCode.SYNC_FAILED
    assert by_name["svc"].hook_phase is OperationPhase.FAILED
    assert by_name["pod-1"].status is ResultCode.SYNCED


def _hook_task():
    hook = make_obj(annotations={
        ANNOTATION_KEY_HOOK: "Sync",
        ANNOTATION_KEY_HOOK_DELETE_POLICY: "BeforeHookCreation",
    })
    return SyncTask(phase=SyncPhase.SYNC, target_obj=hook, live_obj=hook.deep_copy())


def test_run_tasks_deletes_hook_before_creation():
    ex = executor()
    assert ex.run_tasks([_hook_task()], False) is RunState.PENDING
    assert ex.cluster.deleted == [("my-pod", NS, DeletePropagation.FOREGROUND)]
    assert ex.resource_ops.commands == {}


def test_run_tasks_hook_already_deleted_is_created():
    ex = executor(cluster=FakeCluster(delete_error=NotFoundError("gone")))
    assert ex.run_tasks([_hook_task()], False) is RunState.SUCCESSFUL
    assert list(ex.resource_ops.commands.values()) == ["apply"]


def test_run_tasks_hook_delete_failure():
    ex = executor(cluster=FakeCluster(delete_error=ApiError("boom")))
    assert ex.run_tasks([_hook_task()], False) is RunState.FAILED
    _, _, results = ex.state.get_state()
    assert results[0].hook_phase is OperationPhase.ERROR
    assert results[0].message == "failed to delete resource: boom"


def test_skip_dry_run_tasks_not_applied_in_dry_run():
    ex = executor()
    task = SyncTask(phase=SyncPhase.SYNC, target_obj=make_obj(), skip_dry_run=True)
    assert ex.run_tasks([task], True) is RunState.SUCCESSFUL
    assert ex.resource_ops.commands == {}


# delete_resource and remove_hook_finalizer


def test_delete_resource_uses_propagation_policy():
    ex = executor(prune_propagation_policy=DeletePropagation.ORPHAN)
    ex.delete_resource(SyncTask(phase=SyncPhase.SYNC, live_obj=make_obj(name="pod-9")))
    assert ex.cluster.deleted == [("pod-9", NS, DeletePropagation.ORPHAN)]


def _finalized_hook():
    hook = make_obj(annotations={ANNOTATION_KEY_HOOK: "PreSync"})
    hook.finalizers = ["other", hooks.HOOK_FINALIZER]
    return hook


def test_remove_hook_finalizer_updates():
    ex = executor()
    task = SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=_finalized_hook())
    ex.remove_hook_finalizer(task)
    assert len(ex.cluster.updates) == 1
    assert ex.cluster.updates[0].finalizers == ["other"]


def test_remove_hook_finalizer_without_finalizer_does_nothing():
    ex = executor()
    task = SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=make_obj())
    ex.remove_hook_finalizer(task)
    assert ex.cluster.updates == []


def test_remove_hook_finalizer_retries_on_conflict():
    cluster = FakeCluster(update_errors=[ConflictError("conflict")], fresh=_finalized_hook())
    ex = executor(cluster=cluster)
    task = SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=_finalized_hook())
    ex.remove_hook_finalizer(task)
    assert cluster.gets == 1
    assert len(cluster.updates) == 2
    assert task.live_obj.finalizers == ["other"]


def test_remove_hook_finalizer_deleted_during_conflict():
    cluster = FakeCluster(update_errors=[ConflictError("conflict")], fresh=None)
    ex = executor(cluster=cluster)
    ex.remove_hook_finalizer(SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=_finalized_hook()))
    assert cluster.gets == 1
    assert len(cluster.updates) == 1


def test_remove_hook_finalizer_not_found_on_update():
    cluster = FakeCluster(update_errors=[NotFoundError("gone")])
    ex = executor(cluster=cluster)
    ex.remove_hook_finalizer(SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=_finalized_hook()))
    assert cluster.gets == 0
    assert len(cluster.updates) == 1


def test_remove_hook_finalizer_other_error_raises():
    cluster = FakeCluster(update_errors=[ApiError("boom")])
    ex = executor(cluster=cluster)
    with pytest.raises(ApiError, match="boom"):
        ex.remove_hook_finalizer(SyncTask(phase=SyncPhase.PRE_SYNC, live_obj=_finalized_hook()))