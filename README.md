# kubesync

`kubesync` drives the synchronization of Kubernetes resources toward a desired
state. It pairs target manifests with live objects, orders the work into
phases and waves, applies and prunes resources, and runs resource hooks.

It is a library with no dependencies outside the standard library. It does
not talk to a cluster by itself: you supply client objects, and it calls them
to apply, replace, create, update, read and delete objects.

## Features

- **Basic syncing**: each target resource is applied. Within a phase and wave,
  tasks are ordered by kind from a fixed list (`Namespace` first, then policies,
  service accounts, secrets, config maps, storage, custom resource definitions,
  RBAC, services and workloads, ingresses last; unknown kinds after all of
  them) and then by name.
- **Pruning**: live resources with no target are deleted when pruning is
  enabled, and reported as `PruneSkipped` otherwise.
- **Hooks**: resources annotated with `argocd.argoproj.io/hook` run in the
  `PreSync`, `Sync`, `PostSync` or `SyncFail` phase. Helm hook annotations
  (`helm.sh/hook` with `pre-install`, `pre-upgrade`, `post-install`,
  `post-upgrade`) are understood when no such annotation is present. Hooks
  without a name get one built from `generateName`, the revision, the phase
  and the start time, and receive a hook finalizer.
- **Hook delete policies**: `argocd.argoproj.io/hook-delete-policy` takes
  `HookSucceeded`, `HookFailed` and `BeforeHookCreation` (the default). Helm's
  `helm.sh/hook-delete-policy` is also read.
- **Sync waves**: `argocd.argoproj.io/sync-wave` (or, failing that,
  `helm.sh/hook-weight`) groups resources into batches run in ascending order.
  Prune tasks have their waves mirrored, so pruning runs in reverse order.
- **Sync options**: `argocd.argoproj.io/sync-options` accepts
  `Prune=false`, `Prune=confirm`, `PruneLast=true`, `Validate=false`,
  `SkipDryRunOnMissingResource=true`, `Replace=true`, `Force=true`,
  `ServerSideApply=true` and `ServerSideApply=false`.

## Installation

```
pip install kubesync
```

## Usage

Objects are plain dictionaries wrapped in `kubesync.objects.KubeObject`;
`kubesync.objects.ResourceKey` identifies one by group, kind, namespace and
name, and `get_resource_key(obj)` builds it.

1. `kubesync.reconcile.reconcile(target_objs, live_obj_by_key, namespace, res_info)`
   pairs each target with its live object and returns a
   `ReconciliationResult` with `target`, `live` and `hooks`. `res_info` must
   have `is_namespaced(group, kind)`; if it raises, both the namespaced and
   the cluster-scoped key are tried. Live objects left unmatched follow, with
   no target.
2. Build a `kubesync.context.SyncContext` from that result. Its keyword
   arguments include `cluster`, `kubectl`, `resource_ops`, `namespace`,
   `revision`, `health_check`, `permission_validator`, `resources_filter`,
   `namespace_modifier`, `sync_wave_hook`, `dry_run`, `prune`, `prune_last`,
   `prune_confirmed`, `replace`, `force`, `validate`, `skip_hooks`,
   `server_side_apply`, `server_side_apply_manager`,
   `prune_propagation_policy`, `apply_out_of_sync_only` and
   `modification_result`.
3. Call `sync()` repeatedly. Each call performs one step; the first one also
   dry-runs every task. `get_state()` returns the operation phase (a
   `kubesync.common.OperationPhase`), a message, and the per-resource
   `kubesync.state.ResourceSyncResult` records in the order they were added.
   Stop once `phase.completed()` is true.
4. `terminate()` deletes hooks that are still running and marks the operation
   `Failed` ("Operation terminated"), or `Error` if a deletion failed.

### Cluster interfaces

`kubesync.cluster` defines the abstract classes you implement:

- `ResourceOperations`: `apply_resource`, `replace_resource`,
  `create_resource`, `update_resource`.
- `Kubectl`: `get_resource`, `delete_resource`.
- `ClusterClient`: `server_resource`, `get_resource`, `update_resource`,
  `delete_resource`, `crd_established`.

Failures are reported by raising `ApiError` or one of its subclasses
`NotFoundError`, `ConflictError` and `UnauthorizedError`. Discovery calls are
retried on `UnauthorizedError`, and finalizer removal on `ConflictError`, up
to five attempts (`retry_on`).

A `health_check` is a callable taking a `KubeObject` and returning a
`HealthStatus` or `None`.

## Inspecting hooks and annotations

- `kubesync.hooks`: `is_hook`, `skip`, `types`, `delete_policies`, `ignore`,
  `has_hook_finalizer`.
- `kubesync.helm`: `is_hook`, `types`, `delete_policies`, `weight`.
- `kubesync.annotations`: `get_annotation_csvs`, `has_annotation_option`.
- `kubesync.phases.sync_phases(obj)`: the phases an object takes part in.

## What it does not do

- It has no command-line tool and no built-in Kubernetes client; all cluster
  access goes through the objects you pass in.
- It does not assess resource health itself. Without a `health_check`, every
  resource counts as having no health and succeeds once applied.
- It does not compute diffs. For `apply_out_of_sync_only`, pass a
  `modification_result` mapping; `kubesync.planner.group_diff_results` builds
  one from diff records that carry `normalized_live`, `predicted_live` and
  `modified`.

Progress is reported through the standard `logging` module.

## Running the tests

```
pip install -e ".[test]"
pytest
```