from datetime import datetime, timezone

import pytest

from kubesync.objects import KubeObject, ResourceKey, first_non_empty, get_resource_key


def deployment():
    return KubeObject(
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "ns"},
            "spec": {"replicas": 1},
        }
    )


def test_group_and_version_from_api_version():
    obj = deployment()
    assert obj.group == "apps"
    assert obj.version == "v1"


def test_core_group_is_empty():
    obj = KubeObject({"apiVersion": "v1", "kind": "Namespace"})
    assert obj.group == ""
    assert obj.version == "v1"


def test_get_resource_key():
    key = get_resource_key(deployment())
    assert key == ResourceKey("apps", "Deployment", "ns", "web")


def test_resource_key_str():
    assert str(ResourceKey("apps", "Deployment", "ns", "web")) == "apps/Deployment/ns/web"


def test_resource_key_hashable():
    keys = {ResourceKey("", "Pod", "a", "b"), ResourceKey("", "Pod", "a", "b")}
    assert len(keys) == 1


def test_empty_object_defaults():
    obj = KubeObject()
    assert obj.name == ""
    assert obj.namespace == ""
    assert obj.annotations == {}
    assert obj.finalizers == []
    assert obj.deletion_timestamp is None
    assert get_resource_key(obj) == ResourceKey("", "", "", "")


def test_setters_round_trip():
    obj = KubeObject()
    obj.name = "pod-1"
    obj.namespace = "team"
    obj.annotations = {"foo": "bar"}
    obj.finalizers = ["f1"]
    obj.resource_version = "42"
    assert obj.name == "pod-1"
    assert obj.namespace == "team"
    assert obj.annotations == {"foo": "bar"}
    assert obj.finalizers == ["f1"]
    assert obj.resource_version == "42"


def test_clearing_name_removes_field():
    obj = deployment()
    obj.name = ""
    assert "name" not in obj.data["metadata"]
    assert obj.name == ""


def test_deletion_timestamp_round_trip():
    obj = deployment()
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    obj.deletion_timestamp = moment
    assert obj.deletion_timestamp == moment
    obj.deletion_timestamp = None
    assert obj.deletion_timestamp is None


def test_deep_copy_is_independent():
    original = deployment()
    duplicate = original.deep_copy()
    assert duplicate == original
    duplicate.name = "other"
    duplicate.data["spec"]["replicas"] = 5
    assert original.name == "web"
    assert original.data["spec"]["replicas"] == 1


def test_nested_string():
    obj = KubeObject({"spec": {"group": "argoproj.io", "names": {"kind": "TestCrd"}}})
    assert obj.nested_string("spec", "group") == "argoproj.io"
    assert obj.nested_string("spec", "names", "kind") == "TestCrd"
    assert obj.nested_string("spec", "missing") is None


def test_nested_string_wrong_type():
    obj = deployment()
    with pytest.raises(TypeError):
        obj.nested_string("spec", "replicas")


def test_first_non_empty():
    assert first_non_empty("", "ns", "other") == "ns"
    assert first_non_empty("first", "") == "first"
    assert first_non_empty("", "") == ""
    assert first_non_empty() == ""