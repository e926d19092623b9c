"""Plain representation of Kubernetes objects and their identifying keys."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class ResourceKey:
    """Identifies a resource by group, kind, namespace and name."""

    group: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


def _split_api_version(api_version: str) -> tuple[str, str]:
    if not api_version:
        return "", ""
    if "/" not in api_version:
        return "", api_version
    group, _, version = api_version.partition("/")
    if "/" in version:
        return "", ""
    return group, version


@dataclass
class KubeObject:
    """A Kubernetes object held as its decoded JSON document."""

    data: dict[str, Any] = field(default_factory=dict)

    def _metadata(self) -> dict[str, Any]:
        meta = self.data.get("metadata")
        return meta if isinstance(meta, dict) else {}

    def _writable_metadata(self) -> dict[str, Any]:
        meta = self.data.get("metadata")
        if not isinstance(meta, dict):
            meta = {}
            self.data["metadata"] = meta
        return meta

    def _meta_str(self, key: str) -> str:
        value = self._metadata().get(key)
        return value if isinstance(value, str) else ""

    def _set_meta_str(self, key: str, value: str) -> None:
        meta = self._writable_metadata()
        if value:
            meta[key] = value
        else:
            meta.pop(key, None)

    @property
    def api_version(self) -> str:
        value = self.data.get("apiVersion")
        return value if isinstance(value, str) else ""

    @api_version.setter
    def api_version(self, value: str) -> None:
        self.data["apiVersion"] = value

    @property
    def kind(self) -> str:
        value = self.data.get("kind")
        return value if isinstance(value, str) else ""

    @kind.setter
    def kind(self, value: str) -> None:
        self.data["kind"] = value

    @property
    def group(self) -> str:
        return _split_api_version(self.api_version)[0]

    @property
    def version(self) -> str:
        return _split_api_version(self.api_version)[1]

    @property
    def name(self) -> str:
        return self._meta_str("name")

    @name.setter
    def name(self, value: str) -> None:
        self._set_meta_str("name", value)

    @property
    def namespace(self) -> str:
        return self._meta_str("namespace")

    @namespace.setter
    def namespace(self, value: str) -> None:
        self._set_meta_str("namespace", value)

    @property
    def generate_name(self) -> str:
        return self._meta_str("generateName")

    @generate_name.setter
    def generate_name(self, value: str) -> None:
        self._set_meta_str("generateName", value)

    @property
    def uid(self) -> str:
        return self._meta_str("uid")

    @uid.setter
    def uid(self, value: str) -> None:
        self._set_meta_str("uid", value)

    @property
    def resource_version(self) -> str:
        return self._meta_str("resourceVersion")

    @resource_version.setter
    def resource_version(self, value: str) -> None:
        self._set_meta_str("resourceVersion", value)

    @property
    def annotations(self) -> dict[str, str]:
        value = self._metadata().get("annotations")
        if not isinstance(value, dict):
            return {}
        return {k: v for k, v in value.items() if isinstance(v, str)}

    @annotations.setter
    def annotations(self, value: dict[str, str] | None) -> None:
        meta = self._writable_metadata()
        if value:
            meta["annotations"] = dict(value)
        else:
            meta.pop("annotations", None)

    @property
    def finalizers(self) -> list[str]:
        value = self._metadata().get("finalizers")
        if not isinstance(value, list):
            return []
        return [f for f in value if isinstance(f, str)]

    @finalizers.setter
    def finalizers(self, value: list[str] | None) -> None:
        meta = self._writable_metadata()
        if value:
            meta["finalizers"] = list(value)
        else:
            meta.pop("finalizers", None)

    @property
    def deletion_timestamp(self) -> datetime | None:
        value = self._metadata().get("deletionTimestamp")
        if not isinstance(value, str) or not value:
            return None
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    @deletion_timestamp.setter
    def deletion_timestamp(self, value: datetime | None) -> None:
        meta = self._writable_metadata()
        if value is None:
            meta.pop("deletionTimestamp", None)
            return
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        meta["deletionTimestamp"] = (
            value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        )

    def deep_copy(self) -> KubeObject:
        """Return an independent copy of this object."""
        return KubeObject(copy.deepcopy(self.data))

    def nested_string(self, *fields: str) -> str | None:
        """Return the string at the given field path, or None if it is absent.

        Raises TypeError if the path exists but does not lead to a string.
        """
        current: Any = self.data
        for name in fields:
            if not isinstance(current, dict) or name not in current:
                return None
            current = current[name]
        if not isinstance(current, str):
            raise TypeError(
                f"{'.'.join(fields)} accessor error: {current!r} is of type "
                f"{type(current).__name__}, expected str"
            )
        return current


def get_resource_key(obj: KubeObject) -> ResourceKey:
    """Return the key that identifies ``obj``."""
    return ResourceKey(obj.group, obj.kind, obj.namespace, obj.name)


def first_non_empty(*args: str) -> str:
    """Return the first non-empty string, or an empty string."""
    return next((value for value in args if value), "")