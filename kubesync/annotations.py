"""Reading comma separated values from resource annotations."""

from __future__ import annotations

from typing import Mapping, Protocol


class AnnotationGetter(Protocol):
    @property
    def annotations(self) -> Mapping[str, str]: ...


def get_annotation_csvs(obj: AnnotationGetter, key: str) -> list[str]:
    """Return the de-duplicated, trimmed, non-empty values of annotation ``key``."""
    raw = obj.annotations.get(key, "")
    values = (item.strip() for item in raw.split(","))
    return list(dict.fromkeys(value for value in values if value))


def has_annotation_option(obj: AnnotationGetter, key: str, val: str) -> bool:
    """Return whether annotation ``key`` of ``obj`` lists ``val`` among its values."""
    return val in get_annotation_csvs(obj, key)