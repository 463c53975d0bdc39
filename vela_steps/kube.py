"""Step handlers that apply, read, list and delete Kubernetes objects.

Objects are plain JSON-like dictionaries. The client given to
:func:`install` provides:

* ``get(ctx, api_version, kind, namespace, name)`` returning the stored
  object, raising :class:`LookupError` when it does not exist;
* ``create(ctx, obj)``;
* ``patch(ctx, obj, patch)`` applying a JSON merge patch to the stored object;
* ``delete(ctx, obj)``;
* ``list(ctx, api_version, kind, namespace, labels)`` returning the objects;
* ``delete_all_of(ctx, obj, namespace, labels)``.

The ``ctx`` handed to the client and to the handlers carries the target
cluster in its ``cluster`` attribute.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from vela_steps.registry import Providers, StepValue
from vela_steps.util import UtilProvider

PROVIDER_NAME = "kube"
ANNO_WORKFLOW_LAST_APPLIED_CONFIG = "workflow.oam.dev/last-applied-configuration"
ANNO_WORKFLOW_LAST_APPLIED_TIME = "workflow.oam.dev/last-applied-time"
WORKFLOW_RESOURCE_CREATOR = "workflow"

_MISSING = object()


@dataclass(frozen=True)
class _ClusterContext:
    parent: Any
    cluster: str


def _with_cluster(ctx: Any, cluster: str) -> _ClusterContext:
    return _ClusterContext(ctx, cluster)


@dataclass
class Handlers:
    """Callables that apply and delete resources in a cluster."""

    apply: Callable[..., None]
    delete: Callable[..., None]


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata")
    if meta is None:
        meta = obj["metadata"] = {}
    if not isinstance(meta, dict):
        raise TypeError(f"metadata must be an object, got {meta!r}")
    return meta


def _identity(obj: Mapping[str, Any]) -> tuple[str, str, str, str]:
    meta = obj.get("metadata") or {}
    return (
        str(obj.get("apiVersion", "")),
        str(obj.get("kind", "")),
        str(meta.get("namespace", "") or ""),
        str(meta.get("name", "") or ""),
    )


def _encode(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _as_object(data: Any) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"cannot use value {data!r} as an object")
    obj = copy.deepcopy(dict(data))
    kind = obj.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ValueError(f"Object 'Kind' is missing in '{_encode(obj)}'")
    return obj


def _three_way_patch(original: Any, modified: Mapping[str, Any], current: Any) -> dict[str, Any]:
    original = original if isinstance(original, Mapping) else {}
    current = current if isinstance(current, Mapping) else {}
    patch: dict[str, Any] = {key: None for key in original if key not in modified}
    for key, item in modified.items():
        existing = current.get(key, _MISSING)
        if isinstance(item, Mapping) and isinstance(existing, Mapping):
            sub = _three_way_patch(original.get(key), item, existing)
            if sub:
                patch[key] = sub
        elif existing is _MISSING or existing != item:
            patch[key] = copy.deepcopy(item)
    return patch


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Dispatcher:
    """Default handlers: create or three-way patch objects, delete them."""

    def __init__(self, cli: Any) -> None:
        self._cli = cli

    def apply(self, ctx, cluster: str, owner: str, *workloads: dict[str, Any]) -> None:
        """Create each workload, or patch it when it already exists."""
        for workload in workloads:
            api_version, kind, namespace, name = _identity(workload)
            try:
                existing = self._cli.get(ctx, api_version, kind, namespace, name)
            except LookupError:
                applied = _encode(workload)
                annotations = _metadata(workload).setdefault("annotations", {})
                annotations[ANNO_WORKFLOW_LAST_APPLIED_CONFIG] = applied
                self._cli.create(ctx, workload)
                continue
            existing_annotations = (existing.get("metadata") or {}).get("annotations") or {}
            last_applied = existing_annotations.get(ANNO_WORKFLOW_LAST_APPLIED_CONFIG)
            original = json.loads(last_applied) if last_applied else {}
            modified = copy.deepcopy(workload)
            applied = _encode(modified)
            annotations = _metadata(modified).setdefault("annotations", {})
            annotations[ANNO_WORKFLOW_LAST_APPLIED_CONFIG] = applied
            annotations[ANNO_WORKFLOW_LAST_APPLIED_TIME] = _now()
            self._cli.patch(ctx, workload, _three_way_patch(original, modified, existing))

    def delete(self, ctx, cluster: str, owner: str, manifest: dict[str, Any]) -> None:
        """Delete one object."""
        self._cli.delete(ctx, manifest)


def _patched(base: Any, patch: Any) -> dict[str, Any]:
    scratch = StepValue({"value": base, "patch": patch})
    UtilProvider().patch_k8s_object(None, None, scratch, None)
    if scratch.exists("err"):
        raise ValueError(scratch.get_string("err"))
    return scratch.lookup("result").to_python()


def _filters(v: StepValue) -> tuple[str, dict[str, str]]:
    data = v.to_python()
    if not isinstance(data, Mapping):
        raise TypeError(f"filter must be an object, got {data!r}")
    namespace = data.get("namespace") or ""
    if not isinstance(namespace, str):
        raise TypeError(f"filter.namespace: cannot use value {namespace!r} as string")
    labels = data.get("matchingLabels") or {}
    if not isinstance(labels, Mapping) or not all(isinstance(x, str) for x in labels.values()):
        raise TypeError(f"filter.matchingLabels must map strings to strings, got {labels!r}")
    return namespace, dict(labels)


class KubeProvider:
    """Handlers that manage Kubernetes objects for workflow steps."""

    def __init__(self, cli: Any, handlers: Handlers, labels: Mapping[str, str] | None = None) -> None:
        self._cli = cli
        self._handlers = handlers
        self._labels = labels

    def apply(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Create or update ``value``, patched by ``patch`` when given."""
        val = v.lookup("value")
        if v.exists("patch"):
            workload = _as_object(_patched(val.to_python(), v.lookup("patch").to_python()))
        else:
            workload = _as_object(val.to_python())
        meta = _metadata(workload)
        if not meta.get("namespace"):
            meta["namespace"] = "default"
        if self._labels is None:
            meta.pop("labels", None)
        else:
            meta["labels"] = dict(self._labels)
        cluster = v.get_string("cluster")
        self._handlers.apply(_with_cluster(ctx, cluster), cluster, WORKFLOW_RESOURCE_CREATOR, workload)
        v.fill(workload, "value")

    def apply_in_parallel(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Create or update every object in the ``value`` list."""
        items = v.lookup("value").to_python()
        if not isinstance(items, list):
            raise TypeError(f"value must be a list, got {items!r}")
        workloads = [_as_object(item) for item in items]
        for workload in workloads:
            meta = _metadata(workload)
            if not meta.get("namespace"):
                meta["namespace"] = "default"
        cluster = v.get_string("cluster")
        self._handlers.apply(_with_cluster(ctx, cluster), cluster, WORKFLOW_RESOURCE_CREATOR, *workloads)

    def read(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Fill ``value`` from the cluster, or ``err`` when it cannot be read."""
        obj = _as_object(v.lookup("value").to_python())
        api_version, kind, namespace, name = _identity(obj)
        namespace = namespace or "default"
        cluster = v.get_string("cluster")
        try:
            found = self._cli.get(_with_cluster(ctx, cluster), api_version, kind, namespace, name)
        except Exception as exc:  # any read failure is reported to the step
            v.fill(str(exc), "err")
            return
        v.fill(found, "value")

    def list(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Fill ``list`` with the objects of ``resource`` matching ``filter``."""
        resource = v.lookup("resource").to_python()
        if not isinstance(resource, Mapping):
            raise TypeError(f"resource must be an object, got {resource!r}")
        api_version = str(resource.get("apiVersion", "") or "")
        kind = str(resource.get("kind", "") or "")
        namespace, labels = _filters(v.lookup("filter"))
        cluster = v.get_string("cluster")
        try:
            items = self._cli.list(_with_cluster(ctx, cluster), api_version, kind, namespace, labels)
        except Exception as exc:  # any list failure is reported to the step
            v.fill(str(exc), "err")
            return
        list_kind = kind if kind.endswith("List") else f"{kind}List"
        v.fill({"apiVersion": api_version, "kind": list_kind, "items": list(items)}, "list")

    def delete(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Delete ``value``, or every object matching ``filter`` when given."""
        obj = _as_object(v.lookup("value").to_python())
        cluster = v.get_string("cluster")
        delete_ctx = _with_cluster(ctx, cluster)
        if v.exists("filter"):
            namespace, labels = _filters(v.lookup("filter"))
            try:
                self._cli.delete_all_of(delete_ctx, obj, namespace, labels)
            except Exception as exc:  # reported to the step
                v.fill(str(exc), "err")
            return
        try:
            self._handlers.delete(delete_ctx, cluster, WORKFLOW_RESOURCE_CREATOR, obj)
        except Exception as exc:  # reported to the step
            v.fill(str(exc), "err")


def install(providers: Providers, cli: Any, labels: Mapping[str, str] | None, handlers: Handlers | None) -> None:
    """Register the kube handlers; default handlers use ``cli`` directly."""
    if handlers is None:
        dispatcher = Dispatcher(cli)
        handlers = Handlers(apply=dispatcher.apply, delete=dispatcher.delete)
    prd = KubeProvider(cli, handlers, labels)
    providers.register(
        PROVIDER_NAME,
        {
            "apply": prd.apply,
            "apply-in-parallel": prd.apply_in_parallel,
            "read": prd.read,
            "list": prd.list,
            "delete": prd.delete,
        },
    )