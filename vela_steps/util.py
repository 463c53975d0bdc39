"""Utility step handlers: object patching, byte conversion and step logs.

The workflow context handed to ``log`` provides
``get_mutable_value(*path)`` and ``set_mutable_value(value, *path)``.

Patches merge recursively. Next to a field in a patch object,
``"$patchKey/<field>": "<key>"`` merges a list by that key, and
``"$patchStrategy/<field>"`` set to ``"retainKeys"`` or ``"replace"``
replaces the field wholesale.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from typing import Any

from vela_steps.registry import Providers, StepValue

PROVIDER_NAME = "util"
LOG_CONFIG_KEY = "logConfig"
CONTEXT_STEP_NAME = "stepName"
CONTEXT_STEP_SESSION_ID = "stepSessionID"

_PATCH_KEY = "$patchKey/"
_PATCH_STRATEGY = "$patchStrategy/"
_LOG = logging.getLogger("vela_steps.cue_logs")


class _PatchConflict(ValueError):
    pass


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    raise TypeError(f"cannot encode {obj!r} as JSON")


def _go_json(obj: Any, sort_keys: bool = False) -> str:
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False,
                      sort_keys=sort_keys, default=_json_default)
    for char in "<>&\u2028\u2029":
        text = text.replace(char, f"\\u{ord(char):04x}")
    return text


def _directives(patch: Mapping, prefix: str) -> dict[str, Any]:
    return {k[len(prefix):]: item for k, item in patch.items()
            if isinstance(k, str) and k.startswith(prefix)}


def _is_directive(key: Any) -> bool:
    return isinstance(key, str) and key.startswith((_PATCH_KEY, _PATCH_STRATEGY))


def _strip(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _strip(item) for k, item in value.items() if not _is_directive(k)}
    if isinstance(value, list):
        return [_strip(item) for item in value]
    return value


def _conflict(path: tuple[str, ...], patch: Any, base: Any) -> _PatchConflict:
    label = ".".join(path) or "<root>"
    return _PatchConflict(f"{label}: conflicting values {_go_json(_strip(patch))} and {_go_json(base)}")


def _merge(base: Any, patch: Any, path: tuple[str, ...], patch_key: str | None = None) -> Any:
    if isinstance(patch, Mapping):
        if not isinstance(base, Mapping):
            raise _conflict(path, patch, base)
        keys = _directives(patch, _PATCH_KEY)
        strategies = _directives(patch, _PATCH_STRATEGY)
        result = dict(base)
        for key, item in patch.items():
            if _is_directive(key):
                continue
            strategy = strategies.get(key)
            if strategy is not None:
                if strategy not in ("retainKeys", "replace"):
                    label = ".".join(path + (key,))
                    raise _PatchConflict(f"{label}: unknown patch strategy {strategy!r}")
                result[key] = _strip(item)
            elif key in result:
                result[key] = _merge(result[key], item, path + (key,), keys.get(key))
            else:
                result[key] = _strip(item)
        return result
    if isinstance(patch, list):
        if not isinstance(base, list):
            raise _conflict(path, patch, base)
        if patch_key:
            return _merge_by_key(base, patch, path, patch_key)
        if len(base) != len(patch):
            label = ".".join(path) or "<root>"
            raise _PatchConflict(f"{label}: incompatible list lengths ({len(base)} and {len(patch)})")
        return [_merge(old, new, path + (str(pos),)) for pos, (old, new) in enumerate(zip(base, patch))]
    same = (type(base) is type(patch) if isinstance(base, bool) or isinstance(patch, bool) else True)
    if isinstance(base, (Mapping, list)) or not (same and base == patch):
        raise _conflict(path, patch, base)
    return base


def _merge_by_key(base: list, patch: list, path: tuple[str, ...], patch_key: str) -> list:
    result = list(base)
    for item in patch:
        if isinstance(item, Mapping) and patch_key in item:
            for pos, existing in enumerate(result):
                if isinstance(existing, Mapping) and existing.get(patch_key) == item[patch_key]:
                    result[pos] = _merge(existing, item, path + (str(pos),))
                    break
            else:
                result.append(_strip(item))
        else:
            result.append(_strip(item))
    return result


def _cue_type(obj: Any) -> str:
    for kind, name in ((bool, "bool"), (int, "int"), (float, "float"),
                       (Mapping, "struct"), (list, "list")):
        if isinstance(obj, kind):
            return name
    return "null" if obj is None else type(obj).__name__


def _sprint(obj: Any) -> str:
    if obj is None:
        return "<nil>"
    if isinstance(obj, bool):
        return "true" if obj else "false"
    return str(obj)


def _mapping(data: Any, what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be an object, got {data!r}")
    return data


def _resource(data: Any) -> dict[str, Any]:
    """Normalise a log resource to its JSON form, leaving out empty fields."""
    data = _mapping(data, "resource")
    out: dict[str, Any] = {}
    for key in ("name", "namespace", "cluster"):
        item = data.get(key) or ""
        if not isinstance(item, str):
            raise TypeError(f"{key}: cannot use value {item!r} as string")
        if item:
            out[key] = item
    selector = _mapping(data.get("labelSelector") or {}, "labelSelector")
    if selector:
        out["labelSelector"] = {str(k): str(val) for k, val in sorted(selector.items())}
    return out


def _resources(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, list):
        raise TypeError(f"resources must be a list, got {data!r}")
    return [_resource(item) for item in data]


def _step_config(data: Any) -> dict[str, Any]:
    """Normalise one step's log settings to their JSON form."""
    if data is None:
        return {}
    data = _mapping(data, "log config")
    out: dict[str, Any] = {}
    if data.get("data"):
        out["data"] = True
    source = data.get("source")
    if source is not None:
        source = _mapping(source, "source")
        url = source.get("url") or ""
        if not isinstance(url, str):
            raise TypeError(f"url: cannot use value {url!r} as string")
        out["source"] = {"url": url}
        resources = _resources(source.get("resources") or [])
        if resources:
            out["source"]["resources"] = resources
    return out


class UtilProvider:
    """Utility handlers for workflow steps."""

    def __init__(self, process_context: Mapping[str, Any] | None = None) -> None:
        self._process_context = process_context if process_context is not None else {}

    def patch_k8s_object(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Patch ``value`` with ``patch``; fill ``result``, or ``err`` on conflict."""
        base = _mapping(v.lookup("value").to_python(), "value")
        patch = v.lookup("patch").to_python()
        try:
            merged = _merge(base, patch, ())
        except _PatchConflict as exc:
            v.fill(str(exc), "err")
            return
        kind = merged.get("kind")
        if not isinstance(kind, str) or not kind:
            v.fill(f"Object 'Kind' is missing in '{_go_json(merged, sort_keys=True)}'", "err")
            return
        v.fill(merged, "result")

    def string(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Convert the bytes in ``bt`` to the string ``str``."""
        raw = v.lookup("bt").to_python()
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8", errors="replace")
        elif not isinstance(raw, str):
            raise TypeError(
                f"bt: cannot use value {_go_json(raw)} (type {_cue_type(raw)}) as (string|bytes)"
            )
        v.fill(raw, "str")

    def log(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Log ``data`` and record the step's log settings in the context."""
        step_name = _sprint(self._process_context.get(CONTEXT_STEP_NAME))
        step_id = _sprint(self._process_context.get(CONTEXT_STEP_SESSION_ID))
        text = wf_ctx.get_mutable_value(LOG_CONFIG_KEY)
        stored = json.loads(text) if text else None
        config = {str(name): _step_config(item)
                  for name, item in _mapping(stored or {}, "log config").items()}
        step_config = config.get(step_name, {})
        if v.exists("data"):
            level = 3
            try:
                level = v.get_int("level")
            except (LookupError, TypeError):
                pass
            step_config["data"] = True
            content = v.lookup("data").to_python()
            message = content if isinstance(content, str) else _go_json(content, sort_keys=True)
            _LOG.info(message, extra={CONTEXT_STEP_SESSION_ID: step_id, "verbosity": level})
        if v.exists("source"):
            source = step_config.setdefault("source", {"url": ""})
            if v.exists("source", "url"):
                source["url"] = v.get_string("source", "url")
            if v.exists("source", "resources"):
                source["resources"] = _resources(v.lookup("source", "resources").to_python())
        config[step_name] = _step_config(step_config)
        wf_ctx.set_mutable_value(_go_json(dict(sorted(config.items()))), LOG_CONFIG_KEY)


def install(providers: Providers, process_context: Mapping[str, Any] | None) -> None:
    """Register the utility handlers."""
    prd = UtilProvider(process_context)
    providers.register(PROVIDER_NAME, {
        "patch-k8s-object": prd.patch_k8s_object,
        "string": prd.string,
        "log": prd.log,
    })