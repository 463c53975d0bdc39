"""Built-in step operations: components, variables and step control.

Handlers take ``(ctx, wf_ctx, v, act)``. ``wf_ctx`` provides
``get_components()``, ``get_component(name)``, ``get_var(*path)``,
``set_var(value, *path)`` and ``patch_component(name, value)``; ``act``
provides ``wait``, ``terminate``, ``fail`` and ``message``, each taking a
message string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from vela_steps.registry import Providers, StepValue

PROVIDER_NAME = "builtin"


@dataclass
class ComponentManifest:
    """A rendered component: its workload and auxiliary resources."""

    workload: dict[str, Any]
    auxiliaries: list[dict[str, Any]] = field(default_factory=list)


def _fill_component(v: StepValue, component: ComponentManifest, *path: str) -> None:
    v.fill(component.workload, *path, "workload")
    if component.auxiliaries:
        v.fill(list(component.auxiliaries), *path, "auxiliaries")


def _message_of(v: StepValue | None) -> str:
    if v is None:
        return ""
    try:
        return v.get_string("message")
    except (LookupError, TypeError):
        return ""


class WorkspaceProvider:
    """Handlers that work on the workflow context itself."""

    def load(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Fill ``value`` with one component, or with all of them by name."""
        if not v.exists("component"):
            for name, component in wf_ctx.get_components().items():
                _fill_component(v, component, "value", name)
            return
        name = v.get_string("component")
        _fill_component(v, wf_ctx.get_component(name), "value")

    def do_var(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Get or put a variable at a dotted path in the context."""
        method = v.get_string("method")
        path = v.get_string("path").split(".")
        if method == "Get":
            v.fill(wf_ctx.get_var(*path), "value")
        elif method == "Put":
            wf_ctx.set_var(v.lookup("value").to_python(), *path)

    def export(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Patch a component in the context with ``value``."""
        val = v.lookup("value")
        name = v.get_string("component")
        wf_ctx.patch_component(name, val.to_python())

    def wait(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Make the step wait unless ``continue`` is true."""
        if v is not None and v.exists("continue"):
            if v.lookup("continue").to_python() is True:
                return
        act.wait(_message_of(v))

    def break_(self, ctx, wf_ctx, v: StepValue | None, act) -> None:
        """Terminate the workflow."""
        act.terminate(_message_of(v))

    def fail(self, ctx, wf_ctx, v: StepValue | None, act) -> None:
        """Mark the step as failed."""
        act.fail(_message_of(v))

    def message(self, ctx, wf_ctx, v: StepValue | None, act) -> None:
        """Write a message to the step status."""
        act.message(_message_of(v))


def install(providers: Providers) -> None:
    """Register the built-in handlers."""
    prd = WorkspaceProvider()
    providers.register(
        PROVIDER_NAME,
        {
            "load": prd.load,
            "export": prd.export,
            "wait": prd.wait,
            "break": prd.break_,
            "fail": prd.fail,
            "var": prd.do_var,
        },
    )