"""Step handlers that create, read, list and delete stored configs.

The factory given to :func:`install` provides:

* ``parse_config(ctx, *, template_namespace, template_name, name, namespace,
  properties)`` returning a config item;
* ``create_or_update_config(ctx, item, namespace)``;
* ``read_config(ctx, namespace, name)`` returning the config's properties;
* ``list_configs(ctx, namespace, template, scope, with_status)`` returning
  items with ``name``, ``alias``, ``description`` and ``properties``;
* ``delete_config(ctx, namespace, name)``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from vela_steps.registry import Providers, StepValue

PROVIDER_NAME = "config"
DEFAULT_TEMPLATE_NAMESPACE = "vela-system"


class RequestInvalidError(ValueError):
    """The step's request could not be understood."""

    def __init__(self, message: str = "the request is in valid") -> None:
        super().__init__(message)


def _request(v: StepValue) -> Mapping[str, Any]:
    data = v.to_python()
    if not isinstance(data, Mapping):
        raise RequestInvalidError()
    return data


def _string(data: Mapping[str, Any], key: str) -> str:
    item = data.get(key)
    if item is None:
        return ""
    if not isinstance(item, str):
        raise RequestInvalidError()
    return item


def _namespaced_name(v: StepValue) -> tuple[str, str]:
    data = _request(v)
    return _string(data, "namespace"), _string(data, "name")


@dataclass
class CreateConfigProperties:
    """The request body for creating a config."""

    name: str = ""
    namespace: str = ""
    template: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CreateConfigProperties:
        """Build the request from decoded step parameters."""
        config = data.get("config")
        if config is None:
            config = {}
        if not isinstance(config, Mapping):
            raise RequestInvalidError()
        return cls(
            name=_string(data, "name"),
            namespace=_string(data, "namespace"),
            template=_string(data, "template"),
            config=dict(config),
        )


class ConfigProvider:
    """Handlers that manage configs through a config factory."""

    def __init__(self, factory: Any) -> None:
        self._factory = factory

    def create(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Create or update a config, rendered from its template if any."""
        ccp = CreateConfigProperties.from_mapping(_request(v))
        template_namespace, template_name = DEFAULT_TEMPLATE_NAMESPACE, ccp.template
        if "/" in ccp.template:
            template_namespace, template_name = ccp.template.split("/", 1)
        item = self._factory.parse_config(
            ctx,
            template_namespace=template_namespace,
            template_name=template_name,
            name=ccp.name,
            namespace=ccp.namespace,
            properties=ccp.config,
        )
        self._factory.create_or_update_config(ctx, item, ccp.namespace)

    def read(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Fill ``config`` with the properties of the named config."""
        namespace, name = _namespaced_name(v)
        v.fill(self._factory.read_config(ctx, namespace, name), "config")

    def list(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Fill ``configs`` with the configs made from ``template``."""
        try:
            template = v.get_string("template")
            namespace = v.get_string("namespace")
        except (LookupError, TypeError) as exc:
            raise RequestInvalidError() from exc
        if "/" in template:
            template = template.split("/", 1)[1]
        configs = self._factory.list_configs(ctx, namespace, template, "", False)
        contents = [
            {
                "name": item.name,
                "alias": item.alias,
                "description": item.description,
                "config": item.properties,
            }
            for item in configs
        ]
        v.fill(contents, "configs")

    def delete(self, ctx, wf_ctx, v: StepValue, act) -> None:
        """Delete the named config."""
        namespace, name = _namespaced_name(v)
        self._factory.delete_config(ctx, namespace, name)


def install(providers: Providers, factory: Any) -> None:
    """Register the config handlers."""
    prd = ConfigProvider(factory)
    providers.register(
        PROVIDER_NAME,
        {
            "create": prd.create,
            "read": prd.read,
            "list": prd.list,
            "delete": prd.delete,
        },
    )