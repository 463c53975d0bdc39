from dataclasses import dataclass, field

import pytest

from vela_steps.config import ConfigProvider, CreateConfigProperties, RequestInvalidError, install
from vela_steps.registry import Providers, StepValue


@dataclass
class FakeConfig:
    name: str
    namespace: str
    template: str
    properties: dict = field(default_factory=dict)
    alias: str = ""
    description: str = ""


class FakeFactory:
    def __init__(self):
        self.templates = set()
        self.configs = {}
        self.parsed = []

    def parse_config(self, ctx, *, template_namespace, template_name, name, namespace, properties):
        self.parsed.append((template_namespace, template_name))
        if template_name and (template_namespace, template_name) not in self.templates:
            raise RuntimeError("the template is not exist")
        return FakeConfig(name, namespace, template_name, dict(properties))

    def create_or_update_config(self, ctx, item, namespace):
        self.configs[(namespace, item.name)] = item

    def read_config(self, ctx, namespace, name):
        try:
            return dict(self.configs[(namespace, name)].properties)
        except KeyError:
            raise LookupError(f"config {name} not found") from None

    def list_configs(self, ctx, namespace, template, scope, with_status):
        return [item for (ns, _), item in self.configs.items()
                if ns == namespace and (not template or item.template == template)]

    def delete_config(self, ctx, namespace, name):
        del self.configs[(namespace, name)]


HUB_REQUEST = {
    "name": "hub-kubevela",
    "namespace": "default",
    "template": "default/test-image-registry",
    "config": {"registry": "hub.kubevela.net"},
}


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def provider(factory):
    return ConfigProvider(factory)


def test_config_lifecycle(provider, factory):
    with pytest.raises(RuntimeError, match="the template is not exist"):
        provider.create(None, None, StepValue(dict(HUB_REQUEST)), None)

    factory.templates.add(("default", "test-image-registry"))
    provider.create(None, None, StepValue(dict(HUB_REQUEST)), None)

    provider.create(None, None, StepValue({"name": "www-kubevela", "namespace": "default",
                                           "config": {"url": "kubevela.net"}}), None)

    listing = StepValue({"namespace": "default", "template": "test-image-registry"})
    provider.list(None, None, listing, None)
    contents = listing.lookup("configs").to_python()
    assert len(contents) == 1
    assert contents[0]["config"]["registry"] == "hub.kubevela.net"

    reading = StepValue({"name": "hub-kubevela", "namespace": "default"})
    provider.read(None, None, reading, None)
    assert reading.get_string("config", "registry") == "hub.kubevela.net"

    provider.delete(None, None, StepValue({"name": "hub-kubevela", "namespace": "default"}), None)
    remaining = factory.list_configs(None, "default", "", "", False)
    assert len(remaining) == 1
    assert remaining[0].properties["url"] == "kubevela.net"


def test_create_uses_default_template_namespace(provider, factory):
    factory.templates.add(("vela-system", "registry"))
    provider.create(None, None, StepValue({"name": "a", "namespace": "default", "template": "registry"}), None)
    assert factory.parsed == [("vela-system", "registry")]
    assert factory.configs[("default", "a")].properties == {}

    listing = StepValue({"namespace": "default", "template": "registry"})
    provider.list(None, None, listing, None)
    assert [item["name"] for item in listing.lookup("configs").to_python()] == ["a"]


def test_list_strips_template_namespace(provider, factory):
    factory.configs[("default", "x")] = FakeConfig("x", "default", "reg", {"k": "v"}, "X", "desc")
    v = StepValue({"namespace": "default", "template": "other-ns/reg"})
    provider.list(None, None, v, None)
    assert v.lookup("configs").to_python() == [
        {"name": "x", "alias": "X", "description": "desc", "config": {"k": "v"}}
    ]


def test_list_with_no_match_fills_empty_list(provider):
    v = StepValue({"namespace": "default", "template": "missing"})
    provider.list(None, None, v, None)
    assert v.lookup("configs").to_python() == []


def test_list_without_template_is_invalid(provider):
    with pytest.raises(RequestInvalidError, match="the request is in valid"):
        provider.list(None, None, StepValue({"namespace": "default"}), None)


def test_create_with_bad_name_is_invalid(provider):
    with pytest.raises(RequestInvalidError):
        provider.create(None, None, StepValue({"name": 123, "namespace": "default"}), None)


def test_read_with_bad_namespace_is_invalid(provider):
    with pytest.raises(RequestInvalidError):
        provider.read(None, None, StepValue({"name": "a", "namespace": ["x"]}), None)


def test_delete_with_bad_request_is_invalid(provider):
    with pytest.raises(RequestInvalidError):
        provider.delete(None, None, StepValue({"name": {"a": 1}}), None)


def test_create_properties_from_mapping():
    ccp = CreateConfigProperties.from_mapping({"name": "n", "config": {"a": 1}})
    assert ccp == CreateConfigProperties(name="n", namespace="", template="", config={"a": 1})
    with pytest.raises(RequestInvalidError):
        CreateConfigProperties.from_mapping({"config": "not-an-object"})


def test_install_registers_handlers(factory):
    providers = Providers()
    install(providers, factory)
    assert all(providers.get_handler("config", name) is not None
               for name in ("create", "read", "list", "delete"))
    assert providers.get_handler("config", "update") is None