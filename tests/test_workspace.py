import copy

import pytest

from vela_steps.registry import Providers, StepValue, ValueNotFound
from vela_steps.workspace import ComponentManifest, WorkspaceProvider, install

POD = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {"labels": {"app": "nginx"}},
    "spec": {
        "containers": [
            {
                "env": [{"name": "APP", "value": "nginx"}],
                "image": "nginx:1.14.2",
                "imagePullPolicy": "IfNotPresent",
                "name": "main",
                "ports": [{"containerPort": 8080, "protocol": "TCP"}],
            }
        ]
    },
}

SERVICE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "my-service"},
    "spec": {
        "ports": [{"port": 80, "protocol": "TCP", "targetPort": 8080}],
        "selector": {"app": "nginx"},
    },
}

EXPECTED_MANIFEST = {"workload": POD, "auxiliaries": [SERVICE]}


def _deep_merge(base, patch):
    for key, item in patch.items():
        if isinstance(base.get(key), dict) and isinstance(item, dict):
            _deep_merge(base[key], item)
        else:
            base[key] = item


class FakeWorkflowContext:
    def __init__(self):
        self.components = {
            "server": ComponentManifest(
                workload=copy.deepcopy(POD), auxiliaries=[copy.deepcopy(SERVICE)]
            )
        }
        self.vars = {}

    def get_components(self):
        return dict(self.components)

    def get_component(self, name):
        try:
            return self.components[name]
        except KeyError:
            raise LookupError(f"component {name} not found") from None

    def patch_component(self, name, patch):
        _deep_merge(self.get_component(name).workload, patch)

    def get_var(self, *path):
        node = self.vars
        for key in path:
            if not isinstance(node, dict) or key not in node:
                raise LookupError(f"var {'.'.join(path)} not found")
            node = node[key]
        return node

    def set_var(self, value, *path):
        node = self.vars
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value


class MockAction:
    def __init__(self):
        self.suspend = False
        self.terminate_called = False
        self.waiting = False
        self.msg = ""

    def terminate(self, msg):
        self.terminate_called = True
        self.msg = msg

    def wait(self, msg):
        self.waiting = True
        if msg:
            self.msg = msg

    def fail(self, msg):
        self.terminate_called = True
        if msg:
            self.msg = msg

    def message(self, msg):
        if msg:
            self.msg = msg


@pytest.fixture
def wf_ctx():
    return FakeWorkflowContext()


@pytest.fixture
def provider():
    return WorkspaceProvider()


def test_load_one_component(provider, wf_ctx):
    v = StepValue({"component": "server"})
    provider.load(None, wf_ctx, v, MockAction())
    assert v.lookup("value").to_python() == EXPECTED_MANIFEST


def test_load_all_components(provider, wf_ctx):
    v = StepValue({})
    provider.load(None, wf_ctx, v, MockAction())
    assert v.lookup("value", "server").to_python() == EXPECTED_MANIFEST


def test_load_without_auxiliaries(provider, wf_ctx):
    wf_ctx.components["bare"] = ComponentManifest(workload={"kind": "Pod"})
    v = StepValue({"component": "bare"})
    provider.load(None, wf_ctx, v, MockAction())
    assert v.lookup("value").to_python() == {"workload": {"kind": "Pod"}}


def test_load_not_found(provider, wf_ctx):
    with pytest.raises(LookupError):
        provider.load(None, wf_ctx, StepValue({"component": "not-found"}), MockAction())


@pytest.mark.parametrize("bad", [124, None])
def test_load_bad_component_name(provider, wf_ctx, bad):
    with pytest.raises(TypeError):
        provider.load(None, wf_ctx, StepValue({"component": bad}), MockAction())


def test_export_patches_component(provider, wf_ctx):
    v = StepValue(
        {"value": {"metadata": {"labels": {"tier": "web"}}}, "component": "server"}
    )
    provider.export(None, wf_ctx, v, MockAction())
    workload = wf_ctx.get_component("server").workload
    assert workload["metadata"]["labels"] == {"app": "nginx", "tier": "web"}
    assert workload["spec"] == POD["spec"]


@pytest.mark.parametrize(
    "data, error",
    [
        ({"value": "1.1.1.1"}, ValueNotFound),
        ({"component": "not-found", "value": {}}, LookupError),
        ({"component": "server"}, ValueNotFound),
    ],
)
def test_export_errors(provider, wf_ctx, data, error):
    with pytest.raises(error):
        provider.export(None, wf_ctx, StepValue(data), MockAction())


def test_do_var_put_then_get(provider, wf_ctx):
    put = StepValue({"method": "Put", "path": "clusterIP", "value": "1.1.1.1"})
    provider.do_var(None, wf_ctx, put, MockAction())
    assert wf_ctx.get_var("clusterIP") == "1.1.1.1"

    get = StepValue({"method": "Get", "path": "clusterIP"})
    provider.do_var(None, wf_ctx, get, MockAction())
    assert get.get_string("value") == "1.1.1.1"


def test_do_var_dotted_path(provider, wf_ctx):
    put = StepValue({"method": "Put", "path": "net.ip", "value": "10.0.0.1"})
    provider.do_var(None, wf_ctx, put, MockAction())
    assert wf_ctx.vars == {"net": {"ip": "10.0.0.1"}}


@pytest.mark.parametrize(
    "data",
    [
        {"value": "1.1.1.1"},
        {"method": "Get"},
        {"path": "ClusterIP"},
        {"method": "Put", "path": "ClusterIP"},
    ],
)
def test_do_var_errors(provider, wf_ctx, data):
    with pytest.raises(LookupError):
        provider.do_var(None, wf_ctx, StepValue(data), MockAction())


def test_wait_when_not_continue(provider, wf_ctx):
    act = MockAction()
    provider.wait(None, wf_ctx, StepValue({"continue": False, "message": "test log"}), act)
    assert act.waiting is True
    assert act.msg == "test log"


def test_no_wait_when_continue(provider, wf_ctx):
    act = MockAction()
    provider.wait(None, wf_ctx, StepValue({"continue": True, "message": "not invalid"}), act)
    assert act.waiting is False
    assert act.msg == ""


def test_wait_with_undecided_values(provider, wf_ctx):
    act = MockAction()
    provider.wait(None, wf_ctx, StepValue({"continue": None, "message": None}), act)
    assert act.waiting is True
    assert act.msg == ""


def test_wait_with_empty_value(provider, wf_ctx):
    act = MockAction()
    provider.wait(None, wf_ctx, StepValue({}), act)
    assert act.waiting is True


def test_break(provider, wf_ctx):
    act = MockAction()
    provider.break_(None, wf_ctx, None, act)
    assert act.terminate_called is True

    act = MockAction()
    provider.break_(None, wf_ctx, StepValue({"message": "terminate"}), act)
    assert act.terminate_called is True
    assert act.msg == "terminate"


def test_fail(provider, wf_ctx):
    act = MockAction()
    provider.fail(None, wf_ctx, None, act)
    assert act.terminate_called is True

    act = MockAction()
    provider.fail(None, wf_ctx, StepValue({"message": "fail"}), act)
    assert act.terminate_called is True
    assert act.msg == "fail"


def test_message(provider, wf_ctx):
    act = MockAction()
    v = StepValue({"message": "test"})
    provider.message(None, wf_ctx, None, act)
    assert act.msg == ""
    provider.message(None, wf_ctx, v, act)
    assert act.msg == "test"
    provider.message(None, wf_ctx, None, act)
    assert act.msg == "test"


def test_install_registers_handlers():
    p = Providers()
    install(p)
    for name in ("load", "export", "wait", "break", "fail", "var"):
        assert callable(p.get_handler("builtin", name))
    assert p.get_handler("builtin", "message") is None