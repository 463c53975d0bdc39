# vela-steps

Built-in step providers for a workflow engine. A workflow step names a
provider and one of its handlers; the handler reads the step's parameters
from a `StepValue`, does its work, and fills its results back into the same
value. Every handler is called as `handler(ctx, wf_ctx, v, act)`.

## Installing

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## The registry

`vela_steps.registry.Providers` maps a provider name to a table of handlers.

```python
from vela_steps.registry import Providers
from vela_steps import workspace

providers = Providers()
workspace.install(providers)

handler = providers.get_handler("builtin", "wait")
```

- `register(provider, handlers)` installs a table of handlers. The first
  registration of a name wins and later ones are ignored, unless the
  registry was made with `Providers(force=True)`, in which case the newest
  table replaces the old one.
- `get_handler(provider_name, handle_name)` returns the handler, or `None`
  when either name is unknown.

## Step values

`StepValue` wraps the parameters of a step as nested Python data
(dictionaries, lists, strings, numbers):

- `lookup(*path)` returns a view of the sub-value at a path; views share the
  same data. A missing path raises `ValueNotFound`, whose message reads
  `failed to lookup value: var(path=...) not exist`.
- `exists(*path)` tells whether a path is present.
- `get_string(*path)` and `get_int(*path)` read a field, raising
  `ValueNotFound` when it is missing and `TypeError` when it has another type.
- `fill(obj, *path)` merges a copy of `obj` into the value at a path,
  creating objects along the way.
- `to_python()` returns a deep copy of the data.

## Providers

| Module | Provider name | Handlers |
| --- | --- | --- |
| `vela_steps.workspace` | `builtin` | `load`, `export`, `wait`, `break`, `fail`, `var` |
| `vela_steps.email` | `email` | `send` |
| `vela_steps.http` | `http` | `do` |
| `vela_steps.util` | `util` | `patch-k8s-object`, `string`, `log` |
| `vela_steps.kube` | `kube` | `apply`, `apply-in-parallel`, `read`, `list`, `delete` |
| `vela_steps.config` | `config` | `create`, `read`, `list`, `delete` |

Each module has an `install(...)` function that registers its handlers:
`workspace.install(providers)`, `email.install(providers)`,
`http.install(providers, cli, ns)`, `util.install(providers, process_context)`,
`kube.install(providers, cli, labels, handlers)` and
`config.install(providers, factory)`.

### Workspace (`builtin`)

`WorkspaceProvider` works on the workflow context `wf_ctx`, which must offer
`get_components()`, `get_component(name)`, `get_var(*path)`,
`set_var(value, *path)` and `patch_component(name, value)`. The action `act`
must offer `wait`, `terminate`, `fail` and `message`, each taking a message.

- `load` fills `value` with the `workload` and `auxiliaries` of the named
  `component` (a `ComponentManifest`), or with every component by name when
  no `component` is given.
- `var` (`do_var`) gets or puts a variable at a dotted `path`, with `method`
  set to `"Get"` or `"Put"`.
- `export` patches the named `component` with `value`.
- `wait` makes the step wait unless `continue` is true.
- `break` (`break_`) and `fail` terminate or fail the step with `message`.
- `WorkspaceProvider.message` writes `message` to the step status; it is not
  part of the table that `install` registers.

### E-mail (`email`)

`EmailProvider.send` reads `stepID`, `from` (`address`, `alias`, `password`,
`host`, `port`), `to` (a list of addresses) and `content` (`subject`, HTML
`body`). The first call for a step starts delivery in the background and
makes the step wait; later calls wait while it is running, then return on
success or raise `RuntimeError("failed to send email: ...")`. Delivery uses
SMTP over SSL on port 465, plain SMTP with STARTTLS when offered otherwise.
A custom `deliver` and `spawn` callable may be passed to `EmailProvider`.

### HTTP (`http`)

`HttpProvider.do` sends the request given by `method`, `url` and
`request.body`, `request.header`, `request.timeout` (default three seconds)
and `request.ratelimiter` (`limit` and `period`), and fills `response` with
`body`, `header`, `trailer` and `statusCode`. Without headers, the request
carries `Content-Type: application/json`. With `tls_config.secret`, the
client certificate, key and CA are read through the client's
`get(namespace, name)`, which returns base64-encoded secret data.

`parse_duration(text)` reads durations such as `"300ms"`, `"1s"` or
`"1h30m"` into seconds.

### Utilities (`util`)

- `patch-k8s-object` merges `patch` into `value` and fills `result`, or
  `err` on a conflict or a missing `kind`. Next to a field in a patch object,
  `"$patchKey/<field>": "<key>"` merges a list by that key, and
  `"$patchStrategy/<field>"` set to `"retainKeys"` or `"replace"` replaces the
  field wholesale.
- `string` converts the bytes in `bt` to the string `str`.
- `log` logs `data` at `level` (default 3) and records the step's log
  settings (`data`, `source.url`, `source.resources`) as JSON under
  `logConfig` through `wf_ctx.get_mutable_value` and `set_mutable_value`.
  The step name and session id come from the `process_context` mapping.

### Kubernetes objects (`kube`)

`KubeProvider` handles objects as plain dictionaries through a client with
`get`, `create`, `patch`, `delete`, `list` and `delete_all_of` (see the
module docstring for their arguments). `apply` creates or updates `value`,
patched by `patch` when given, defaults the namespace to `default` and sets
the object's labels to those given to `install`. `read`, `list` and `delete`
report client failures in `err`. The default `Dispatcher` creates missing
objects and updates existing ones with a three-way merge patch, keeping the
last applied configuration and time in annotations.

### Configs (`config`)

`ConfigProvider` works through a factory with `parse_config`,
`create_or_update_config`, `read_config`, `list_configs` and `delete_config`.
A `template` written as `namespace/name` names the template's namespace;
otherwise `vela-system` is used. Malformed requests raise
`RequestInvalidError`.

## Rate limiting

`vela_steps.ratelimiter.RateLimiter` is a token-bucket limiter keyed by a
string and kept in a bounded LRU store:

```python
from vela_steps.ratelimiter import RateLimiter

limiter = RateLimiter(128)
limiter.allow("GET-/api", 2, 1.0)   # True
limiter.allow("GET-/api", 2, 1.0)   # True
limiter.allow("GET-/api", 2, 1.0)   # False until a token comes back
```

Changing the limit or period for a key starts a fresh bucket. The HTTP
provider shares one limiter of 128 keys, keyed by method and URL without
its query.

## What this package does not do

There is no command and no controller that runs workflows: the package only
provides the handlers and the registry. It brings no Kubernetes client, no
config store and no workflow context of its own; these are passed in by the
caller. The HTTP provider does not send request trailers.