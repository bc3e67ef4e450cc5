# formgate

formgate is a small WSGI-based HTTP server for `multipart/form-data` routes.
Other parts of an application plug into it by handing it modules that supply
routes, middlewares and health checks. formgate parses uploads into a
per-request working directory, offers typed access to form values, sends the
resulting file back (zipped when there are several), traces requests and
enforces time limits.

## Installation

```
pip install formgate
```

To run the test suite:

```
pip install "formgate[test]"
pytest
```

## Running the server

```
formgate
```

starts the server in the foreground until interrupted. It listens on port
3000 on all interfaces, under the root path `/`, and answers health checks
at `/health`. To list the options it accepts:

```
formgate --help
```

The options are:

- `--api-port` (default `3000`);
- `--api-port-from-env NAME`: take the port from the environment variable
  `NAME` instead; a missing, empty or non-integer variable is an error;
- `--api-timeout` (default `30s`): the time limit for requests, written as a
  duration such as `30s` or `1m30s`;
- `--api-root-path` (default `/`): must start and end with `/`;
- `--api-trace-header` (default `Gotenberg-Trace`): the header carrying the
  request id;
- `--api-disable-health-check-logging [BOOL]`: do not log `/health` requests;
- `--api-read-timeout`, `--api-process-timeout`, `--api-write-timeout`:
  deprecated; a warning is logged, and `--api-process-timeout`, when given,
  replaces `--api-timeout`.

## What it does not do

The `formgate` command serves only the health check: it ships no routes of
its own and performs no document processing. Routes, middlewares and health
checks come from modules that a program passes to `API.provision`.
`API.grace_duration` reports how long request files should be kept, but
formgate has no garbage collector that acts on it.

## Building on it

### The server

`formgate.api.API(port, timeout, root_path, trace_header,
disable_health_check_logging, logger)` is the server.

- `API.provision(modules, environ=None)` goes through `modules` and collects
  from them, by the methods they have: `routes()` returning `Route` objects,
  `middlewares()` returning `Middleware` objects, `checks()` returning health
  check callables, `add_grace_duration()` adding to the grace duration, and
  `logger(mod)` providing the server's logger. Exactly one module must
  provide a logger. A module with a `validate()` method is validated first,
  and its error stops provisioning. Middlewares are sorted by priority,
  highest first. When `port_from_env` is set, the port is read from that
  variable of `environ` (the process environment by default).
- `API.validate()` raises `ValueError` for a bad port, root path or trace
  header, and for routes with an empty or slash-less path, multipart routes
  outside `/forms`, routes without a method or handler, duplicate paths
  (including `/health`), and middlewares without a handler.
- `API.build_app()` returns the WSGI application without starting a
  listener, which is handy for tests.
- `API.start()` serves in a background thread; `API.stop()` shuts down.
- `API.startup_message()` returns `"server listening on port N"`.

A `Route(method, path, handler, is_multipart=False, disable_logging=False)`
handler is a callable taking a `formgate.exchange.Exchange`. A
`Middleware(handler, stack, priority)` handler takes the next handler and
returns a new one. `MiddlewareStack` places it before routing
(`PRE_ROUTER`), around every route (`DEFAULT`) or only around multipart
routes (`MULTIPART`); `MiddlewarePriority` runs from `VERY_LOW` to
`VERY_HIGH`.

Multipart routes run inside `context_middleware` and every route runs inside
`hard_timeout_middleware`, with a hard limit of the timeout plus five
seconds. Health checks are callables that raise when unhealthy; `/health`
answers `200` with a JSON status, or `503` when a check fails or times out.

### The exchange

`formgate.exchange.Exchange` holds the werkzeug `Request`, the response
being built and what the middlewares attach: `start_time`, `root_path`,
`trace`, `trace_header`, a per-request `logger`, and for multipart routes
`context` and `cancel`. Handlers answer with `Exchange.string(status,
message)`, `Exchange.no_content(status)` or `Exchange.attachment(path,
filename)`.

### Request context

Each multipart request gets a `formgate.context.Context`, created by
`new_context`. A request that is not `multipart/form-data` or has no boundary
is answered `415`; a body that does not match its boundary, `400`. Uploaded
files are copied into the context's own temporary working directory, with
their names reduced to a base name and stripped of combining marks.

- `Context.form_data()` reads form values and files;
- `Context.generate_path(".pdf")` gives a fresh path inside the working
  directory;
- `Context.add_output_paths(*paths)` registers the files to send back; a path
  outside the working directory raises `OutOfBoundsOutputPathError`, and a
  cancelled context raises `ContextAlreadyClosedError`;
- `Context.build_output_file()` returns the single output file, or a zip
  archive of all of them;
- `Context.output_filename(path)` gives the download name, taken from the
  `Gotenberg-Output-Filename` request header plus the file's extension when
  the header is present;
- `Context.cancel()` removes the working directory; calling it twice is safe.

After the handler returns, `context_middleware` builds the output file, sends
it as an attachment and cancels the context.

### Form data

`formgate.formdata.FormData` reads values with defaults (`string`, `boolean`,
`integer`, `floating`, `duration`, `custom`) or as required values
(`mandatory_string`, `mandatory_boolean`, `mandatory_integer`,
`mandatory_floating`, `mandatory_duration`, `mandatory_custom`). File lookups
are `path`, `content` and `paths` (by extension, case-insensitive, sorted),
each with a `mandatory_` form. Problems are collected in `errors` rather than
raised at once; `FormData.validate()` then raises a single error carrying a
`400 Bad Request` response that lists them all.

```python
from datetime import timedelta

form = ctx.form_data()
landscape = form.boolean("landscape", False)
scale = form.floating("scale", 1.0)
wait = form.duration("waitDelay", timedelta(0))
url = form.mandatory_string("url")
form.validate()
```

The parsers behind these live in `formgate.values`: `parse_bool`,
`parse_int` (64-bit), `parse_float` and `parse_duration`, which reads
`300ms`, `1.5s`, `2h45m` and the like into a `timedelta`.

### Errors

Raise `formgate.errors.wrap_error(err, SentinelHTTPError(status, message))`
from a handler to log the detailed error while sending only the sentinel's
status and message to the client. `formgate.middlewares.parse_error` maps
any error to a status and message: werkzeug HTTP exceptions keep their code,
timeouts become `503 Service Unavailable`, wrapped and sentinel errors use
their sentinel, and anything else becomes `500 Internal Server Error`.
`http_error_handler` writes that answer as plain text.

A handler that carries on with the work in the background raises
`formgate.middlewares.AsyncProcess`; the request is then answered with
`204 No Content` and its context is left open. Handlers that overrun the hard
time limit end with `HardTimeoutError`.