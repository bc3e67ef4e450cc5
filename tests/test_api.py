import io
import json
import logging
import urllib.request
from datetime import timedelta

import pytest
from werkzeug.test import Client

from formgate.api import (
    API,
    Middleware,
    MiddlewarePriority,
    MiddlewareStack,
    Route,
    main,
)

LOGGER = logging.getLogger("tests.api")


class ProtoModule:
    def __init__(self, invalid=None):
        self._invalid = invalid

    def validate(self):
        if self._invalid:
            raise ValueError(self._invalid)


class RouterModule(ProtoModule):
    def __init__(self, routes=(), error=None, invalid=None):
        super().__init__(invalid)
        self._routes = list(routes)
        self._error = error

    def routes(self):
        if self._error:
            raise ValueError(self._error)
        return self._routes


class MiddlewareModule(ProtoModule):
    def __init__(self, middlewares=(), error=None, invalid=None):
        super().__init__(invalid)
        self._middlewares = list(middlewares)
        self._error = error

    def middlewares(self):
        if self._error:
            raise ValueError(self._error)
        return self._middlewares


class HealthModule(ProtoModule):
    def __init__(self, checks=(), error=None, invalid=None):
        super().__init__(invalid)
        self._checks = list(checks)
        self._error = error

    def checks(self):
        if self._error:
            raise ValueError(self._error)
        return self._checks


class GraceModule(ProtoModule):
    def __init__(self, extra, invalid=None):
        super().__init__(invalid)
        self._extra = extra

    def add_grace_duration(self):
        return self._extra


class LoggerModule:
    def __init__(self, error=None):
        self._error = error

    def logger(self, mod):
        if self._error:
            raise ValueError(self._error)
        return LOGGER


def passthrough(next_handler):
    def handler(exchange):
        next_handler(exchange)

    return handler


def ok_handler(exchange):
    exchange.string(200, "ok")


@pytest.mark.parametrize("environ", [{}, {"PORT": ""}, {"PORT": "foo"}])
def test_provision_rejects_bad_port_env(environ):
    api = API()
    api.port_from_env = "PORT"
    with pytest.raises(ValueError, match="environment variable 'PORT'"):
        api.provision([LoggerModule()], environ)


def test_provision_reads_port_env_then_fails_without_logger():
    api = API()
    api.port_from_env = "PORT"
    with pytest.raises(RuntimeError, match="logger provider"):
        api.provision([], {"PORT": "1337"})
    assert api.port == 1337


@pytest.mark.parametrize(
    "module",
    [
        RouterModule(invalid="foo"),
        RouterModule(error="foo"),
        MiddlewareModule(invalid="foo"),
        MiddlewareModule(error="foo"),
        HealthModule(invalid="foo"),
        HealthModule(error="foo"),
        GraceModule(0, invalid="foo"),
        LoggerModule(error="foo"),
    ],
)
def test_provision_module_failures(module):
    with pytest.raises(RuntimeError, match="foo"):
        API().provision([module], {})


def test_provision_grace_duration_adds_increments():
    api = API()
    with pytest.raises(RuntimeError):
        api.provision([GraceModule(timedelta(seconds=3))], {})
    assert api.grace_duration() == timedelta(seconds=33)


def test_provision_without_modules_fails():
    with pytest.raises(RuntimeError, match="logger provider"):
        API().provision([], {})


def test_provision_collects_everything():
    middlewares = [Middleware(priority=priority) for priority in MiddlewarePriority]
    check = lambda: None  # noqa: E731
    api = API()
    api.provision(
        [
            RouterModule([Route()]),
            MiddlewareModule(middlewares),
            HealthModule([check]),
            LoggerModule(),
        ],
        {},
    )
    assert api.external_middlewares == [
        Middleware(priority=MiddlewarePriority.VERY_HIGH),
        Middleware(priority=MiddlewarePriority.HIGH),
        Middleware(priority=MiddlewarePriority.MEDIUM),
        Middleware(priority=MiddlewarePriority.LOW),
        Middleware(priority=MiddlewarePriority.VERY_LOW),
    ]
    assert api.routes == [Route()]
    assert api.health_checks == [check]
    assert api.logger is LOGGER


@pytest.mark.parametrize(
    "port, root_path, trace_header, routes, middlewares",
    [
        (0, "", "", [], []),
        (65536, "foo", "", [], []),
        (10, "/foo/", "foo", [Route(path="")], []),
        (10, "/foo/", "foo", [Route(path="foo")], []),
        (10, "/foo/", "foo", [Route(path="/foo", is_multipart=True)], []),
        (10, "/foo/", "foo", [Route(path="/forms/foo", is_multipart=True)], []),
        (10, "/foo/", "foo", [Route(method="POST", path="/forms/foo", is_multipart=True)], []),
        (
            10,
            "/foo/",
            "foo",
            [
                Route(method="POST", path="/foo", handler=ok_handler),
                Route(method="POST", path="/foo", handler=ok_handler),
            ],
            [],
        ),
        (10, "/foo/", "foo", [Route(method="GET", path="/health", handler=ok_handler)], []),
        (10, "/foo/", "foo", [], [Middleware(priority=MiddlewarePriority.HIGH)]),
    ],
)
def test_validate_rejects(port, root_path, trace_header, routes, middlewares):
    api = API(port=port, root_path=root_path, trace_header=trace_header)
    api.routes = routes
    api.external_middlewares = middlewares
    with pytest.raises(ValueError):
        api.validate()


def test_validate_accepts_and_serves():
    api = API(port=10, root_path="/foo/", trace_header="foo", logger=LOGGER)
    api.routes = [Route(method="GET", path="/foo", handler=ok_handler)]
    api.external_middlewares = [
        Middleware(priority=MiddlewarePriority.HIGH, handler=passthrough)
    ]
    assert api.validate() is None
    response = Client(api.build_app()).get("/foo/foo")
    assert response.status_code == 200
    assert response.data == b"ok"


def test_app_health_and_multipart_routes(tmp_path):
    sample = tmp_path / "sample1.txt"
    sample.write_text("foo")

    def foo(exchange):
        exchange.context.output_paths = [str(sample)]

    def bar(exchange):
        raise ValueError("foo")

    api = API(port=3000, disable_health_check_logging=True, logger=LOGGER)
    api.routes = [
        Route(method="POST", path="/forms/foo", is_multipart=True,
              disable_logging=True, handler=foo),
        Route(method="POST", path="/forms/bar", is_multipart=True, handler=bar),
    ]
    api.external_middlewares = [
        Middleware(stack=MiddlewareStack.PRE_ROUTER, handler=passthrough),
        Middleware(stack=MiddlewareStack.MULTIPART, handler=passthrough),
        Middleware(stack=MiddlewareStack.DEFAULT, handler=passthrough),
        Middleware(handler=passthrough),
    ]
    client = Client(api.build_app())

    assert client.get("/health").status_code == 200

    def form():
        return {"foo": "foo", "foo.txt": (io.BytesIO(b"foo"), "foo.txt")}

    response = client.post("/forms/foo", data=form())
    assert response.status_code == 200
    assert response.data == b"foo"
    assert "sample1.txt" in response.headers["Content-Disposition"]

    response = client.post("/forms/bar", data=form())
    assert response.status_code == 500
    assert response.data == b"Internal Server Error"


def test_app_middleware_order(tmp_path):
    sample = tmp_path / "out.txt"
    sample.write_text("x")
    calls = []

    def recording(label):
        def middleware(next_handler):
            def handler(exchange):
                calls.append(label)
                next_handler(exchange)

            return handler

        return middleware

    def handle(exchange):
        calls.append("handler")
        exchange.context.output_paths = [str(sample)]

    api = API(logger=LOGGER)
    api.routes = [Route(method="POST", path="/forms/x", is_multipart=True, handler=handle)]
    api.external_middlewares = [
        Middleware(stack=MiddlewareStack.MULTIPART, handler=recording("multipart")),
        Middleware(stack=MiddlewareStack.DEFAULT, handler=recording("default")),
        Middleware(stack=MiddlewareStack.PRE_ROUTER, handler=recording("pre")),
    ]
    response = Client(api.build_app()).post(
        "/forms/x", data={"f": (io.BytesIO(b"a"), "a.txt")}
    )
    assert response.status_code == 200
    assert calls == ["pre", "default", "multipart", "handler"]


def test_app_root_path_trace_and_not_found():
    api = API(root_path="/api/", logger=LOGGER)
    api.routes = [Route(method="GET", path="/foo", handler=ok_handler)]
    client = Client(api.build_app())

    response = client.get("/api/foo", headers={"Gotenberg-Trace": "abc"})
    assert response.status_code == 200
    assert response.headers["Gotenberg-Trace"] == "abc"

    missing = client.get("/foo")
    assert missing.status_code == 404
    assert missing.data == b"Not Found"

    assert client.post("/api/foo").status_code == 405
    assert client.get("/api/health").status_code == 200


def test_health_reports_failing_check():
    def broken():
        raise RuntimeError("down")

    api = API(logger=LOGGER)
    api.health_checks = [broken]
    response = Client(api.build_app()).get("/health")
    assert response.status_code == 503
    payload = json.loads(response.data)
    assert payload["status"] == "down"
    assert payload["details"]["broken"]["error"] == "down"


def test_health_without_checks_is_up():
    api = API(logger=LOGGER)
    response = Client(api.build_app()).get("/health")
    assert json.loads(response.data) == {"status": "up"}


def test_start_and_stop():
    api = API(port=0, logger=LOGGER)
    api.routes = [Route(method="GET", path="/foo", handler=ok_handler)]
    api.start()
    try:
        port = api.server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/foo", timeout=5) as reply:
            assert reply.status == 200
            assert reply.read() == b"ok"
    finally:
        api.stop()
    assert api.server is None


def test_stop_without_start_fails():
    with pytest.raises(RuntimeError, match="not started"):
        API().stop()


def test_startup_message():
    assert API(port=3000).startup_message() == "server listening on port 3000"


def test_grace_duration():
    api = API()
    api.gc_grace_duration = timedelta(seconds=3)
    assert api.grace_duration() == timedelta(seconds=3)


@pytest.mark.parametrize("argv", [["--api-port=0"], ["--api-root-path=foo"]])
def test_main_rejects_invalid_settings(argv):
    assert main(argv) == 1


def test_main_rejects_missing_port_env(monkeypatch):
    monkeypatch.delenv("FORMGATE_TEST_PORT", raising=False)
    assert main(["--api-port-from-env=FORMGATE_TEST_PORT"]) == 1


def test_main_rejects_bad_duration():
    with pytest.raises(SystemExit) as info:
        main(["--api-timeout=foo"])
    assert info.value.code == 2