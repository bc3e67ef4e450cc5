"""An HTTP server to which modules add routes, middlewares and health checks."""

from __future__ import annotations

import argparse
import concurrent.futures
import enum
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from http import HTTPStatus
from typing import (
    Any,
    Callable,
    Iterable,
    Mapping,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.serving import BaseWSGIServer, make_server
from werkzeug.wrappers import Request

from .exchange import Exchange
from .middlewares import (
    context_middleware,
    hard_timeout_middleware,
    http_error_handler,
    latency_middleware,
    logger_middleware,
    root_path_middleware,
    trace_middleware,
)
from .values import parse_bool, parse_duration, parse_int

Handler = Callable[[Exchange], None]
MiddlewareFunc = Callable[[Handler], Handler]
HealthCheck = Callable[[], Any]

_HARD_TIMEOUT_MARGIN = timedelta(seconds=5)
_LISTEN_HOST = "0.0.0.0"

K = TypeVar("K")


class MiddlewareStack(enum.Enum):
    """Where a module's middleware sits in the chain."""

    DEFAULT = 0
    PRE_ROUTER = 1
    MULTIPART = 2


class MiddlewarePriority(enum.IntEnum):
    """How early a middleware runs within its stack; higher runs first."""

    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4


@dataclass
class Route:
    """A route offered by a module.

    ``path`` must start with a slash; multipart routes must start with
    ``/forms``.
    """

    method: str = ""
    path: str = ""
    handler: Handler | None = None
    is_multipart: bool = False
    disable_logging: bool = False


@dataclass
class Middleware:
    """A middleware offered by a module, with its stack and priority."""

    handler: MiddlewareFunc | None = None
    stack: MiddlewareStack = MiddlewareStack.DEFAULT
    priority: MiddlewarePriority = MiddlewarePriority.VERY_LOW


@runtime_checkable
class Router(Protocol):
    """A module that adds routes."""

    def routes(self) -> Sequence[Route]: ...


@runtime_checkable
class MiddlewareProvider(Protocol):
    """A module that adds middlewares."""

    def middlewares(self) -> Sequence[Middleware]: ...


@runtime_checkable
class HealthChecker(Protocol):
    """A module that adds health checks: callables that raise when unhealthy."""

    def checks(self) -> Sequence[HealthCheck]: ...


@runtime_checkable
class GraceDurationIncrementer(Protocol):
    """A module that lengthens the garbage collector's grace duration."""

    def add_grace_duration(self) -> timedelta | float: ...


@runtime_checkable
class LoggerProvider(Protocol):
    """A module that hands out loggers to other modules."""

    def logger(self, mod: Any) -> logging.Logger: ...


def _as_timedelta(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


def _apply(handler: Handler, middlewares: Iterable[MiddlewareFunc]) -> Handler:
    """Wrap ``handler`` so that the first middleware is the outermost."""
    for middleware in reversed(list(middlewares)):
        handler = middleware(handler)
    return handler


def _modules(modules: Iterable[Any], kind: type, label: str) -> list[Any]:
    found = [module for module in modules if isinstance(module, kind)]
    for module in found:
        validate = getattr(module, "validate", None)
        if callable(validate):
            try:
                validate()
            except Exception as exc:
                raise RuntimeError(f"get {label}: {exc}") from exc
    return found


def _check_name(check: HealthCheck, index: int) -> str:
    name = getattr(check, "name", None) or getattr(check, "__name__", "")
    if not name or name == "<lambda>":
        return f"check-{index}"
    return str(name)


def _health_handler(checks: Sequence[HealthCheck], timeout: timedelta) -> Handler:
    seconds = timeout.total_seconds()

    def handler(exchange: Exchange) -> None:
        details: dict[str, dict[str, str]] = {}
        if checks:
            pool = concurrent.futures.ThreadPoolExecutor(max_workers=len(checks))
            try:
                futures = {
                    pool.submit(check): _check_name(check, index)
                    for index, check in enumerate(checks)
                }
                done, _ = concurrent.futures.wait(futures, timeout=seconds)
                for future, name in futures.items():
                    if future not in done:
                        details[name] = {"status": "down", "error": "check timed out"}
                    elif future.exception() is not None:
                        details[name] = {"status": "down", "error": str(future.exception())}
                    else:
                        details[name] = {"status": "up"}
            finally:
                pool.shutdown(wait=False)

        healthy = all(item["status"] == "up" for item in details.values())
        payload: dict[str, Any] = {"status": "up" if healthy else "down"}
        if details:
            payload["details"] = details
        status = HTTPStatus.OK if healthy else HTTPStatus.SERVICE_UNAVAILABLE
        exchange.response_headers.set("Content-Type", "application/json")
        exchange.string(int(status), json.dumps(payload))

    return handler


class API:
    """An HTTP server whose routes, middlewares and health checks come from modules."""

    def __init__(
        self,
        port: int = 3000,
        timeout: timedelta | float = timedelta(seconds=30),
        root_path: str = "/",
        trace_header: str = "Gotenberg-Trace",
        disable_health_check_logging: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.port = port
        self.timeout = _as_timedelta(timeout)
        self.root_path = root_path
        self.trace_header = trace_header
        self.disable_health_check_logging = disable_health_check_logging
        self.logger = logger if logger is not None else logging.getLogger("formgate.api")
        self.port_from_env = ""
        self.routes: list[Route] = []
        self.external_middlewares: list[Middleware] = []
        self.health_checks: list[HealthCheck] = []
        self.gc_grace_duration = self.timeout
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def server(self) -> BaseWSGIServer | None:
        """The running server, if started."""
        return self._server

    def provision(
        self, modules: Iterable[Any], environ: Mapping[str, str] | None = None
    ) -> None:
        """Collect routes, middlewares, health checks and a logger from ``modules``."""
        env = os.environ if environ is None else environ
        modules = list(modules)

        if self.port_from_env:
            name = self.port_from_env
            if name not in env:
                raise ValueError(f"environment variable '{name}' does not exist")
            raw = env[name]
            if raw == "":
                raise ValueError(f"environment variable '{name}' is empty")
            try:
                self.port = parse_int(raw)
            except ValueError as exc:
                raise ValueError(
                    f"get int value of environment variable '{name}': {exc}"
                ) from exc

        routes: list[Route] = []
        for router in _modules(modules, Router, "routers"):
            try:
                routes.extend(router.routes() or ())
            except Exception as exc:
                raise RuntimeError(f"get routes: {exc}") from exc
        self.routes = routes

        middlewares: list[Middleware] = []
        for provider in _modules(modules, MiddlewareProvider, "middleware providers"):
            try:
                middlewares.extend(provider.middlewares() or ())
            except Exception as exc:
                raise RuntimeError(f"get middlewares: {exc}") from exc
        self.external_middlewares = sorted(
            middlewares, key=lambda item: item.priority, reverse=True
        )

        checks: list[HealthCheck] = []
        for checker in _modules(modules, HealthChecker, "health checkers"):
            try:
                checks.extend(checker.checks() or ())
            except Exception as exc:
                raise RuntimeError(f"get health checks: {exc}") from exc
        self.health_checks = checks

        incrementers = _modules(
            modules,
            GraceDurationIncrementer,
            "garbage collector grace duration increments",
        )
        self.gc_grace_duration = self.timeout + sum(
            (_as_timedelta(item.add_grace_duration()) for item in incrementers),
            timedelta(),
        )

        providers = _modules(modules, LoggerProvider, "logger provider")
        if not providers:
            raise RuntimeError("get logger provider: no module provides loggers")
        if len(providers) > 1:
            raise RuntimeError("get logger provider: more than one module provides loggers")
        try:
            self.logger = providers[0].logger(self)
        except Exception as exc:
            raise RuntimeError(f"get logger: {exc}") from exc

    def validate(self) -> None:
        """Raise ``ValueError`` if the settings, routes or middlewares are invalid."""
        problems = []
        if not 1 <= self.port <= 65535:
            problems.append("port must be more than 1 and less than 65535")
        if not self.root_path.startswith("/"):
            problems.append("root path must start with /")
        if not self.root_path.endswith("/"):
            problems.append("root path must end with /")
        if not self.trace_header.strip():
            problems.append("trace header must not be empty")
        if problems:
            raise ValueError("; ".join(problems))

        registered = {"/health"}
        for route in self.routes:
            if route.path == "":
                raise ValueError("route with empty path cannot be registered")
            if not route.path.startswith("/"):
                raise ValueError(f"route '{route.path}' does not start with /")
            if route.is_multipart and not route.path.startswith("/forms"):
                raise ValueError(
                    f"multipart/form-data route '{route.path}' does not start with /forms"
                )
            if route.method == "":
                raise ValueError(f"route '{route.path}' has an empty method")
            if route.handler is None:
                raise ValueError(f"route '{route.path}' has a nil handler")
            if route.path in registered:
                raise ValueError(f"route '{route.path}' is already registered")
            registered.add(route.path)

        if any(middleware.handler is None for middleware in self.external_middlewares):
            raise ValueError("a middleware has a nil handler")

    def build_app(self) -> Callable[..., Iterable[bytes]]:
        """Return the WSGI application serving the routes and the health check."""
        root = self.root_path
        disabled = [
            route.path.removeprefix("/") for route in self.routes if route.disable_logging
        ]
        if self.disable_health_check_logging:
            disabled.append("health")

        pre: list[MiddlewareFunc] = [
            latency_middleware(),
            root_path_middleware(root),
            trace_middleware(self.trace_header),
            logger_middleware(self.logger, disabled),
        ]
        default: list[MiddlewareFunc] = []
        multipart: list[MiddlewareFunc] = []
        for middleware in self.external_middlewares:
            if middleware.handler is None:
                continue
            if middleware.stack is MiddlewareStack.PRE_ROUTER:
                pre.append(middleware.handler)
            elif middleware.stack is MiddlewareStack.MULTIPART:
                multipart.append(middleware.handler)
            else:
                default.append(middleware.handler)

        hard_timeout = self.timeout + _HARD_TIMEOUT_MARGIN
        table: dict[str, dict[str, Handler]] = {}
        for route in self.routes:
            if route.handler is None:
                continue
            chain: list[MiddlewareFunc] = []
            if route.is_multipart:
                chain.append(context_middleware(self.timeout))
                chain.extend(multipart)
            chain.append(hard_timeout_middleware(hard_timeout))
            path = f"{root}{route.path.removeprefix('/')}"
            table.setdefault(path, {})[route.method.upper()] = _apply(route.handler, chain)

        table.setdefault(f"{root}health", {})["GET"] = _apply(
            _health_handler(list(self.health_checks), self.timeout),
            [hard_timeout_middleware(hard_timeout)],
        )

        def router(exchange: Exchange) -> None:
            methods = table.get(exchange.request.path)
            if methods is None:
                raise NotFound()
            handler = methods.get(exchange.request.method.upper())
            if handler is None:
                raise MethodNotAllowed(valid_methods=sorted(methods))
            handler(exchange)

        pipeline = _apply(_apply(router, default), pre)

        def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
            exchange = Exchange(Request(environ))
            try:
                pipeline(exchange)
            except Exception as exc:
                http_error_handler(exc, exchange)
            return exchange.to_response()(environ, start_response)

        return app

    def start(self) -> None:
        """Start serving in a background thread."""
        if self._server is not None:
            raise RuntimeError("server already started")
        server = make_server(_LISTEN_HOST, self.port, self.build_app(), threaded=True)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        self._server = server
        self._thread = thread

    def stop(self) -> None:
        """Shut the server down."""
        if self._server is None:
            raise RuntimeError("server not started")
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None

    def startup_message(self) -> str:
        """Return the message to log once the server listens."""
        return f"server listening on port {self.port}"

    def grace_duration(self) -> timedelta:
        """Return how long the garbage collector must spare request files."""
        return self.gc_grace_duration


class _StandardLoggerProvider:
    """Hands out children of the package logger."""

    def logger(self, mod: Any) -> logging.Logger:
        return logging.getLogger("formgate").getChild(type(mod).__name__.lower())


def _duration(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _boolean(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="formgate")
    parser.add_argument("--api-port", type=int, default=3000,
                        help="Set the port on which the API should listen")
    parser.add_argument("--api-port-from-env", default="",
                        help="Set the environment variable with the port on which the API "
                             "should listen - override the default port")
    parser.add_argument("--api-timeout", type=_duration, default=timedelta(seconds=30),
                        help="Set the time limit for requests")
    for name in ("read", "process", "write"):
        parser.add_argument(f"--api-{name}-timeout", type=_duration, default=None,
                            help="Deprecated: use --api-timeout instead")
    parser.add_argument("--api-root-path", default="/",
                        help="Set the root path of the API - for service discovery via URL paths")
    parser.add_argument("--api-trace-header", default="Gotenberg-Trace",
                        help="Set the header name to use for identifying requests")
    parser.add_argument("--api-disable-health-check-logging", type=_boolean, nargs="?",
                        const=True, default=False, help="Disable health check logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the API server until interrupted."""
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    log = logging.getLogger("formgate")

    for name in ("read", "process", "write"):
        if getattr(args, f"api_{name}_timeout") is not None:
            log.warning("flag --api-%s-timeout is deprecated, use --api-timeout instead", name)
    timeout = args.api_process_timeout if args.api_process_timeout is not None else args.api_timeout

    api = API(
        port=args.api_port,
        timeout=timeout,
        root_path=args.api_root_path,
        trace_header=args.api_trace_header,
        disable_health_check_logging=args.api_disable_health_check_logging,
    )
    api.port_from_env = args.api_port_from_env
    try:
        api.provision([_StandardLoggerProvider()])
        api.validate()
        api.start()
    except (ValueError, RuntimeError, OSError) as exc:
        print(f"formgate: {exc}", file=sys.stderr)
        return 1

    log.info(api.startup_message())
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        api.stop()
    return 0