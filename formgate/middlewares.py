"""Middlewares wrapping request handlers, and the central error handler."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from datetime import timedelta
from http import HTTPStatus
from typing import Any, Callable, Iterable, Iterator, Sequence

from werkzeug.exceptions import HTTPException

from .context import new_context
from .errors import SentinelHTTPError, WrappedHTTPError
from .exchange import TEXT_PLAIN_UTF8, Exchange

Handler = Callable[[Exchange], None]
Middleware = Callable[[Handler], Handler]


class AsyncProcess(Exception):
    """Raised by a handler that goes on processing the request in the background."""

    def __init__(self, message: str = "async process") -> None:
        super().__init__(message)


class HardTimeoutError(TimeoutError):
    """The handler did not finish within the hard timeout."""

    def __init__(self, message: str = "hard timeout: context deadline exceeded") -> None:
        super().__init__(message)


def _seconds(value: timedelta | float) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _chain(err: BaseException) -> Iterator[BaseException]:
    """Yield ``err`` and its causes; a wrapped HTTP error ends the chain."""
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, WrappedHTTPError):
            return
        current = current.__cause__


def _phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def parse_error(err: BaseException) -> tuple[int, str]:
    """Return the HTTP status and message to send for ``err``."""
    if isinstance(err, HTTPException) and err.code is not None:
        return err.code, _phrase(err.code)
    if any(isinstance(item, TimeoutError) for item in _chain(err)):
        status = HTTPStatus.SERVICE_UNAVAILABLE
        return int(status), status.phrase
    for item in _chain(err):
        if isinstance(item, (SentinelHTTPError, WrappedHTTPError)):
            status, message = item.http_error()
            return int(status), message
    status = HTTPStatus.INTERNAL_SERVER_ERROR
    return int(status), status.phrase


def http_error_handler(err: BaseException, exchange: Exchange) -> None:
    """Answer ``exchange`` with the plain text status message of ``err``."""
    status, message = parse_error(err)
    exchange.response_headers.set("Content-Type", TEXT_PLAIN_UTF8)
    try:
        exchange.string(status, message)
    except RuntimeError as exc:
        exchange.logger.error("send error response: %s", exc)


def latency_middleware() -> Middleware:
    """Record when the request started in ``exchange.start_time``."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            exchange.start_time = time.monotonic()
            next_handler(exchange)

        return handler

    return middleware


def root_path_middleware(root_path: str) -> Middleware:
    """Store the API root path in ``exchange.root_path``."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            exchange.root_path = root_path
            next_handler(exchange)

        return handler

    return middleware


def trace_middleware(header: str) -> Middleware:
    """Take the request id from ``header`` or make one, and echo it in the response."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            trace = exchange.request.headers.get(header, "") or str(uuid.uuid4())
            exchange.trace = trace
            exchange.trace_header = header
            exchange.response_headers.add(header, trace)
            next_handler(exchange)

        return handler

    return middleware


class _RequestLogger(logging.LoggerAdapter):
    """Adds the request's fields to every record, merged with per-call extras."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _request_uri(exchange: Exchange) -> str:
    request = exchange.request
    path = request.script_root + request.path
    query = request.query_string.decode("latin-1")
    return f"{path}?{query}" if query else path


def _real_ip(exchange: Exchange) -> str:
    headers = exchange.request.headers
    forwarded = headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real = headers.get("X-Real-Ip", "")
    if real:
        return real
    return exchange.request.remote_addr or ""


def _human(seconds: float) -> str:
    if seconds < 1e-3:
        return f"{seconds * 1e6:.3f}\u00b5s"
    if seconds < 1:
        return f"{seconds * 1e3:.3f}ms"
    return f"{seconds:.3f}s"


def logger_middleware(
    logger: logging.Logger, disable_logging_for_paths: Iterable[str] | None = None
) -> Middleware:
    """Give the exchange a per-request logger and log the outcome of the request.

    Errors from the handler are answered through ``http_error_handler`` and
    are not raised further.
    """
    disabled: Sequence[str] = tuple(disable_logging_for_paths or ())

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            start = exchange.start_time if exchange.start_time is not None else time.monotonic()
            root_path = exchange.root_path
            request = exchange.request

            request_logger = _RequestLogger(logger, {"trace": exchange.trace})
            name = request.path.replace(root_path, "") if root_path else request.path
            name = name.replace("/", "")
            exchange.logger = _RequestLogger(
                logger.getChild(name) if name else logger, {"trace": exchange.trace}
            )

            error: Exception | None = None
            try:
                next_handler(exchange)
            except Exception as exc:
                error = exc
                http_error_handler(exc, exchange)

            uri = _request_uri(exchange)
            if any(uri == f"{root_path}{path}" for path in disabled):
                return

            elapsed = time.monotonic() - start
            fields = {
                "remote_ip": _real_ip(exchange),
                "host": request.host,
                "uri": uri,
                "method": request.method,
                "path": request.path or "/",
                "referer": request.referrer or "",
                "user_agent": request.headers.get("User-Agent", ""),
                "status": exchange.status if exchange.status is not None else 200,
                "latency": int(elapsed * 1e9),
                "latency_human": _human(elapsed),
                "bytes_in": request.content_length or 0,
                "bytes_out": exchange.size,
            }
            if error is not None:
                request_logger.error(str(error), extra=fields)
            else:
                request_logger.info("request handled", extra=fields)

        return handler

    return middleware


def _caused_by(err: BaseException, kind: type[BaseException]) -> bool:
    return any(isinstance(item, kind) for item in _chain(err))


def context_middleware(timeout: timedelta | float) -> Middleware:
    """Build the request Context and, unless the handler goes async, send the output file.

    The context is exposed as ``exchange.context`` and its cancel function
    as ``exchange.cancel``.
    """

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            try:
                ctx = new_context(exchange, exchange.logger, timeout)
            except Exception as exc:
                raise RuntimeError(f"create request context: {exc}") from exc

            exchange.context = ctx
            exchange.cancel = ctx.cancel

            try:
                next_handler(exchange)
            except Exception as exc:
                if _caused_by(exc, AsyncProcess):
                    exchange.no_content(int(HTTPStatus.NO_CONTENT))
                    return
                ctx.cancel()
                raise

            try:
                try:
                    output_path = ctx.build_output_file()
                except Exception as exc:
                    raise RuntimeError(f"build output file: {exc}") from exc
                try:
                    exchange.attachment(output_path, ctx.output_filename(output_path))
                except Exception as exc:
                    raise RuntimeError(f"send response: {exc}") from exc
            finally:
                ctx.cancel()

        return handler

    return middleware


def hard_timeout_middleware(hard_timeout: timedelta | float) -> Middleware:
    """Give up on a handler that runs past ``hard_timeout`` with ``HardTimeoutError``."""
    seconds = _seconds(hard_timeout)

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            logger = exchange.logger
            outcome: queue.Queue[Exception | None] = queue.Queue(maxsize=1)

            def run() -> None:
                try:
                    next_handler(exchange)
                except Exception as exc:
                    outcome.put(exc)
                except BaseException as exc:  # handler aborted without an error
                    logger.debug(
                        "recovering from an abort (possible cause being a hard timeout): %r",
                        exc,
                    )
                else:
                    outcome.put(None)

            threading.Thread(target=run, daemon=True).start()

            try:
                error = outcome.get(timeout=seconds)
            except queue.Empty:
                logger.debug("hard timeout as the route handler did not timeout as expected")
                raise HardTimeoutError() from None
            if error is not None:
                raise error

        return handler

    return middleware