"""The request being handled together with the response built for it."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any

from werkzeug.datastructures import Headers
from werkzeug.exceptions import NotFound
from werkzeug.wrappers import Request, Response

TEXT_PLAIN_UTF8 = "text/plain; charset=UTF-8"
_OCTET_STREAM = "application/octet-stream"


def _content_type_for(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed is None:
        return _OCTET_STREAM
    if guessed.startswith("text/"):
        return f"{guessed}; charset=utf-8"
    return guessed


def _quote(name: str) -> str:
    return name.replace("\\", "\\\\").replace('"', '\\"')


class Exchange:
    """One request in flight, the values middlewares attach to it, and its response.

    Middlewares fill in ``start_time``, ``root_path``, ``trace``,
    ``trace_header``, ``logger``, ``context`` and ``cancel``; anything else
    goes into ``state``.
    """

    def __init__(self, request: Request) -> None:
        self.request = request
        self.response_headers = Headers()
        self.status: int | None = None
        self.body = b""
        self.start_time: float | None = None
        self.root_path = "/"
        self.trace = ""
        self.trace_header = ""
        self.logger: logging.Logger = logging.getLogger("formgate")
        self.context: Any = None
        self.cancel: Any = None
        self.state: dict[str, Any] = {}

    @property
    def committed(self) -> bool:
        """Whether a response has already been written."""
        return self.status is not None

    @property
    def size(self) -> int:
        """Number of bytes in the response body."""
        return len(self.body)

    def _commit(self, status: int, body: bytes) -> None:
        if self.committed:
            raise RuntimeError("response already committed")
        self.status = status
        self.body = body

    def string(self, status: int, message: str) -> None:
        """Respond with a plain text body."""
        if self.committed:
            raise RuntimeError("response already committed")
        self.response_headers.setdefault("Content-Type", TEXT_PLAIN_UTF8)
        self._commit(status, message.encode("utf-8"))

    def no_content(self, status: int) -> None:
        """Respond with a status and no body."""
        self._commit(status, b"")

    def attachment(self, path: str | Path, filename: str) -> None:
        """Respond with the content of ``path`` as a download named ``filename``.

        Raises ``NotFound`` if ``path`` is not a file.
        """
        if self.committed:
            raise RuntimeError("response already committed")
        file_path = Path(path)
        if not file_path.is_file():
            raise NotFound()
        data = file_path.read_bytes()
        self.response_headers.set(
            "Content-Disposition", f'attachment; filename="{_quote(filename)}"'
        )
        self.response_headers.setdefault("Content-Type", _content_type_for(file_path))
        self._commit(200, data)

    def to_response(self) -> Response:
        """Build the WSGI response."""
        return Response(
            self.body,
            status=self.status if self.status is not None else 200,
            headers=Headers(self.response_headers),
        )