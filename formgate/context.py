"""The working state of one multipart/form-data request."""

from __future__ import annotations

import io
import logging
import shutil
import tempfile
import time
import unicodedata
import uuid
import warnings
import zipfile
from datetime import timedelta
from http import HTTPStatus
from pathlib import Path
from typing import Mapping, MutableMapping

from werkzeug.datastructures import MultiDict
from werkzeug.formparser import FormDataParser

from .errors import SentinelHTTPError, wrap_error
from .exchange import Exchange
from .formdata import FormData

OUTPUT_FILENAME_HEADER = "Gotenberg-Output-Filename"

# Files in these formats are already compressed; they are stored as is.
_COMPRESSED_EXTENSIONS = frozenset(
    {
        ".7z", ".avi", ".br", ".bz2", ".cab", ".docx", ".gif", ".gz", ".jar",
        ".jpeg", ".jpg", ".lz", ".lz4", ".lzma", ".m4v", ".mov", ".mp3", ".mp4",
        ".mpeg", ".mpg", ".png", ".pptx", ".rar", ".sz", ".tbz2", ".tgz", ".tsz",
        ".txz", ".xlsx", ".xz", ".zip", ".zipx",
    }
)


class ContextAlreadyClosedError(Exception):
    """The context has already been cancelled."""

    def __init__(self, message: str = "context already closed") -> None:
        super().__init__(message)


class OutOfBoundsOutputPathError(Exception):
    """An output path lies outside the context's working directory."""

    def __init__(
        self, message: str = "output path is not within context's working directory"
    ) -> None:
        super().__init__(message)


def _seconds(timeout: timedelta | float | None) -> float | None:
    if timeout is None:
        return None
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


def _base(path: str) -> str:
    """Return the last element of a slash-separated path."""
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _ext(path: str) -> str:
    """Return the extension of the last element of ``path``, dot included."""
    name = _base(path)
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def _normalize_filename(raw: str) -> str:
    """Strip directories and combining marks from an uploaded file name."""
    decomposed = unicodedata.normalize("NFD", _base(raw))
    stripped = "".join(c for c in decomposed if unicodedata.category(c) != "Mn")
    name = unicodedata.normalize("NFC", stripped)
    if name in {".", "..", "/"}:
        raise ValueError(f"invalid file name '{raw}'")
    return name


def _add_to_archive(archive: zipfile.ZipFile, source: Path, arcname: str) -> None:
    compression = (
        zipfile.ZIP_STORED
        if source.suffix.lower() in _COMPRESSED_EXTENSIONS
        else zipfile.ZIP_DEFLATED
    )
    archive.write(source, arcname, compress_type=compression)


def _archive(paths: list[str], archive_path: str) -> None:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="Duplicate name", category=UserWarning)
        with zipfile.ZipFile(archive_path, "x", zipfile.ZIP_DEFLATED) as archive:
            for raw in paths:
                source = Path(raw)
                if source.is_dir():
                    for item in sorted(source.rglob("*")):
                        if item.is_file():
                            _add_to_archive(
                                archive, item, item.relative_to(source.parent).as_posix()
                            )
                else:
                    _add_to_archive(archive, source, source.name)


class Context:
    """Form values, uploaded files and output paths of one request.

    Files live in ``dir_path``, which ``cancel`` removes.
    """

    def __init__(
        self,
        dir_path: str = "",
        values: MutableMapping[str, list[str]] | None = None,
        files: MutableMapping[str, str] | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        exchange: Exchange | None = None,
        timeout: timedelta | float | None = None,
    ) -> None:
        self.dir_path = dir_path
        self.values = values if values is not None else {}
        self.files = files if files is not None else {}
        self.logger = logger if logger is not None else logging.getLogger("formgate")
        self.exchange = exchange
        seconds = _seconds(timeout)
        self.deadline = None if seconds is None else time.monotonic() + seconds
        self.output_paths: list[str] = []
        self.cancelled = False
        self._stopped = False

    @property
    def done(self) -> bool:
        """Whether the processing was cancelled or its deadline has passed."""
        if self._stopped:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def form_data(self) -> FormData:
        """Return a FormData over the request's values and files."""
        return FormData(self.values, self.files)

    def generate_path(self, extension: str) -> str:
        """Return a fresh path in the working directory; no file is created."""
        return f"{self.dir_path}/{uuid.uuid4()}{extension}"

    def add_output_paths(self, *args: str) -> None:
        """Register paths from which the output file will be built."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        for path in args:
            if not path.startswith(self.dir_path):
                raise OutOfBoundsOutputPathError()
            self.output_paths.append(path)

    def build_output_file(self) -> str:
        """Return the single output path, or a zip archive of all of them."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        if not self.output_paths:
            raise ValueError("no output path")
        if len(self.output_paths) == 1:
            self.logger.debug(
                "only one output file '%s', skip archive creation", self.output_paths[0]
            )
            return self.output_paths[0]

        archive_path = self.generate_path(".zip")
        try:
            _archive(self.output_paths, archive_path)
        except BaseException:
            Path(archive_path).unlink(missing_ok=True)
            raise
        self.logger.debug("archive '%s' created", archive_path)
        return archive_path

    def output_filename(self, output_path: str) -> str:
        """Return the download name: the header's value plus the extension, or the base name."""
        filename = ""
        if self.exchange is not None:
            filename = self.exchange.request.headers.get(OUTPUT_FILENAME_HEADER, "")
        if not filename:
            return _base(output_path)
        return f"{filename}{_ext(output_path)}"

    def cancel(self) -> None:
        """Stop the processing and remove the working directory. Safe to call twice."""
        if self.cancelled:
            return
        self._stopped = True
        if not self.dir_path:
            return
        try:
            shutil.rmtree(self.dir_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.error("remove context's working directory: %s", exc)
            return
        self.logger.debug("'%s' removed", self.dir_path)
        self.cancelled = True


def _parse_multipart(exchange: Exchange) -> tuple[MultiDict, MultiDict]:
    request = exchange.request
    if request.mimetype != "multipart/form-data":
        raise wrap_error(
            ValueError("get multipart form: request Content-Type isn't multipart/form-data"),
            SentinelHTTPError(
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
                "Invalid 'Content-Type' header value: want 'multipart/form-data'",
            ),
        )
    options: Mapping[str, str] = request.mimetype_params
    boundary = options.get("boundary", "")
    if not boundary:
        raise wrap_error(
            ValueError("get multipart form: no multipart boundary param in Content-Type"),
            SentinelHTTPError(
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
                "Invalid 'Content-Type' header value: no boundary",
            ),
        )
    body = request.get_data(cache=True)
    try:
        if b"--" + boundary.encode("latin-1") + b"--" not in body:
            raise ValueError("unexpected EOF")
        parser = FormDataParser(cls=MultiDict, silent=False)
        _, form, files = parser.parse(
            io.BytesIO(body), request.mimetype, len(body), dict(options)
        )
    except ValueError as exc:
        raise wrap_error(
            ValueError(f"get multipart form: {exc}"),
            SentinelHTTPError(
                HTTPStatus.BAD_REQUEST,
                "Malformed body: it does not match the 'Content-Type' header boundaries",
            ),
        )
    return form, files


def new_context(
    exchange: Exchange,
    logger: logging.Logger | logging.LoggerAdapter,
    timeout: timedelta | float | None,
) -> Context:
    """Parse the multipart request of ``exchange`` and copy its files to disk.

    Raises a ``WrappedHTTPError`` (415 or 400) when the request is not a
    well-formed multipart/form-data body.
    """
    form, uploads = _parse_multipart(exchange)

    values: dict[str, list[str]] = {key: list(items) for key, items in form.lists()}
    ctx = Context(
        dir_path=tempfile.mkdtemp(prefix="formgate-"),
        values=values,
        files={},
        logger=logger,
        exchange=exchange,
        timeout=timeout,
    )

    try:
        for key, storage in uploads.items(multi=True):
            with storage:
                if not storage.filename:
                    values.setdefault(key, []).append(
                        storage.read().decode("utf-8", "replace")
                    )
                    continue
                filename = _normalize_filename(storage.filename)
                path = f"{ctx.dir_path}/{filename}"
                storage.save(path)
                ctx.files[filename] = path
    except (OSError, ValueError) as exc:
        ctx.cancel()
        raise RuntimeError(f"copy to disk: {exc}") from exc

    logger.debug("form data values: %s", ctx.values)
    logger.debug("form data files: %s", ctx.files)
    return ctx