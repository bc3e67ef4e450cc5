"""Typed access to the values and files of a multipart form."""

from __future__ import annotations

from datetime import timedelta
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

from .errors import SentinelHTTPError, wrap_error
from .values import parse_bool, parse_duration, parse_float, parse_int

T = TypeVar("T")


def _extension(name: str) -> str:
    """Return the extension of a file name, dot included, or ''."""
    stem, dot, suffix = name.rpartition(".")
    if not dot or "/" in suffix:
        return ""
    return dot + suffix


def _format_list(items: Iterable[str]) -> str:
    return "[" + " ".join(items) + "]"


class FormData:
    """Reads typed values and uploaded files out of a form.

    Problems are collected in ``errors`` rather than raised one by one;
    ``validate`` then raises them all at once. Accessors return ``None``
    when the value is required but missing, or present but invalid.
    """

    def __init__(
        self,
        values: Mapping[str, Sequence[str]] | None = None,
        files: Mapping[str, str] | None = None,
    ) -> None:
        self.values = values if values is not None else {}
        self.files = files if files is not None else {}
        self.errors: list[str] = []

    def validate(self) -> None:
        """Raise a 400 ``WrappedHTTPError`` listing every collected error."""
        if not self.errors:
            return None
        detail = "; ".join(self.errors)
        raise wrap_error(
            ValueError(detail),
            SentinelHTTPError(HTTPStatus.BAD_REQUEST, f"Invalid form data: {detail}"),
        )

    def _raw(self, key: str) -> str | None:
        found = self.values.get(key)
        if not found or found[0] == "":
            return None
        return found[0]

    def _invalid(self, key: str, raw: str, exc: BaseException) -> None:
        self.errors.append(f"form value '{key}' is invalid (got '{raw}', resulting to {exc})")

    def _parse(self, key: str, raw: str, parse: Callable[[str], T]) -> T | None:
        try:
            return parse(raw)
        except ValueError as exc:
            self._invalid(key, raw, exc)
            return None

    def _value(self, key: str, parse: Callable[[str], T], default: T) -> T | None:
        raw = self._raw(key)
        if raw is None:
            return default
        return self._parse(key, raw, parse)

    def _mandatory(self, key: str, parse: Callable[[str], T]) -> T | None:
        raw = self._raw(key)
        if raw is None:
            self.errors.append(f"form value '{key}' is required")
            return None
        return self._parse(key, raw, parse)

    def string(self, key: str, default: str = "") -> str:
        """Return the value of ``key``, or ``default`` if missing or empty."""
        return self._value(key, str, default)

    def mandatory_string(self, key: str) -> str | None:
        """Return the value of ``key``; record an error if missing or empty."""
        return self._mandatory(key, str)

    def boolean(self, key: str, default: bool = False) -> bool | None:
        """Return ``key`` as a bool, or ``default`` if missing or empty."""
        return self._value(key, parse_bool, default)

    def mandatory_boolean(self, key: str) -> bool | None:
        """Return ``key`` as a bool; record an error if missing or empty."""
        return self._mandatory(key, parse_bool)

    def integer(self, key: str, default: int = 0) -> int | None:
        """Return ``key`` as an int, or ``default`` if missing or empty."""
        return self._value(key, parse_int, default)

    def mandatory_integer(self, key: str) -> int | None:
        """Return ``key`` as an int; record an error if missing or empty."""
        return self._mandatory(key, parse_int)

    def floating(self, key: str, default: float = 0.0) -> float | None:
        """Return ``key`` as a float, or ``default`` if missing or empty."""
        return self._value(key, parse_float, default)

    def mandatory_floating(self, key: str) -> float | None:
        """Return ``key`` as a float; record an error if missing or empty."""
        return self._mandatory(key, parse_float)

    def duration(self, key: str, default: timedelta = timedelta(0)) -> timedelta | None:
        """Return ``key`` as a duration, or ``default`` if missing or empty."""
        return self._value(key, parse_duration, default)

    def mandatory_duration(self, key: str) -> timedelta | None:
        """Return ``key`` as a duration; record an error if missing or empty."""
        return self._mandatory(key, parse_duration)

    def _assign(self, key: str, raw: str, assign: Callable[[str], Any]) -> Any:
        try:
            return assign(raw)
        except Exception as exc:  # any failure of the caller's converter
            self._invalid(key, raw, exc)
            return None

    def custom(self, key: str, assign: Callable[[str], Any]) -> Any:
        """Pass the value of ``key`` ('' if missing) to ``assign`` and return its result."""
        return self._assign(key, self._raw(key) or "", assign)

    def mandatory_custom(self, key: str, assign: Callable[[str], Any]) -> Any:
        """Like ``custom``, but record an error if the value is missing or empty."""
        raw = self._raw(key)
        if raw is None:
            self.errors.append(f"form value '{key}' is required")
            return None
        return self._assign(key, raw, assign)

    def path(self, filename: str) -> str | None:
        """Return the path of the uploaded file ``filename``, if any.

        The extension of uploaded names is compared in lower case.
        """
        for name, file_path in self.files.items():
            extension = _extension(name)
            lowered = name[: len(name) - len(extension)] + extension.lower()
            if filename in (name, lowered):
                return file_path
        return None

    def mandatory_path(self, filename: str) -> str | None:
        """Return the path of ``filename``; record an error if it was not uploaded."""
        found = self.path(filename)
        if found is None:
            self.errors.append(f"form file '{filename}' is required")
        return found

    def _read(self, file_path: str, filename: str) -> str | None:
        try:
            return Path(file_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self.errors.append(f"form file '{filename}' is invalid ({exc})")
            return None

    def content(self, filename: str, default: str = "") -> str | None:
        """Return the text of ``filename``, or ``default`` if it was not uploaded."""
        found = self.path(filename)
        if found is None:
            return default
        return self._read(found, filename)

    def mandatory_content(self, filename: str) -> str | None:
        """Return the text of ``filename``; record an error if it was not uploaded."""
        found = self.mandatory_path(filename)
        if found is None:
            return None
        return self._read(found, filename)

    def paths(self, extensions: Sequence[str]) -> list[str]:
        """Return the sorted paths of uploaded files with one of ``extensions``."""
        return sorted(
            file_path
            for name, file_path in self.files.items()
            for extension in extensions
            if _extension(name).lower() == extension
        )

    def mandatory_paths(self, extensions: Sequence[str]) -> list[str]:
        """Like ``paths``, but record an error if no file matches."""
        found = self.paths(extensions)
        if not found:
            self.errors.append(
                f"no form file found for extensions: {_format_list(extensions)}"
            )
        return found