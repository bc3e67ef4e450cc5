import logging
import os
import zipfile
from datetime import timedelta
from pathlib import Path

import pytest
from werkzeug.datastructures import FileStorage
from werkzeug.test import EnvironBuilder, encode_multipart
from werkzeug.wrappers import Request

from formgate.context import (
    Context,
    ContextAlreadyClosedError,
    OutOfBoundsOutputPathError,
    new_context,
)
from formgate.errors import WrappedHTTPError
from formgate.exchange import Exchange
from formgate.formdata import FormData


def _exchange(**kwargs):
    builder = EnvironBuilder(**kwargs)
    try:
        return Exchange(Request(builder.get_environ()))
    finally:
        builder.close()


def _multipart_exchange(files=None, headers=None):
    values = {"foo": "foo"}
    for name, (filename, content) in (files or {}).items():
        values[name] = FileStorage(stream=__import_bytes(content), filename=filename, name=name)
    boundary, body = encode_multipart(values)
    return _exchange(
        method="POST",
        path="/",
        data=body,
        content_type=f"multipart/form-data; boundary={boundary}",
        headers=headers,
    )


def __import_bytes(content):
    import io

    return io.BytesIO(content)


LOGGER = logging.getLogger("formgate.tests.context")


@pytest.fixture
def samples(tmp_path):
    text = tmp_path / "sample1.txt"
    text.write_text("foo")
    pdf = tmp_path / "sample2.pdf"
    pdf.write_bytes(b"%PDF-1.4\n%%EOF\n")
    return text, pdf


@pytest.mark.parametrize(
    ("kwargs", "status"),
    [
        ({"method": "POST", "path": "/"}, 415),
        ({"method": "POST", "path": "/", "content_type": "multipart/form-data"}, 415),
        (
            {
                "method": "POST",
                "path": "/",
                "content_type": "multipart/form-data; boundary=abc",
            },
            400,
        ),
    ],
)
def test_new_context_rejects_bad_requests(kwargs, status):
    exchange = _exchange(**kwargs)
    with pytest.raises(WrappedHTTPError) as info:
        new_context(exchange, LOGGER, timedelta(seconds=10))
    assert info.value.http_error()[0] == status


def test_new_context_parses_values_and_files():
    exchange = _multipart_exchange(files={"foo.txt": ("foo.txt", b"foo")})
    ctx = new_context(exchange, LOGGER, timedelta(seconds=10))
    try:
        assert ctx.values == {"foo": ["foo"]}
        assert list(ctx.files) == ["foo.txt"]
        assert ctx.files["foo.txt"] == f"{ctx.dir_path}/foo.txt"
        assert Path(ctx.files["foo.txt"]).read_bytes() == b"foo"
        assert ctx.exchange is exchange
    finally:
        ctx.cancel()
    assert not os.path.exists(ctx.dir_path)
    assert ctx.cancelled
    ctx.cancel()
    assert ctx.cancelled


def test_new_context_normalizes_file_names():
    exchange = _multipart_exchange(
        files={"a": ("../../caf\u00e9.txt", b"x"), "b": ("dir/evil.txt", b"y")}
    )
    ctx = new_context(exchange, LOGGER, 10)
    try:
        assert sorted(ctx.files) == ["cafe.txt", "evil.txt"]
        for path in ctx.files.values():
            assert Path(path).parent == Path(ctx.dir_path)
    finally:
        ctx.cancel()


def test_form_data_shares_values_and_files():
    ctx = Context(values={"foo": ["foo"]}, files={"foo.txt": "/foo.txt"})
    form = ctx.form_data()
    assert isinstance(form, FormData)
    assert form.values == {"foo": ["foo"]}
    assert form.files == {"foo.txt": "/foo.txt"}
    assert form.errors == []


def test_generate_path_is_in_working_directory():
    ctx = Context(dir_path="/foo")
    path = ctx.generate_path(".pdf")
    assert path.startswith("/foo/")
    assert path.endswith(".pdf")
    assert ctx.generate_path(".pdf") != path


def test_add_output_paths_when_cancelled():
    ctx = Context()
    ctx.cancelled = True
    with pytest.raises(ContextAlreadyClosedError):
        ctx.add_output_paths("")
    assert ctx.output_paths == []


def test_add_output_paths_out_of_bounds():
    ctx = Context(dir_path="/foo")
    with pytest.raises(OutOfBoundsOutputPathError):
        ctx.add_output_paths("/bar/foo.txt")
    assert ctx.output_paths == []


def test_add_output_paths_within_bounds():
    ctx = Context(dir_path="/foo")
    ctx.add_output_paths("/foo/foo.txt")
    assert ctx.output_paths == ["/foo/foo.txt"]


def test_build_output_file_when_cancelled(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    ctx.cancelled = True
    with pytest.raises(ContextAlreadyClosedError):
        ctx.build_output_file()


def test_build_output_file_without_output(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    with pytest.raises(ValueError, match="no output path"):
        ctx.build_output_file()


def test_build_output_file_single(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    ctx.output_paths = ["foo.txt"]
    assert ctx.build_output_file() == "foo.txt"


def test_build_output_file_missing_files(tmp_path):
    ctx = Context(dir_path=str(tmp_path))
    ctx.output_paths = ["foo.txt", "foo.pdf"]
    with pytest.raises(FileNotFoundError):
        ctx.build_output_file()
    assert list(tmp_path.iterdir()) == []


def test_build_output_file_archive(tmp_path, samples):
    text, pdf = samples
    work = tmp_path / "work"
    work.mkdir()
    ctx = Context(dir_path=str(work))
    ctx.output_paths = [str(text), str(text), str(pdf)]
    archive = ctx.build_output_file()
    assert archive.startswith(str(work))
    assert archive.endswith(".zip")
    with zipfile.ZipFile(archive) as opened:
        assert opened.namelist() == ["sample1.txt", "sample1.txt", "sample2.pdf"]
        assert opened.read("sample2.pdf") == pdf.read_bytes()


@pytest.mark.parametrize(
    ("headers", "output_path", "expected"),
    [
        ({"Gotenberg-Output-Filename": "foo"}, "/foo/bar.txt", "foo.txt"),
        ({}, "/foo/foo.txt", "foo.txt"),
    ],
)
def test_output_filename(headers, output_path, expected):
    ctx = Context(exchange=_exchange(method="GET", path="/foo", headers=headers))
    assert ctx.output_filename(output_path) == expected


def test_cancel_marks_done():
    ctx = Context(timeout=timedelta(seconds=10))
    assert not ctx.done
    ctx.cancel()
    assert ctx.done
    assert not ctx.cancelled


def test_expired_deadline_is_done():
    assert Context(timeout=0).done