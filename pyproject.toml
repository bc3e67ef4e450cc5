[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "formgate"
version = "0.1.0"
description = "An HTTP server for multipart/form-data routes, with pluggable routes, middlewares and health checks"
requires-python = ">=3.10"
keywords = ["http", "server", "multipart", "form-data", "wsgi", "middleware"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
formgate = "formgate.api:main"

[tool.hatch.build.targets.wheel]
packages = ["formgate"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
