[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orderpay"
version = "0.1.0"
description = "Payments service with account storage, transactional inbox/outbox messaging and a WSGI API"
requires-python = ">=3.10"
keywords = ["payments", "accounts", "outbox", "inbox", "wsgi", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
    "Topic :: Office/Business :: Financial",
]
dependencies = [
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["orderpay"]

[tool.pytest.ini_options]
addopts = "-ra"
