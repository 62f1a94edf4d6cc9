[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "tbridge"
version = "0.1.0"
description = "Directory-server client, station list parser, host cache, access control list and event hooks for an amateur-radio VoIP conference bridge"
requires-python = ">=3.10"
dependencies = []
keywords = ["ham radio", "voip", "conference", "directory", "station list", "acl"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Ham Radio",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["tbridge*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
