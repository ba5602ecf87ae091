[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "canopen_master"
version = "0.1.0"
description = "CANopen master: object dictionaries, EDS parsing, SDO/PDO transfers, NMT node control and SYNC layers"
requires-python = ">=3.10"
dependencies = []
keywords = ["canopen", "can", "fieldbus", "sdo", "pdo", "nmt", "eds", "object-dictionary"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: CANopen",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["canopen_master"]

[tool.pytest.ini_options]
addopts = "-ra"
