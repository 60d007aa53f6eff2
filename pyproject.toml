[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ssrelay"
version = "0.1.0"
description = "An asyncio TCP relay server for the shadowsocks stream-cipher protocol"
requires-python = ">=3.10"
keywords = ["proxy", "relay", "shadowsocks", "stream cipher", "asyncio", "sni"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "pycryptodome>=3.15",
    "cryptography>=38",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[project.scripts]
ssrelay = "ssrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ssrelay"]

[tool.hatch.build.targets.sdist]
include = ["ssrelay", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
