[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kelsync"
version = "0.1.0"
description = "Key event log types and gossip synchronisation between key event log services"
requires-python = ">=3.10"
keywords = ["key event log", "kel", "gossip", "synchronisation", "self-addressing", "identity"]
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
    "Framework :: AsyncIO",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]
dependencies = [
    "redis>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["kelsync"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
disallow_untyped_defs = true
