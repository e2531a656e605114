[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "helixchain"
version = "1.0.0"
description = "Blockchain node components: governance, wire messages, peer connections, logging and metrics."
requires-python = ">=3.10"
dependencies = [
    "pycryptodome",
]
keywords = ["blockchain", "governance", "p2p", "metrics", "alerting", "keccak"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["helixchain"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
