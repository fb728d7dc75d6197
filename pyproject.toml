[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "reactorkit"
version = "0.1.0"
description = "A small reactor-style networking toolkit: event loops, TCP and UDP channels, coroutines and lightweight Redis examples."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "networking",
    "event-loop",
    "reactor",
    "epoll",
    "tcp",
    "udp",
    "coroutine",
    "redis",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
reactorkit-redis-server = "reactorkit.redis_server:main"
reactorkit-redis-client = "reactorkit.redis_client:main"
reactorkit-redis-coroutine-client = "reactorkit.redis_coroutine_client:main"

[tool.hatch.build.targets.wheel]
packages = ["reactorkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
