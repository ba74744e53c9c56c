[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "scannode"
version = "0.1.0"
description = "Scan node core: agent pool, alert batching, metrics aggregation and rate limiting for detection bots"
requires-python = ">=3.10"
dependencies = []
keywords = ["scanner", "alerts", "bots", "rate-limiting", "metrics", "bloom-filter"]
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
    "Topic :: Security",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["scannode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
