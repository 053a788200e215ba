[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sophonminer"
version = "1.18.0"
description = "Building blocks for a Filecoin block-producing miner: configuration, repository, slash filter, mining recorder and miner manager"
requires-python = ">=3.11"
keywords = [
    "filecoin",
    "miner",
    "slash-filter",
    "consensus",
    "blockchain",
    "datastore",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]
dependencies = [
    "tomli-w>=1.0",
    "sqlalchemy>=2.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[tool.hatch.build.targets.wheel]
packages = ["sophonminer"]

[tool.hatch.build.targets.sdist]
include = ["sophonminer", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
