[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pudding"
version = "0.1.0"
description = "Delay-message scheduling on time-sliced storage, with cron and webhook triggers"
requires-python = ">=3.10"
keywords = ["delay queue", "scheduler", "cron", "webhook", "message broker"]
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
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "msgpack",
    "sqlalchemy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["pudding"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
