[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "funken"
version = "0.1.0"
description = "Group chat backend core: configuration, JSON logging, MongoDB repositories for groups, members, NG filters and messages, and JetStream pub/sub helpers."
requires-python = ">=3.10"
keywords = ["chat", "groups", "messaging", "mongodb", "jetstream", "pubsub", "logging"]
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
    "Topic :: Communications :: Chat",
    "Topic :: Database :: Front-Ends",
]
dependencies = [
    "pymongo",
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
funken = "funken.app:main"

[tool.hatch.build.targets.wheel]
packages = ["funken"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
