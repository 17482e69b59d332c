[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatrelay"
version = "1.25.2.dev0"
description = "Relay messages between chat networks through configurable gateways"
requires-python = ">=3.11"
dependencies = []
keywords = ["chat", "bridge", "relay", "gateway", "webhook", "mattermost", "rocketchat"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
chatrelay = "chatrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["chatrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
