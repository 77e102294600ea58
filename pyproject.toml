[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lshbridge"
version = "0.1.0"
description = "Serial framing, controller messages, actuator command batching, sync phases and MQTT publishing for a home-automation bridge"
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = ["home-automation", "mqtt", "homie", "serial", "msgpack", "slip", "bridge"]
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
    "Topic :: Home Automation",
    "Topic :: Communications",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lshbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
