[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "amtflow"
version = "0.1.0"
description = "RabbitMQ message flows with retry queues, dead-lettering and a bounded worker pool"
requires-python = ">=3.11"
keywords = ["rabbitmq", "amqp", "queue", "retry", "dead-letter", "consumer", "etcd"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pika",
    "pyyaml",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["amtflow"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
