[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "saltchannel"
version = "0.1.0"
description = "Salt Channel v2: a secure channel protocol with X25519, XSalsa20-Poly1305 and Ed25519"
requires-python = ">=3.10"
dependencies = [
    "pynacl",
]
keywords = [
    "salt-channel",
    "secure-channel",
    "handshake",
    "nacl",
    "x25519",
    "ed25519",
    "encryption",
]
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
    "Topic :: Security :: Cryptography",
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["saltchannel"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
