[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chainnode"
version = "0.1.0"
description = "Proof-of-space and proof-of-time blockchain node library: blocks, transactions, UTXO ledger, block storage, fork choice and VDF verification."
requires-python = ">=3.10"
keywords = ["blockchain", "utxo", "proof-of-space", "vdf", "ledger", "fork-choice"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Office/Business :: Financial",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["chainnode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
