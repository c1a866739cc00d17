[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "p2pfs"
version = "0.1.0"
description = "Peer-to-peer file sharing over a local network with UDP discovery, TCP transfers and an operation log"
requires-python = ">=3.10"
dependencies = []
keywords = ["p2p", "file-sharing", "lan", "discovery", "sync", "zip", "sha256"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: X11 Applications",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
p2pfs = "p2pfs.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["p2pfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
