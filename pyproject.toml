[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "userstack"
version = "0.1.0"
description = "A small user-space IPv4 network stack: devices, Ethernet, ARP, IPv4, ICMP and UDP"
requires-python = ">=3.10"
dependencies = []
keywords = ["networking", "protocol-stack", "ethernet", "arp", "ipv4", "icmp", "udp", "tap", "loopback"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["userstack"]

[tool.hatch.build.targets.sdist]
include = ["userstack", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
