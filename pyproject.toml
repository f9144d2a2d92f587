[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ktp"
version = "0.1.0"
description = "KTP sockets: acknowledged, windowed message delivery with retransmission over UDP"
requires-python = ">=3.10"
dependencies = []
keywords = ["udp", "reliable", "sliding-window", "retransmission", "protocol", "networking"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ktp-daemon = "ktp.daemon:main"
ktp-send = "ktp.sender:main"
ktp-receive = "ktp.receiver:main"

[tool.hatch.build.targets.wheel]
packages = ["ktp"]

[tool.pytest.ini_options]
addopts = "-ra"
