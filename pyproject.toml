[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rigoros"
version = "0.1.0"
description = "Memory allocators, paging, terminal and shell of a small x86-64 kernel, run on simulated hardware"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kernel",
    "operating-system",
    "buddy-allocator",
    "slab-allocator",
    "paging",
    "ring-buffer",
    "terminal",
    "shell",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rigoros = "rigoros.kernel:main"

[tool.hatch.build.targets.wheel]
packages = ["rigoros"]

[tool.pytest.ini_options]
addopts = "-ra"
