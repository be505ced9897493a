[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "eclkit"
version = "12.0.0"
description = "Reader and writer for binary ECL enemy-script files of the Touhou Project games"
requires-python = ">=3.10"
dependencies = []
keywords = ["ecl", "touhou", "disassembler", "binary-format", "game-modding", "scripts"]
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
    "Topic :: Software Development :: Disassemblers",
    "Topic :: Games/Entertainment",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["eclkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
