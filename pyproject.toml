[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vamana"
version = "0.1.0"
description = "In-memory graph-based approximate nearest neighbour index with inserts, deletes and graph persistence"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = ["nearest-neighbour", "ann", "vector-search", "graph-index", "vamana"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Information Analysis",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vamana"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
