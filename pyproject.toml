[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "roverkit"
version = "0.1.0"
description = "Callbacks, subscribers, a background runtime and depth-to-obstacle mapping for mobile robots"
requires-python = ">=3.10"
keywords = ["robotics", "point cloud", "occupancy grid", "obstacle map", "callbacks", "dbscan", "clustering"]
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
    "Framework :: AsyncIO",
    "Topic :: Scientific/Engineering",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "numpy",
    "scipy",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["roverkit"]

[tool.pytest.ini_options]
addopts = "-ra"
