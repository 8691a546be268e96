[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vslamtools"
version = "0.1.0"
description = "Visual SLAM building blocks: bundle adjustment on BAL datasets, Lucas-Kanade optical flow and direct pose estimation"
requires-python = ">=3.10"
keywords = [
    "slam",
    "visual-odometry",
    "bundle-adjustment",
    "optical-flow",
    "lucas-kanade",
    "direct-method",
    "computer-vision",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
    "numpy",
]

[project.scripts]
vslam-bundle-adjustment = "vslamtools.bundle_adjustment:main"
vslam-graph-ba = "vslamtools.graph_ba:main"
vslam-optical-flow = "vslamtools.optical_flow:main"
vslam-direct-method = "vslamtools.direct_method:main"

[tool.hatch.build.targets.wheel]
packages = ["vslamtools"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
