[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "psmharness"
version = "0.1.0"
description = "Harness pieces for proxyless and proxied service-mesh load tests: xDS snapshot handling, a test update server, pod readiness and pool scheduling."
requires-python = ">=3.10"
dependencies = []
keywords = ["load-testing", "xds", "service-mesh", "kubernetes", "benchmark"]
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
    "Topic :: Software Development :: Testing",
    "Topic :: System :: Benchmark",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
psmharness-xds = "psmharness.xds_main:main"

[tool.hatch.build.targets.wheel]
packages = ["psmharness"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
