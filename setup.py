import re

from setuptools import find_packages, setup

version = re.search(r'^__version__\s*=\s*"(.*)"', open("simplescheduler/__init__.py").read(), re.M).group(1)

setup(
    name="simple-scheduler",
    version=version,
    description="In-process scheduler for one-time, repeating and weekly events with crash-safe persistence",
    author="Cognite AS",
    packages=find_packages(include=["simplescheduler", "simplescheduler.*"]),
    install_requires=[
        "arrow",
        "prometheus-client",
        "pydantic>=2",
        "pyhumps",
        "pyyaml",
        "typing-extensions",
    ],
    extras_require={"tests": ["pytest"]},
    python_requires=">=3.10",
)
