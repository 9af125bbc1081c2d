#!/usr/bin/env python3
import os
from setuptools import setup

app_dir = os.path.dirname(os.path.abspath(__file__))


def read_requirements(filename):
    """Read requirement lines, skipping comments and nested -r includes"""
    path = os.path.join(app_dir, "req", filename)
    with open(path) as f:
        return [
            line.strip() for line in f
            if line.strip() and not line.startswith(("#", "-r"))
        ]


setup(
    name="gpt-relay-server",
    version="0.1.0",
    description="WebSocket relay between the desktop GPT app and browser viewers",
    packages=["relay_server", "utils", "config"],
    package_data={"config": ["*.json"]},
    python_requires=">=3.10",
    install_requires=read_requirements("requirements.txt"),
    extras_require={
        "test": read_requirements("requirements-test.txt"),
    },
    entry_points={
        "console_scripts": [
            "relay-server=relay_server.server:main",
        ],
    },
)
