#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "Restrict origin server ports to Tencent Cloud EdgeOne edge nodes with iptables"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="edgeone-origin-protection",
    version="1.0.0",
    description="Restrict origin server ports to Tencent Cloud EdgeOne edge nodes with iptables",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="EdgeOne Origin Protection",
    py_modules=[
        "edgeone_config",
        "edgeone_errors",
        "edgeone_ips",
        "edgeone_rules",
        "edgeone_state",
        "edgeone_persist",
        "edgeone_protect",
    ],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "edgeone-protect=edgeone_protect:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Networking :: Firewalls",
        "Topic :: Security",
    ],
)
