#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "nginx allow-list generator from remote IP range lists"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="nginx-allowlist-generator",
    version="1.0.0",
    description="nginx allow-list generator from remote IP range lists",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="nginx Allow-list Generator",
    py_modules=["generate_allowlist"],
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
            "nginx-allowlist=generate_allowlist:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: System :: Networking :: Firewalls",
    ],
)
