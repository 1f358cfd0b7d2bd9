#!/usr/bin/env python3
"""
Setup script for pathfit (traced path geometry and cross-section circle fitting)
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

requirements = [
    "numpy>=1.20.0",
    "scipy>=1.5.0",
    "trimesh>=3.15.0",
    "networkx>=2.6",
]

setup(
    name="pathfit",
    version="0.1.0",
    author="Jordan Fox",
    author_email="jmrfox@example.com",
    description="Traced path geometry, join topology and cross-section circle fitting for 3D image volumes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/jmrfox/pathfit",
    packages=find_packages(include=["pathfit", "pathfit.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Biology",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=6.0",
            "pytest-cov",
            "black",
            "flake8",
            "mypy",
        ],
        "test": [
            "pytest>=6.0",
        ],
    },
)
