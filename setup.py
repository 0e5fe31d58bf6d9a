"""Setup script for the process orchestrator."""

from setuptools import setup, find_packages

setup(
    name="vibeprocess",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["vp_main"],
    install_requires=[
        "psutil>=5.9.0",
        "pyyaml>=6.0.1",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": ["vp=vp_main:main"],
    },
    python_requires=">=3.8",
)
