"""
VideoIntelAutomator — setuptools build script.

Usage:
    # Development install (links to source):
    pip install -e .[test]
    playwright install chromium

    # Run:
    python3 main.py queue.txt
"""

from setuptools import setup

APP_NAME = "video-intel-automator"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Local video intelligence report automation",
    packages=[
        "automator",
        "automator.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "playwright>=1.40",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "video-intel-automator=main:main",
        ],
    },
)
