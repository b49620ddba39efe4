#!/usr/bin/env python3
"""
Setup script for STREAM-LEASE

This file is kept for compatibility with tools that expect setup.py,
but the actual configuration is in pyproject.toml.
"""

from setuptools import setup

if __name__ == "__main__":
    setup()
