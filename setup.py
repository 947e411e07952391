"""
Setup configuration for the visual-inertial estimation core.
"""

from setuptools import setup, find_packages

setup(
    name="vi-backend",
    version="0.1.0",
    description="Visual-inertial SLAM estimation core: manifold residuals, loop-closure correspondences and sessions",
    author="VI Backend Team",
    packages=find_packages(include=["vibackend", "vibackend.*"]),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.24.0",
        "scipy>=1.10.0",
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.3.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.3.0",
        ],
    },
)
