#!/usr/bin/env python3
"""
Flood Cropland Mapper - Setup Script
"""

from setuptools import setup
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""

setup(
    name="flood-cropland-mapper",
    version="1.0.0",
    description="SAR flood mapping and flooded cropland estimation (Refined Lee, Edge Otsu)",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: GIS",
        "Topic :: Scientific/Engineering :: Image Processing",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    keywords="SAR, remote sensing, flood mapping, cropland, Sentinel-1, Otsu",
    py_modules=[
        "flood_errors",
        "flood_config",
        "presets",
        "raster_grid",
        "speckle_filter",
        "edge_otsu",
        "flood_classifier",
        "area_statistics",
        "raster_io",
        "flood_pipeline",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.24.0",
        "scipy>=1.11.0",
        "rasterio>=1.3.9",
        "affine<3",  # affine 3.0 breaks rasterio.transform on Python 3.11
        "shapely>=2.0.0",
        "pyproj>=3.6.0",
        "matplotlib>=3.7.0",
        "scikit-image>=0.21.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "flood-cropland=flood_pipeline:main",
        ],
    },
    zip_safe=False,
)
