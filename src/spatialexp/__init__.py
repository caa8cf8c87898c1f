# src/spatialexp/__init__.py

"""
spatialexp - Spatial single-cell experiment container with image management
"""

# Core data structures
from .data.core import SpatialExperiment
from .data.config import SpatialExperimentConfig, SpatialData
from .data.images import SpatialImage, ImageTable
from .data.indexing import ALL, UNSPECIFIED
from .data.loaders import read_10x_visium, read_img_data

# Import submodules
from . import data

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'SpatialExperiment',
    'SpatialExperimentConfig',
    'SpatialData',
    'SpatialImage',
    'ImageTable',

    # Selectors
    'ALL',
    'UNSPECIFIED',

    # Loaders
    'read_10x_visium',
    'read_img_data',

    # Submodules
    'data',
]
